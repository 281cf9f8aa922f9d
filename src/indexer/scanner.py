"""Bounded block-range log scanner.

Splits [from_block, to_block] into contiguous windows no larger than the
provider's getLogs limit and issues one call per window. A window's logs
are only yielded once the whole window has been fetched, so consumers
never see a partial window.
"""

from collections.abc import AsyncIterator, Iterator, Sequence
from dataclasses import dataclass

from loguru import logger

from src.chain.models import RawLog
from src.chain.rpc import ChainReader, Topic
from src.indexer.errors import ScanAborted


@dataclass(frozen=True)
class BlockWindow:
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1


@dataclass
class ScannedWindow:
    window: BlockWindow
    logs: list[RawLog]


def plan_windows(from_block: int, to_block: int, max_batch_size: int) -> list[BlockWindow]:
    """Ascending, non-overlapping windows covering [from_block, to_block]."""
    _check_range(from_block, to_block, max_batch_size)
    windows: list[BlockWindow] = []
    start = from_block
    while start <= to_block:
        end = min(start + max_batch_size - 1, to_block)
        windows.append(BlockWindow(start, end))
        start = end + 1
    return windows


def iter_backward_windows(head: int, floor: int, max_batch_size: int) -> Iterator[BlockWindow]:
    """Descending windows from head down to floor (inclusive)."""
    _check_range(floor, head, max_batch_size)
    end = head
    while end >= floor:
        start = max(floor, end - max_batch_size + 1)
        yield BlockWindow(start, end)
        end = start - 1


def _check_range(from_block: int, to_block: int, max_batch_size: int) -> None:
    if from_block < 0 or to_block < 0:
        raise ValueError(f"block numbers must be >= 0, got [{from_block}, {to_block}]")
    if from_block > to_block:
        raise ValueError(f"from_block {from_block} > to_block {to_block}")
    if max_batch_size < 1:
        raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")


class RangeScanner:
    """Scans one contract address for one topic filter."""

    def __init__(
        self,
        chain: ChainReader,
        address: str,
        topics: Sequence[Topic],
        *,
        max_block_range: int,
    ) -> None:
        self._chain = chain
        self._address = address
        self._topics = list(topics)
        self._max_block_range = max_block_range

    def _validate_batch(self, max_batch_size: int) -> None:
        if max_batch_size > self._max_block_range:
            raise ValueError(
                f"max_batch_size {max_batch_size} exceeds provider max {self._max_block_range}"
            )

    async def _fetch(self, window: BlockWindow) -> list[RawLog]:
        return await self._chain.get_logs(
            self._address, self._topics, window.start, window.end
        )

    async def scan_windows(
        self, from_block: int, to_block: int, max_batch_size: int
    ) -> AsyncIterator[ScannedWindow]:
        """Yield each completed window with its logs, ascending.

        Raises ScanAborted on the first failing window, carrying the end
        block of the last window that completed.
        """
        self._validate_batch(max_batch_size)
        windows = plan_windows(from_block, to_block, max_batch_size)
        last_completed = from_block - 1

        for window in windows:
            try:
                logs = await self._fetch(window)
            except Exception as e:
                logger.error(
                    f"[SCAN] Window [{window.start}, {window.end}] failed: {e}; "
                    f"last completed block {last_completed}"
                )
                raise ScanAborted(
                    f"getLogs failed for [{window.start}, {window.end}]: {e}",
                    from_block=from_block,
                    failed_window=(window.start, window.end),
                    last_completed_block=last_completed,
                ) from e

            logger.debug(f"[SCAN] [{window.start}, {window.end}] -> +{len(logs)}")
            yield ScannedWindow(window, logs)
            last_completed = window.end

    async def scan(
        self, from_block: int, to_block: int, max_batch_size: int
    ) -> AsyncIterator[RawLog]:
        async for scanned in self.scan_windows(from_block, to_block, max_batch_size):
            for log in scanned.logs:
                yield log

    async def scan_backward(
        self,
        head: int,
        floor: int,
        max_batch_size: int,
    ) -> AsyncIterator[ScannedWindow]:
        """Walk windows from head down to floor. Callers break out on a hit."""
        self._validate_batch(max_batch_size)

        for window in iter_backward_windows(head, floor, max_batch_size):
            try:
                logs = await self._fetch(window)
            except Exception as e:
                logger.error(f"[SCAN] Backward window [{window.start}, {window.end}] failed: {e}")
                raise ScanAborted(
                    f"getLogs failed for [{window.start}, {window.end}]: {e}",
                    from_block=floor,
                    failed_window=(window.start, window.end),
                    last_completed_block=floor - 1,
                ) from e
            yield ScannedWindow(window, logs)
