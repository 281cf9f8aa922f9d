"""Indexer error taxonomy.

Errors that threaten data integrity (a failed scan window, an unreachable
chain head) abort the pass. Errors that only affect the freshness or
completeness of one entity are collected as warnings and retried on the
next pass.
"""


class IndexerError(Exception):
    """Base class for every error raised or collected by the indexer."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class TransientIOError(IndexerError):
    """Network or provider failure. Resumed from the cursor on the next pass."""


class ScanAborted(TransientIOError):
    """A scan window failed; everything up to `last_completed_block` is safe."""

    def __init__(
        self,
        message: str,
        *,
        from_block: int,
        failed_window: tuple[int, int],
        last_completed_block: int,
    ) -> None:
        super().__init__(message)
        self.from_block = from_block
        self.failed_window = failed_window
        self.last_completed_block = last_completed_block

    @property
    def resume_from(self) -> int:
        return self.last_completed_block + 1

    @property
    def made_progress(self) -> bool:
        return self.last_completed_block >= self.from_block


class StoreReadError(TransientIOError):
    """A store could not be read; the pass continues without that source."""


class DecodeError(IndexerError):
    """Raw log failed topic/shape validation. Skipped, never aborts a batch."""


class HydrationError(IndexerError):
    """A supplemental read for one entity failed."""


class StoreWriteError(IndexerError):
    """Persisting to a store failed. Surfaced as a warning, not fatal."""


class VerificationError(IndexerError):
    """Ownership check for one candidate token failed; candidate is excluded."""
