import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_in_chunks(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    chunk_size: int = 10,
) -> list[tuple[T, R | BaseException]]:
    """Run fn over items, at most chunk_size in flight, keeping input order.

    Exceptions are returned in place of results so one failure never
    cancels its siblings.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    out: list[tuple[T, R | BaseException]] = []
    for i in range(0, len(items), chunk_size):
        chunk = items[i : i + chunk_size]
        results = await asyncio.gather(*[fn(item) for item in chunk], return_exceptions=True)
        out.extend(zip(chunk, results))
    return out
