"""Bounded-parallel batch execution with per-item failure isolation."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Settled(Generic[R]):
    """Outcome of one item: either a value or the exception it raised."""

    index: int
    status: Literal["fulfilled", "rejected"]
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


@dataclass(frozen=True)
class FailedItem:
    """A rejected item together with its position in the input."""

    index: int
    error: BaseException


async def concurrent_map(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    pool_size: int,
    on_progress: Callable[[int, int], Any] | None = None,
) -> list[Settled[R]]:
    """
    Run ``fn`` over ``items`` in sequential batches of ``pool_size``.

    Every operation in a batch runs concurrently and the whole batch
    settles before the next one starts, so at most ``pool_size``
    operations are ever in flight. A failing item never aborts its
    siblings or later batches.

    Args:
        items: Items to process
        fn: Async operation applied to each item
        pool_size: Maximum concurrent operations (>= 1)
        on_progress: Optional callback receiving (completed, total) after each batch

    Returns:
        One Settled per item, in input order

    Raises:
        ValueError: If pool_size is less than 1
    """
    if pool_size < 1:
        raise ValueError(f"pool_size must be at least 1, got {pool_size}")

    results: list[Settled[R]] = []
    total = len(items)

    for start in range(0, total, pool_size):
        batch = items[start : start + pool_size]
        outcomes = await asyncio.gather(*(fn(item) for item in batch), return_exceptions=True)

        for offset, outcome in enumerate(outcomes):
            index = start + offset
            if isinstance(outcome, BaseException):
                results.append(Settled(index=index, status="rejected", error=outcome))
            else:
                results.append(Settled(index=index, status="fulfilled", value=outcome))

        if on_progress:
            on_progress(len(results), total)

    return results


def get_successful(results: Sequence[Settled[R]]) -> list[R]:
    """Extract fulfilled values, in input order."""
    return [r.value for r in results if r.ok]


def get_failed(results: Sequence[Settled[Any]]) -> list[FailedItem]:
    """Extract rejections with their original index."""
    return [FailedItem(index=r.index, error=r.error) for r in results if not r.ok]


def count_results(results: Sequence[Settled[Any]]) -> tuple[int, int]:
    """Count (successful, failed) results."""
    successful = sum(1 for r in results if r.ok)
    return successful, len(results) - successful


class ConcurrencyPool:
    """Fixed-size pool wrapper around ``concurrent_map``."""

    def __init__(self, pool_size: int):
        if pool_size < 1:
            raise ValueError(f"pool_size must be at least 1, got {pool_size}")
        self.pool_size = pool_size

    async def run(
        self,
        items: Sequence[T],
        fn: Callable[[T], Awaitable[R]],
        on_progress: Callable[[int, int], Any] | None = None,
    ) -> list[Settled[R]]:
        """Run ``fn`` over ``items`` with this pool's size."""
        return await concurrent_map(items, fn, self.pool_size, on_progress)
