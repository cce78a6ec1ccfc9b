"""Batching helper shared by the scheduled sweeps."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

T = TypeVar("T")


def chunked(items: Sequence[str], size: int) -> list[Sequence[str]]:
    size = max(size, 1)
    return [items[i : i + size] for i in range(0, len(items), size)]


async def run_in_batches(
    deal_ids: Sequence[str],
    batch_size: int,
    check: Callable[[str], Awaitable[T]],
) -> list[tuple[str, T | BaseException]]:
    """Run `check` for every deal, `batch_size` at a time.

    Failures are returned in place of results so one deal cannot stop the sweep.
    """
    outcomes: list[tuple[str, T | BaseException]] = []
    for batch in chunked(deal_ids, batch_size):
        results = await asyncio.gather(*(check(d) for d in batch), return_exceptions=True)
        outcomes.extend(zip(batch, results, strict=True))
    return outcomes
