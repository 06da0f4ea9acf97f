"""
parallel.py - Per-channel work distribution for the reference models.

Channels are independent: each reads its own slice of shared read-only
buffers and returns its own results, so they can run on a thread pool in any
order. numpy releases the GIL inside its kernels, which is where the
per-channel time goes.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

# Below this many channels the pool costs more than it saves
MIN_PARALLEL_CHANNELS = 4


def resolve_threads(num_threads: Optional[int]) -> int:
    if num_threads is None or num_threads <= 0:
        return os.cpu_count() or 1
    return num_threads


def parallel_nd(work: int, fn: Callable[[int], T], num_threads: Optional[int] = None) -> List[T]:
    """Run fn(i) for i in range(work); results are returned in index order."""
    threads = min(resolve_threads(num_threads), work)
    if threads <= 1 or work < MIN_PARALLEL_CHANNELS:
        return [fn(i) for i in range(work)]
    with ThreadPoolExecutor(max_workers=threads) as pool:
        return list(pool.map(fn, range(work)))
