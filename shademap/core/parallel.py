"""
Chunked parallel-for over an index range.

Per-pixel and per-image solves only read shared, read-only inputs and each
write to their own output rows, so the work splits into contiguous slices
with no locking. Slices run on a thread pool: numpy releases the GIL inside
its linear algebra and elementwise kernels, so threads overlap on real work.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

T = TypeVar("T")


def chunk_slices(count: int, chunk_size: int) -> list[slice]:
    """Split range(count) into contiguous slices of at most chunk_size."""
    return [slice(start, min(start + chunk_size, count))
            for start in range(0, count, chunk_size)]


def parallel_for(func: Callable[[slice], T], count: int,
                 workers: int = 1, chunk_size: int = 65_536) -> list[T]:
    """
    Call func once per chunk of range(count) and collect the return values.

    Args:
        func:       Called with a slice; must only write output slots inside it.
        count:      Size of the index range.
        workers:    Thread count. 1 (or a single chunk) runs inline.
        chunk_size: Maximum indices per slice.

    Returns:
        The per-chunk return values, in index order.
    """
    slices = chunk_slices(count, chunk_size)
    if workers <= 1 or len(slices) <= 1:
        return [func(s) for s in slices]

    with ThreadPoolExecutor(max_workers=min(workers, len(slices))) as pool:
        # pool.map preserves submission order and re-raises worker exceptions.
        return list(pool.map(func, slices))
