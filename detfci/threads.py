from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import contextlib
from typing import Iterator, TypeVar

from threadpoolctl import threadpool_limits

T = TypeVar("T")


@contextlib.contextmanager
def blas_thread_limit(n: int) -> Iterator[None]:
    """Temporarily limit BLAS threadpools for this process.

    Only BLAS-style pools are restricted, so OpenMP users elsewhere in the
    process keep their settings.
    """

    n = int(n)
    if n < 1:
        raise ValueError("BLAS thread limit must be >= 1")
    with threadpool_limits(limits=n, user_api="blas"):
        yield


def split_chunks(n: int, chunks: int) -> list[tuple[int, int]]:
    n = int(n)
    chunks = int(chunks)
    if n < 0:
        raise ValueError("n must be >= 0")
    if chunks < 1:
        raise ValueError("chunks must be >= 1")
    out: list[tuple[int, int]] = []
    for i in range(chunks):
        start = (i * n) // chunks
        stop = ((i + 1) * n) // chunks
        if start != stop:
            out.append((start, stop))
    return out


def run_chunked(
    fn: Callable[[int, int], T],
    start: int,
    stop: int,
    *,
    executor: ThreadPoolExecutor | None,
    nthreads: int,
) -> list[T]:
    """Evaluate ``fn(a, b)`` over a row-range split, results in chunk order.

    With ``nthreads > 1`` and an executor the chunks run concurrently while
    BLAS is pinned to one thread per worker; otherwise the whole range is a
    single call on the calling thread.
    """

    start = int(start)
    stop = int(stop)
    n = stop - start
    if n <= 0:
        return []
    nthreads = int(nthreads)
    if executor is None or nthreads <= 1 or n < 2:
        return [fn(start, stop)]

    chunks = [(start + a, start + b) for a, b in split_chunks(n, min(nthreads, n))]
    with blas_thread_limit(1):
        futures = [executor.submit(fn, a, b) for a, b in chunks]
        return [f.result() for f in futures]
