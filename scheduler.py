"""
Run a per-file task over a stream of paths, sequentially or on a bounded thread pool.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from itertools import islice
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Set, TypeVar


T = TypeVar("T")


def iter_batches(paths: Iterable[Path], batch_size: int) -> Iterator[List[Path]]:
    """Split paths into lists of at most batch_size items."""
    iterator = iter(paths)
    while True:
        batch = list(islice(iterator, batch_size))
        if not batch:
            return
        yield batch


def _run_batch(task: Callable[[Path], T], batch: List[Path]) -> List[T]:
    return [task(path) for path in batch]


def run_batches(
    paths: Iterable[Path],
    task: Callable[[Path], T],
    workers: int,
    batch_size: int,
) -> Iterator[T]:
    """Apply task to every path and yield the results as they complete.

    With workers == 0 each path is processed in the calling thread, in order.
    Otherwise batches are handed to a pool of `workers` threads, with no more
    than `workers` batches admitted at once; results arrive in no particular
    order. Each path belongs to exactly one batch, so a path is only ever
    touched by one thread. Closing the iterator early cancels batches that
    have not started.
    """
    if workers <= 0:
        for path in paths:
            yield task(path)
        return

    logging.info(f"Using {workers} worker threads, {batch_size} files per batch")
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cksumdb")
    in_flight: Set[Future] = set()
    try:
        for batch in iter_batches(paths, batch_size):
            if len(in_flight) >= workers:
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    yield from future.result()
            in_flight.add(executor.submit(_run_batch, task, batch))
        while in_flight:
            done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                yield from future.result()
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
