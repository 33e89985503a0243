"""Bounded parallel execution of one operation across many repositories."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

from .errors import ErrorKind, FlotillaError
from .models import BulkOperationResult, Outcome, RepositoryHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[RepositoryHandle], str]
ProgressCallback = Callable[[BulkOperationResult], None]

CANCELLED_REASON = "cancelled before start"


def _run_one(repository: RepositoryHandle, operation: Operation) -> BulkOperationResult:
    start = time.monotonic()
    try:
        message = operation(repository)
    except FlotillaError as e:
        outcome = Outcome.SKIPPED if e.kind == ErrorKind.SAFETY_BLOCKED else Outcome.FAILED
        log = logger.info if outcome == Outcome.SKIPPED else logger.warning
        log("%s: %s", repository.relative_path, e.message)
        return BulkOperationResult(
            repository=repository,
            outcome=outcome,
            message=e.message,
            duration_ms=_elapsed_ms(start),
            error=e,
        )
    except Exception as e:
        logger.warning("%s: %s", repository.relative_path, e)
        return BulkOperationResult(
            repository=repository,
            outcome=Outcome.FAILED,
            message=str(e) or type(e).__name__,
            duration_ms=_elapsed_ms(start),
            error=e,
        )
    return BulkOperationResult(
        repository=repository,
        outcome=Outcome.SUCCEEDED,
        message=message or "",
        duration_ms=_elapsed_ms(start),
    )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def run_bulk(
    repositories: Sequence[RepositoryHandle],
    operation: Operation,
    parallelism: int = 4,
    *,
    cancel_event: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> list[BulkOperationResult]:
    """Apply ``operation`` to every repository with at most ``parallelism`` in flight.

    ``operation`` returns a success message. Raising a SAFETY_BLOCKED
    FlotillaError records a skip; any other exception records a failure.
    One result is returned per repository, sorted by relative path.

    Setting ``cancel_event`` stops dispatch: running operations finish and
    the rest are recorded as skipped.
    """
    results = map_bounded(
        repositories,
        lambda repo: _run_one(repo, operation),
        parallelism,
        cancel_event=cancel_event,
        on_cancel=lambda repo: BulkOperationResult(
            repository=repo, outcome=Outcome.SKIPPED, message=CANCELLED_REASON
        ),
        progress=progress,
    )
    results.sort(key=lambda r: r.repository.relative_path)
    return results


def map_bounded(
    items: Sequence,
    func: Callable[..., T],
    parallelism: int,
    *,
    cancel_event: threading.Event | None = None,
    on_cancel: Callable[..., T] | None = None,
    progress: Callable[[T], None] | None = None,
) -> list[T]:
    """Run ``func`` over ``items`` in a thread pool, dispatching at most ``parallelism`` at a time.

    ``func`` must not raise; wrap it so failures become values. Items left
    undispatched after ``cancel_event`` is set are mapped through ``on_cancel``.
    Results come back in completion order.
    """
    if parallelism < 1:
        raise ValueError(f"parallelism must be >= 1, got {parallelism}")

    pending_items = list(items)
    results: list[T] = []
    if not pending_items:
        return results

    def collect(value: T) -> None:
        # Only the calling thread appends to results.
        results.append(value)
        if progress is not None:
            progress(value)

    workers = min(parallelism, len(pending_items))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        in_flight: set[Future] = set()
        index = 0
        while index < len(pending_items) or in_flight:
            while (
                index < len(pending_items)
                and len(in_flight) < parallelism
                and not _cancelled(cancel_event)
            ):
                in_flight.add(executor.submit(func, pending_items[index]))
                index += 1

            if _cancelled(cancel_event) and index < len(pending_items):
                logger.info("cancelled: %d item(s) not started", len(pending_items) - index)
                for item in pending_items[index:]:
                    if on_cancel is not None:
                        collect(on_cancel(item))
                index = len(pending_items)

            if not in_flight:
                break
            done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                collect(future.result())

    return results


def _cancelled(event: threading.Event | None) -> bool:
    return event is not None and event.is_set()
