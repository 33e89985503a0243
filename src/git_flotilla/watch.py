"""Repeated scan-and-operate cycles on a fixed interval."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from .bulk import FleetManager
from .gitcmd import GitExecutor
from .models import BulkOperationOptions, BulkOperationResult

logger = logging.getLogger(__name__)

FleetOperation = Callable[[FleetManager], list[BulkOperationResult]]
TickCallback = Callable[[int, list[BulkOperationResult]], None]


class FleetWatcher:
    """Run one bulk operation over a freshly scanned fleet every ``interval`` seconds.

    Setting the stop event (or calling :meth:`stop`) ends the loop after the
    tick in progress has finished; running git processes are never
    interrupted.
    """

    def __init__(
        self,
        root_path: Path,
        operation: FleetOperation,
        interval: float = 60.0,
        *,
        options: BulkOperationOptions | None = None,
        executor: GitExecutor | None = None,
        fetch_timeout: float | None = None,
        stop_event: threading.Event | None = None,
        max_ticks: int | None = None,
        on_tick: TickCallback | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.root_path = root_path
        self.operation = operation
        self.interval = interval
        self.options = options or BulkOperationOptions()
        self.executor = executor
        self.fetch_timeout = fetch_timeout
        self.stop_event = stop_event or threading.Event()
        self.max_ticks = max_ticks
        self.on_tick = on_tick
        self.ticks = 0

    def stop(self) -> None:
        self.stop_event.set()

    def tick(self) -> list[BulkOperationResult]:
        """One full cycle: new scan, then the operation over every repository."""
        fleet = FleetManager(
            self.root_path,
            self.options,
            executor=self.executor,
            fetch_timeout=self.fetch_timeout,
        )
        return self.operation(fleet)

    def run(self) -> int:
        """Loop until stopped or ``max_ticks`` is reached. Returns the tick count."""
        while not self.stop_event.is_set():
            started = time.monotonic()
            results = self.tick()
            self.ticks += 1
            logger.debug(
                "tick %d: %d repositories in %.1fs",
                self.ticks,
                len(results),
                time.monotonic() - started,
            )
            if self.on_tick is not None:
                self.on_tick(self.ticks, results)
            if self.max_ticks is not None and self.ticks >= self.max_ticks:
                break
            self.stop_event.wait(self.interval)
        return self.ticks
