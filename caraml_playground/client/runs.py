from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from caraml_playground.client.api import ClientError, PlaygroundClient, RunUpdate
from caraml_playground.client.polling import PollingSync

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"pending", "running"})

RunObserver = Callable[[list["Run"]], None]


@dataclass(frozen=True)
class Run:
    id: str
    status: str
    source_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class RunBook:
    """Local view of the runs this client has queued or chosen to follow."""

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._observers: dict[int, RunObserver] = {}
        self._observer_ids = itertools.count()

    def get(self, run_id: str) -> Run | None:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> list[Run]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda run: run.queued_at)

    def active_ids(self) -> list[str]:
        with self._lock:
            return [run.id for run in self.runs() if run.active]

    def add(self, run: Run) -> None:
        with self._lock:
            self._runs[run.id] = run
            observers = list(self._observers.values())
        self._notify(observers, [run])

    def apply(self, updates: list[RunUpdate]) -> list[Run]:
        changed: list[Run] = []
        with self._lock:
            for update in updates:
                current = self._runs.get(update.id)
                if current is None:
                    logger.debug("Dropping update for run %s not in the book", update.id)
                    continue
                merged = replace(
                    current,
                    status=update.status,
                    error_message=update.error_message,
                    started_at=update.started_at,
                    completed_at=update.completed_at,
                )
                if merged != current:
                    self._runs[update.id] = merged
                    changed.append(merged)
            observers = list(self._observers.values())
        if changed:
            self._notify(observers, changed)
        return changed

    def remove(self, run_id: str) -> Run | None:
        with self._lock:
            return self._runs.pop(run_id, None)

    def subscribe(self, observer: RunObserver) -> Callable[[], None]:
        with self._lock:
            token = next(self._observer_ids)
            self._observers[token] = observer

        def unsubscribe() -> None:
            with self._lock:
                self._observers.pop(token, None)

        return unsubscribe

    def _notify(self, observers: list[RunObserver], runs: list[Run]) -> None:
        for observer in observers:
            try:
                observer(list(runs))
            except Exception:
                logger.exception("Run book observer failed")


class RunUpdateCoordinator:
    """Merges polled updates into a RunBook and keeps the polling source
    tracking exactly the runs that are still pending or running."""

    def __init__(self, book: RunBook, source: PollingSync, client: PlaygroundClient | None = None):
        self.book = book
        self.source = source
        self.client = client
        self._unsubscribe = source.subscribe(self._on_updates)

    def submit(self, source_code: str) -> Run:
        if self.client is None:
            raise ClientError("No client configured for submitting runs")
        queued = self.client.queue_compilation(source_code)
        run = Run(id=queued.id, status=queued.status, source_code=source_code)
        self.book.add(run)
        logger.info("Queued run %s", run.id)
        self.sync()
        return run

    def follow(self, run_id: str, status: str = "pending") -> Run:
        run = self.book.get(run_id)
        if run is None:
            run = Run(id=run_id, status=status)
            self.book.add(run)
        self.sync()
        return run

    def sync(self) -> None:
        active = self.book.active_ids()
        self.source.set_tracked(active)
        if active:
            self.source.start()
        else:
            self.source.stop()

    def close(self) -> None:
        self._unsubscribe()
        self.source.stop()

    def _on_updates(self, updates: list[RunUpdate]) -> None:
        for run in self.book.apply(updates):
            if run.status == "failed":
                logger.info("Run %s failed: %s", run.id, run.error_message)
            elif run.status == "succeeded":
                logger.info("Run %s succeeded", run.id)
        self.sync()
