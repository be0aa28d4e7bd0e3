from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

from caraml_playground.client.api import RunUpdate

logger = logging.getLogger(__name__)

FetchStatus = Callable[[str], RunUpdate]
UpdateListener = Callable[[list[RunUpdate]], None]


class PollingSync:
    """Keeps a tracked set of run ids eventually consistent with the server.

    The timer thread exists only while the source is started and the tracked
    set is non-empty. Each tick fetches every tracked id concurrently, joins
    the fetches, and delivers the successful ones to subscribers as a single
    batch. A tick that finds another tick in flight returns without doing
    anything, so slow status endpoints never build a backlog.
    """

    def __init__(
        self,
        fetch_status: FetchStatus,
        *,
        interval_seconds: float = 1.5,
        auto_untrack_resolved: bool = True,
        max_fetch_workers: int = 8,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self._fetch_status = fetch_status
        self._interval_seconds = interval_seconds
        self._auto_untrack_resolved = auto_untrack_resolved
        self._max_fetch_workers = max(1, max_fetch_workers)

        self._state_lock = threading.RLock()
        self._tick_guard = threading.Lock()
        self._tracked: dict[str, RunUpdate | None] = {}
        self._listeners: dict[int, UpdateListener] = {}
        self._listener_ids = itertools.count()
        self._started = False
        self._timer_stop: threading.Event | None = None

    @property
    def tracked(self) -> list[str]:
        with self._state_lock:
            return list(self._tracked)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_active(self) -> bool:
        with self._state_lock:
            return self._timer_stop is not None

    def last_known(self, run_id: str) -> RunUpdate | None:
        with self._state_lock:
            return self._tracked.get(run_id)

    def set_tracked(self, run_ids: Iterable[str]) -> None:
        with self._state_lock:
            previous = self._tracked
            self._tracked = {run_id: previous.get(run_id) for run_id in dict.fromkeys(run_ids)}
            if not self._started:
                return
            if self._tracked:
                self._ensure_timer()
            else:
                self._clear_timer()

    def start(self) -> None:
        with self._state_lock:
            if self._started:
                return
            self._started = True
            if self._tracked:
                self._ensure_timer()

    def stop(self) -> None:
        with self._state_lock:
            self._started = False
            self._clear_timer()

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        with self._state_lock:
            token = next(self._listener_ids)
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._state_lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def poll_once(self) -> list[RunUpdate]:
        if not self._tick_guard.acquire(blocking=False):
            logger.debug("Poll tick suppressed: previous tick still in flight")
            return []
        try:
            with self._state_lock:
                if not self._started or not self._tracked:
                    return []
                run_ids = list(self._tracked)

            fetched = self._fetch_all(run_ids)

            applied: list[RunUpdate] = []
            with self._state_lock:
                for update in fetched:
                    if update.id not in self._tracked:
                        continue
                    applied.append(update)
                    if self._auto_untrack_resolved and update.resolved:
                        logger.debug("Auto-untracking resolved run %s (%s)", update.id, update.status)
                        del self._tracked[update.id]
                    else:
                        self._tracked[update.id] = update
                if self._auto_untrack_resolved and not self._tracked:
                    self._clear_timer()
                listeners = list(self._listeners.values())

            if applied:
                self._emit(listeners, applied)
            return applied
        finally:
            self._tick_guard.release()

    def _fetch_all(self, run_ids: list[str]) -> list[RunUpdate]:
        workers = min(len(run_ids), self._max_fetch_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="polling-fetch") as executor:
            futures = [(run_id, executor.submit(self._fetch_status, run_id)) for run_id in run_ids]

        updates: list[RunUpdate] = []
        for run_id, future in futures:
            try:
                updates.append(future.result())
            except Exception as exc:
                logger.warning("Status fetch for run %s failed, retrying next tick: %s", run_id, exc)
        return updates

    def _emit(self, listeners: list[UpdateListener], updates: list[RunUpdate]) -> None:
        for listener in listeners:
            try:
                listener(list(updates))
            except Exception:
                logger.exception("Run update listener failed")

    def _ensure_timer(self) -> None:
        if self._timer_stop is not None:
            return
        stop = threading.Event()
        self._timer_stop = stop
        threading.Thread(target=self._timer_loop, args=(stop,), name="polling-sync", daemon=True).start()

    def _clear_timer(self) -> None:
        if self._timer_stop is None:
            return
        self._timer_stop.set()
        self._timer_stop = None

    def _timer_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval_seconds):
            self.poll_once()
