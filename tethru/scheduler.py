from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional

from tethru.models import Contact, Task

if TYPE_CHECKING:
    from tethru.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]
CollectionSource = Callable[[], "tuple[list[Task], list[Contact]]"]


def thread_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class Debouncer:
    """Single shared timer: every ``schedule`` cancels the pending one first."""

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self._timer_factory = timer_factory
        self._timer: Any = None
        self._lock = threading.Lock()
        self._closed = False
        self._generation = 0

    def schedule(self) -> None:
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._timer = self._timer_factory(self.delay_seconds, lambda: self._fire(generation))
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A superseded timer that fired before its cancel landed.
            if self._closed or generation != self._generation:
                return
            self._timer = None
        self.callback()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class SyncScheduler:
    """Background thread running periodic full reconciliation for registered users."""

    def __init__(self, sync_engine: "SyncEngine") -> None:
        self.sync_engine = sync_engine
        self._sources: dict[str, CollectionSource] = {}
        self._sources_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def register(self, user_id: str, source: CollectionSource) -> None:
        with self._sources_lock:
            self._sources[user_id] = source

    def unregister(self, user_id: str) -> None:
        with self._sources_lock:
            self._sources.pop(user_id, None)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tethru-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_pending(self, trigger: str) -> int:
        with self._sources_lock:
            sources = list(self._sources.items())
        ran = 0
        for user_id, source in sources:
            if not self.sync_engine.is_connected(user_id):
                continue
            try:
                tasks, contacts = source()
                self.sync_engine.sync_now(user_id, tasks, contacts, trigger=trigger)
                ran += 1
            except Exception:
                logger.exception("Scheduled calendar sync failed for user %s", user_id)
        return ran

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            config = self.sync_engine.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_pending("manual" if manual else "scheduled")
