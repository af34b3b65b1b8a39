"""Snapshot diffing over the task and contact collections.

Each observed collection is compared with the previous snapshot; the
resulting ``create``/``update``/``delete`` instructions are coalesced in a
pending map (last action per entity wins) and drained after a debounce window
so a burst of edits turns into a single external write.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from typing import Any, Callable, Iterable

from tethru.models import Contact, EntityKind, PendingSync, SyncAction, Task
from tethru.scheduler import Debouncer, TimerFactory, thread_timer

logger = logging.getLogger(__name__)

TASK_SYNC_FIELDS = ("title", "due_date", "due_time", "description", "completed", "contact_id")
CONTACT_SYNC_FIELDS = ("first_name", "last_name", "birthday", "next_follow_up")

Dispatch = Callable[[PendingSync, "dict[str, Task]", "dict[str, Contact]"], None]


def _serialized_important_dates(contact: Contact) -> str:
    return json.dumps([asdict(item) for item in contact.important_dates], sort_keys=True)


def task_changed(previous: Task, current: Task) -> bool:
    return any(getattr(previous, name) != getattr(current, name) for name in TASK_SYNC_FIELDS)


def contact_changed(previous: Contact, current: Contact) -> bool:
    if any(getattr(previous, name) != getattr(current, name) for name in CONTACT_SYNC_FIELDS):
        return True
    return _serialized_important_dates(previous) != _serialized_important_dates(current)


class ChangeDetector:
    def __init__(
        self,
        dispatch: Dispatch,
        debounce_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
        is_active: Callable[[], bool] | None = None,
    ) -> None:
        self.dispatch = dispatch
        self.is_active = is_active
        self._tasks: dict[str, Task] = {}
        self._contacts: dict[str, Contact] = {}
        self._pending: dict[tuple[EntityKind, str], PendingSync] = {}
        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self.debouncer = Debouncer(debounce_seconds, self.process_pending, timer_factory)

    def seed(self, tasks: Iterable[Task] | None = None, contacts: Iterable[Contact] | None = None) -> None:
        """Prime the snapshots without queueing anything."""
        with self._state_lock:
            if tasks is not None:
                self._tasks = {task.id: task for task in tasks}
            if contacts is not None:
                self._contacts = {contact.id: contact for contact in contacts}

    def _diff(
        self,
        previous: dict[str, Any],
        current: dict[str, Any],
        kind: EntityKind,
        changed: Callable[[Any, Any], bool],
    ) -> int:
        queued = 0
        for entity_id, entity in current.items():
            before = previous.get(entity_id)
            if before is None:
                self._enqueue(entity_id, kind, SyncAction.CREATE)
                queued += 1
            elif changed(before, entity):
                self._enqueue(entity_id, kind, SyncAction.UPDATE)
                queued += 1
        for entity_id in previous:
            if entity_id not in current:
                self._enqueue(entity_id, kind, SyncAction.DELETE)
                queued += 1
        return queued

    def _paused(self) -> bool:
        # Snapshots do not advance while paused.
        return self.is_active is not None and not self.is_active()

    def observe_tasks(self, tasks: Iterable[Task]) -> int:
        if self._paused():
            return 0
        current = {task.id: task for task in tasks}
        with self._state_lock:
            queued = self._diff(self._tasks, current, EntityKind.TASK, task_changed)
            self._tasks = current
        if queued:
            self.debouncer.schedule()
        return queued

    def observe_contacts(self, contacts: Iterable[Contact]) -> int:
        if self._paused():
            return 0
        current = {contact.id: contact for contact in contacts}
        with self._state_lock:
            queued = self._diff(self._contacts, current, EntityKind.CONTACT, contact_changed)
            self._contacts = current
        if queued:
            self.debouncer.schedule()
        return queued

    def _enqueue(self, entity_id: str, kind: EntityKind, action: SyncAction) -> None:
        # Last action wins; the entry keeps its first-enqueued position.
        self._pending[(kind, entity_id)] = PendingSync(entity_id=entity_id, kind=kind, action=action)

    @property
    def pending(self) -> list[PendingSync]:
        with self._state_lock:
            return list(self._pending.values())

    def process_pending(self) -> list[str]:
        """Drain the pending map and dispatch every entry in order.

        Failures are logged and collected; they never stop the drain.
        """
        errors: list[str] = []
        with self._drain_lock:
            with self._state_lock:
                entries = list(self._pending.values())
                self._pending.clear()
                tasks = dict(self._tasks)
                contacts = dict(self._contacts)
            for entry in entries:
                try:
                    self.dispatch(entry, tasks, contacts)
                except Exception as exc:
                    logger.exception(
                        "Failed to sync %s %s (%s)", entry.kind.value, entry.entity_id, entry.action.value
                    )
                    errors.append(f"{entry.kind.value} {entry.entity_id}: {exc}")
        return errors

    def snapshot(self) -> tuple[list[Task], list[Contact]]:
        """Latest observed collections, in the shape the periodic scheduler expects."""
        with self._state_lock:
            return list(self._tasks.values()), list(self._contacts.values())

    def close(self) -> None:
        self.debouncer.close()
        with self._state_lock:
            self._pending.clear()
