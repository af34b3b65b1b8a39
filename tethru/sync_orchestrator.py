"""Per-entity calendar sync and full reconciliation.

The mapping ledger is the only idempotency mechanism: a source with a mapping
row is always updated in place, a source without one is created and then
recorded.  Everything here runs sequentially for a single user.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Iterable

from tethru.event_builders import (
    PRIVATE_SOURCE_ID_KEY,
    build_birthday_event,
    build_follow_up_event,
    build_important_date_event,
    build_task_event,
)
from tethru.google_calendar import CalendarApiError, GoogleCalendarClient
from tethru.ledger import MappingLedger
from tethru.models import (
    CalendarMapping,
    CalendarSettings,
    CalendarToken,
    Contact,
    EntityKind,
    SourceType,
    SyncAction,
    SyncResult,
    Task,
    utc_now,
)
from tethru.oauth import AuthError

logger = logging.getLogger(__name__)

CONTACT_SOURCE_TYPES = {SourceType.BIRTHDAY, SourceType.IMPORTANT_DATE, SourceType.FOLLOW_UP}

SettingsWriter = Callable[..., Any]


def contact_names(contacts: Iterable[Contact]) -> dict[str, str]:
    return {contact.id: contact.full_name for contact in contacts}


class SyncOrchestrator:
    def __init__(
        self,
        client: GoogleCalendarClient,
        ledger: MappingLedger,
        settings: CalendarSettings,
        token: CalendarToken,
        *,
        time_zone: str = "UTC",
        update_settings: SettingsWriter | None = None,
        adopt_orphans: bool = False,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.settings = settings
        self.token = token
        self.time_zone = time_zone
        self.update_settings = update_settings
        self.adopt_orphans = adopt_orphans
        self._today = today

    # Ledger-backed primitives

    def _remove(self, mapping: CalendarMapping | None) -> None:
        if mapping is None:
            return
        _, self.token = self.client.delete_event(self.token, mapping.external_event_id)
        self.ledger.delete(mapping.id)
        logger.debug(
            "Removed %s event for %s (%s)",
            mapping.source_type.value,
            mapping.source_id,
            mapping.external_event_id,
        )

    def _find_orphan(self, event: dict[str, Any]) -> str | None:
        private = dict((event.get("extendedProperties") or {}).get("private") or {})
        if not private.get(PRIVATE_SOURCE_ID_KEY):
            return None
        found, self.token = self.client.find_tagged_event(self.token, private)
        return str(found["id"]) if found else None

    def _create(
        self,
        source_type: SourceType,
        source_id: str,
        event: dict[str, Any],
        important_date_id: str | None,
    ) -> None:
        event_id = self._find_orphan(event) if self.adopt_orphans else None
        if event_id is not None:
            logger.info("Adopting existing event %s for %s %s", event_id, source_type.value, source_id)
            _, self.token = self.client.update_event(self.token, event_id, event)
        else:
            event_id, self.token = self.client.create_event(self.token, event)
        self.ledger.insert(source_type, source_id, event_id, important_date_id)

    def _upsert(
        self,
        source_type: SourceType,
        source_id: str,
        action: SyncAction,
        build: Callable[[], dict[str, Any] | None],
        important_date_id: str | None = None,
    ) -> None:
        if not self.settings.enabled_for(source_type):
            return

        mapping = self.ledger.find_by_source(source_type, source_id, important_date_id)
        if SyncAction(action) is SyncAction.DELETE:
            self._remove(mapping)
            return

        event = build()
        if event is None:
            # No longer schedulable (e.g. the due date was cleared).
            self._remove(mapping)
            return

        if mapping is None:
            self._create(source_type, source_id, event, important_date_id)
            return

        try:
            _, self.token = self.client.update_event(self.token, mapping.external_event_id, event)
        except CalendarApiError as exc:
            if not exc.is_not_found:
                raise
            # The event was removed on the calendar side; replace the pointer row.
            logger.info(
                "Event %s for %s %s is gone; recreating",
                mapping.external_event_id,
                source_type.value,
                source_id,
            )
            self.token = exc.token or self.token
            self.ledger.delete(mapping.id)
            event_id, self.token = self.client.create_event(self.token, event)
            self.ledger.insert(source_type, source_id, event_id, important_date_id)

    # Per-kind sync

    def sync_task(self, task: Task, action: SyncAction, contact_name: str | None = None) -> None:
        self._upsert(
            SourceType.TASK,
            task.id,
            action,
            lambda: build_task_event(task, contact_name, self.time_zone),
        )

    def sync_birthday(self, contact: Contact, action: SyncAction) -> None:
        self._upsert(
            SourceType.BIRTHDAY,
            contact.id,
            action,
            lambda: build_birthday_event(contact, self._today()),
        )

    def sync_important_date(self, contact: Contact, important_date_id: str, action: SyncAction) -> None:
        def build() -> dict[str, Any] | None:
            important_date = contact.find_important_date(important_date_id)
            if important_date is None:
                return None
            return build_important_date_event(contact, important_date, self._today())

        self._upsert(SourceType.IMPORTANT_DATE, contact.id, action, build, important_date_id)

    def sync_follow_up(self, contact: Contact, action: SyncAction) -> None:
        self._upsert(SourceType.FOLLOW_UP, contact.id, action, lambda: build_follow_up_event(contact))

    def sync_contact_dates(self, contact: Contact, action: SyncAction) -> None:
        self.sync_birthday(contact, action)
        self.sync_follow_up(contact, action)
        for important_date in contact.important_dates:
            self.sync_important_date(contact, important_date.id, action)
        self._prune_removed_important_dates(contact)

    def _prune_removed_important_dates(self, contact: Contact) -> None:
        if not self.settings.sync_important_dates:
            return
        current_ids = {item.id for item in contact.important_dates}
        for mapping in self.ledger.find_by_root_id(contact.id):
            if mapping.source_type is SourceType.IMPORTANT_DATE and mapping.important_date_id not in current_ids:
                self._remove(mapping)

    def sync(self, kind: SourceType | EntityKind | str, action: SyncAction, entity: Any, **kwargs: Any) -> None:
        """Dispatch one entity to the matching per-kind sync function."""
        if kind in (EntityKind.CONTACT, EntityKind.CONTACT.value):
            if SyncAction(action) is SyncAction.DELETE:
                self.cleanup_deleted_contact(entity.id if isinstance(entity, Contact) else str(entity))
            else:
                self.sync_contact_dates(entity, action)
            return
        if kind in (EntityKind.TASK, EntityKind.TASK.value):
            kind = SourceType.TASK
        source_type = SourceType(kind)
        if source_type is SourceType.TASK:
            self.sync_task(entity, action, kwargs.get("contact_name"))
        elif source_type is SourceType.BIRTHDAY:
            self.sync_birthday(entity, action)
        elif source_type is SourceType.FOLLOW_UP:
            self.sync_follow_up(entity, action)
        else:
            self.sync_important_date(entity, kwargs["important_date_id"], action)

    # Bulk operations

    def cleanup_deleted_contact(self, contact_id: str) -> int:
        removed = 0
        for mapping in self.ledger.find_by_root_id(contact_id):
            if mapping.source_type not in CONTACT_SOURCE_TYPES:
                continue
            try:
                _, self.token = self.client.delete_event(self.token, mapping.external_event_id)
            except CalendarApiError as exc:
                self.token = exc.token or self.token
                logger.warning(
                    "Failed to delete calendar event %s for contact %s: %s",
                    mapping.external_event_id,
                    contact_id,
                    exc,
                )
            self.ledger.delete(mapping.id)
            removed += 1
        return removed

    def delete_all_events(self) -> tuple[int, list[str]]:
        deleted = 0
        errors: list[str] = []
        for mapping in self.ledger.all():
            try:
                _, self.token = self.client.delete_event(self.token, mapping.external_event_id)
                deleted += 1
            except CalendarApiError as exc:
                self.token = exc.token or self.token
                logger.warning("Failed to delete calendar event %s: %s", mapping.external_event_id, exc)
                errors.append(f"{mapping.external_event_id}: {exc.message}")
        self.ledger.delete_all()
        return deleted, errors

    def full_sync(self, tasks: list[Task], contacts: list[Contact], trigger: str = "manual") -> SyncResult:
        started = time.monotonic()
        result = SyncResult(trigger=trigger)
        names = contact_names(contacts)

        if self.settings.sync_tasks:
            for task in tasks:
                if not task.due_date or task.completed:
                    continue
                try:
                    self.sync_task(task, SyncAction.UPDATE, names.get(task.contact_id or ""))
                    result.synced += 1
                except AuthError:
                    raise
                except Exception as exc:
                    self.token = getattr(exc, "token", None) or self.token
                    logger.warning("Task %s failed to sync: %s", task.id, exc)
                    result.errors.append(f'Task "{task.title}": {exc}')

        for contact in contacts:
            try:
                self.sync_contact_dates(contact, SyncAction.UPDATE)
                result.synced += 1
            except AuthError:
                raise
            except Exception as exc:
                self.token = getattr(exc, "token", None) or self.token
                logger.warning("Contact %s failed to sync: %s", contact.id, exc)
                result.errors.append(f'Contact "{contact.full_name}": {exc}')

        finished_at: datetime = utc_now()
        self.settings.last_sync_at = finished_at
        if self.update_settings is not None:
            self.update_settings(last_sync_at=finished_at)

        result.success = not result.errors
        result.run_at = finished_at
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Full sync finished: %d synced, %d errors in %dms",
            result.synced,
            len(result.errors),
            result.duration_ms,
        )
        return result
