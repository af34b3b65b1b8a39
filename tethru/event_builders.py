"""Pure mappings from CRM facts to Google Calendar event payloads.

Every builder returns a plain ``dict`` in the Calendar API event shape, or
``None`` when the fact is not currently schedulable.  Summaries carry the
``[Tethru]`` prefix and every payload is tagged through
``extendedProperties.private`` so events created here can be told apart from
anything the user made by hand.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any

from tethru.models import Contact, ImportantDate, SourceType, Task, next_day, parse_date


EVENT_PREFIX = "[Tethru]"
YEARLY_RRULE = "RRULE:FREQ=YEARLY"
TIMED_EVENT_DURATION = timedelta(hours=1)

PRIVATE_SOURCE_TYPE_KEY = "tethruSourceType"
PRIVATE_SOURCE_ID_KEY = "tethruSourceId"
PRIVATE_IMPORTANT_DATE_KEY = "tethruImportantDateId"


def _summary(text: str) -> str:
    return f"{EVENT_PREFIX} {text.strip()}"


def _private_properties(
    source_type: SourceType, source_id: str, important_date_id: str | None = None
) -> dict[str, Any]:
    private = {
        PRIVATE_SOURCE_TYPE_KEY: source_type.value,
        PRIVATE_SOURCE_ID_KEY: source_id,
    }
    if important_date_id:
        private[PRIVATE_IMPORTANT_DATE_KEY] = important_date_id
    return {"private": private}


def _split_month_day(value: str) -> tuple[int, int]:
    parts = value.strip().split("-")
    if len(parts) != 2:
        raise ValueError(f"Expected MM-DD, got {value!r}")
    month, day = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        raise ValueError(f"Expected MM-DD, got {value!r}")
    return month, day


def anchor_date(month_day: str, year: int) -> date:
    """Place ``MM-DD`` in ``year``; Feb 29 falls back to the latest leap year."""
    month, day = _split_month_day(month_day)
    if month == 2 and day == 29:
        while not calendar.isleap(year):
            year -= 1
    return date(year, month, day)


def _all_day(start: date | str) -> tuple[dict[str, str], dict[str, str]]:
    start_text = parse_date(start).isoformat()
    return {"date": start_text}, {"date": next_day(start_text)}


def build_task_event(
    task: Task, contact_name: str | None = None, time_zone: str = "UTC"
) -> dict[str, Any] | None:
    if not task.due_date:
        return None

    summary = _summary(f"{task.title} - {contact_name}" if contact_name else task.title)
    event: dict[str, Any] = {
        "summary": summary,
        "description": task.description or "Task from Tethru CRM",
        "extendedProperties": _private_properties(SourceType.TASK, task.id),
    }

    if task.due_time:
        start = datetime.combine(
            parse_date(task.due_date), datetime.strptime(task.due_time.strip()[:5], "%H:%M").time()
        )
        end = start + TIMED_EVENT_DURATION
        event["start"] = {"dateTime": start.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": time_zone}
        event["end"] = {"dateTime": end.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": time_zone}
        if task.reminder_before:
            event["reminders"] = {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": int(task.reminder_before)}],
            }
        else:
            event["reminders"] = {"useDefault": True}
        return event

    event["start"], event["end"] = _all_day(task.due_date)
    event["reminders"] = {"useDefault": True}
    return event


def build_birthday_event(contact: Contact, today: date | None = None) -> dict[str, Any] | None:
    if not contact.birthday:
        return None
    today = today or date.today()
    start, end = _all_day(anchor_date(contact.birthday, today.year))
    return {
        "summary": _summary(f"{contact.full_name}'s Birthday"),
        "description": "Birthday reminder from Tethru CRM",
        "start": start,
        "end": end,
        "recurrence": [YEARLY_RRULE],
        "extendedProperties": _private_properties(SourceType.BIRTHDAY, contact.id),
    }


def build_important_date_event(
    contact: Contact, important_date: ImportantDate, today: date | None = None
) -> dict[str, Any]:
    # A stored year pins the date to a single occurrence.
    year = important_date.year or (today or date.today()).year
    start, end = _all_day(anchor_date(important_date.date, year))
    event: dict[str, Any] = {
        "summary": _summary(f"{important_date.label} - {contact.full_name}"),
        "description": "Important date from Tethru CRM",
        "start": start,
        "end": end,
        "extendedProperties": _private_properties(
            SourceType.IMPORTANT_DATE, contact.id, important_date.id
        ),
    }
    if not important_date.year:
        event["recurrence"] = [YEARLY_RRULE]
    return event


def build_follow_up_event(contact: Contact) -> dict[str, Any] | None:
    if not contact.next_follow_up:
        return None
    start, end = _all_day(contact.next_follow_up)
    return {
        "summary": _summary(f"Follow up with {contact.full_name}"),
        "description": "Follow-up reminder from Tethru CRM",
        "start": start,
        "end": end,
        "extendedProperties": _private_properties(SourceType.FOLLOW_UP, contact.id),
    }
