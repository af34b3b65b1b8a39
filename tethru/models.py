from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events"
DEFAULT_CALENDAR_ID = "primary"
MOBILE_REDIRECT_URI = "com.tethru.app://calendar-connected"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_millis() -> int:
    return int(utc_now().timestamp() * 1000)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: str | date) -> date:
    """Parse ``YYYY-MM-DD`` (a trailing time component is ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def next_day(value: str | date) -> str:
    return (parse_date(value) + timedelta(days=1)).isoformat()


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    number = int(value)
    return number if number > 0 else None


class SourceType(str, Enum):
    TASK = "task"
    BIRTHDAY = "birthday"
    IMPORTANT_DATE = "importantDate"
    FOLLOW_UP = "followUp"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntityKind(str, Enum):
    TASK = "task"
    CONTACT = "contact"


@dataclass(frozen=True)
class CalendarToken:
    access_token: str
    refresh_token: str = ""
    expiry: int = 0  # epoch milliseconds

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarToken":
        data = data or {}
        return cls(
            access_token=str(_pick(data, "access_token", "accessToken", default="")),
            refresh_token=str(_pick(data, "refresh_token", "refreshToken", default="")),
            expiry=int(_pick(data, "expiry", "expiryEpochMillis", default=0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarSettings:
    connected: bool = False
    sync_tasks: bool = True
    sync_birthdays: bool = True
    sync_important_dates: bool = True
    sync_follow_ups: bool = True
    last_sync_at: datetime | None = None

    TOGGLES = ("sync_tasks", "sync_birthdays", "sync_important_dates", "sync_follow_ups")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSettings":
        data = data or {}
        return cls(
            connected=bool(data.get("connected", False)),
            sync_tasks=bool(_pick(data, "sync_tasks", "syncTasks", default=True)),
            sync_birthdays=bool(_pick(data, "sync_birthdays", "syncBirthdays", default=True)),
            sync_important_dates=bool(
                _pick(data, "sync_important_dates", "syncImportantDates", default=True)
            ),
            sync_follow_ups=bool(_pick(data, "sync_follow_ups", "syncFollowUps", default=True)),
            last_sync_at=parse_iso_datetime(_pick(data, "last_sync_at", "lastSyncAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_at"] = serialize_datetime(self.last_sync_at)
        return payload

    def enabled_for(self, source_type: SourceType) -> bool:
        return {
            SourceType.TASK: self.sync_tasks,
            SourceType.BIRTHDAY: self.sync_birthdays,
            SourceType.IMPORTANT_DATE: self.sync_important_dates,
            SourceType.FOLLOW_UP: self.sync_follow_ups,
        }[SourceType(source_type)]


@dataclass(frozen=True)
class CalendarMapping:
    id: int
    source_type: SourceType
    source_id: str
    external_event_id: str
    important_date_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "important_date_id": self.important_date_id,
            "external_event_id": self.external_event_id,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class Task:
    id: str
    title: str = ""
    description: str | None = None
    contact_id: str | None = None
    due_date: str | None = None
    due_time: str | None = None
    reminder_before: int | None = None
    completed: bool = False
    priority: str = "medium"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "") or ""),
            description=_optional_text(data.get("description")),
            contact_id=_optional_text(_pick(data, "contact_id", "contactId")),
            due_date=_optional_text(_pick(data, "due_date", "dueDate")),
            due_time=_optional_text(_pick(data, "due_time", "dueTime")),
            reminder_before=_optional_int(_pick(data, "reminder_before", "reminderBefore")),
            completed=bool(data.get("completed", False)),
            priority=str(data.get("priority", "medium") or "medium"),
        )


@dataclass
class ImportantDate:
    id: str
    label: str
    date: str  # MM-DD
    year: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportantDate":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", "") or ""),
            date=str(data.get("date", "") or "").strip(),
            year=_optional_int(data.get("year")),
        )


@dataclass
class Contact:
    id: str
    first_name: str = ""
    last_name: str = ""
    birthday: str | None = None  # MM-DD
    important_dates: list[ImportantDate] = field(default_factory=list)
    next_follow_up: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Contact":
        raw_dates = _pick(data, "important_dates", "importantDates", default=[]) or []
        return cls(
            id=str(data["id"]),
            first_name=str(_pick(data, "first_name", "firstName", default="")),
            last_name=str(_pick(data, "last_name", "lastName", default="")),
            birthday=_optional_text(data.get("birthday")),
            important_dates=[
                item if isinstance(item, ImportantDate) else ImportantDate.from_dict(item)
                for item in raw_dates
            ],
            next_follow_up=_optional_text(_pick(data, "next_follow_up", "nextFollowUp")),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def find_important_date(self, important_date_id: str) -> ImportantDate | None:
        for item in self.important_dates:
            if item.id == important_date_id:
                return item
        return None


@dataclass
class PendingSync:
    entity_id: str
    kind: EntityKind
    action: SyncAction


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    errors: list[str] = field(default_factory=list)
    trigger: str = "manual"
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "errors": list(self.errors),
            "trigger": self.trigger,
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8080/auth/calendar/callback"
    mobile_redirect_uri: str = MOBILE_REDIRECT_URI
    calendar_id: str = DEFAULT_CALENDAR_ID
    scope: str = GOOGLE_CALENDAR_SCOPE
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            redirect_uri=str(data.get("redirect_uri", cls.redirect_uri)).strip() or cls.redirect_uri,
            mobile_redirect_uri=str(data.get("mobile_redirect_uri", MOBILE_REDIRECT_URI)).strip()
            or MOBILE_REDIRECT_URI,
            calendar_id=str(data.get("calendar_id", DEFAULT_CALENDAR_ID)).strip() or DEFAULT_CALENDAR_ID,
            scope=str(data.get("scope", GOOGLE_CALENDAR_SCOPE)).strip() or GOOGLE_CALENDAR_SCOPE,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.redirect_uri)


@dataclass
class SyncConfig:
    debounce_seconds: float = 0.5
    interval_seconds: int = 900
    timezone: str = "UTC"
    adopt_orphans: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 0.5))),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            adopt_orphans=bool(data.get("adopt_orphans", False)),
        )


@dataclass
class SecurityConfig:
    token_secret: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecurityConfig":
        data = data or {}
        return cls(token_secret=str(data.get("token_secret", "")).strip())


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            security=SecurityConfig.from_dict(data.get("security")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    config = AppConfig()
    return replace(config, security=SecurityConfig(token_secret=secrets.token_urlsafe(32)))
