from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    text = _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def instant_ms(value: datetime) -> int:
    """Millisecond key used to compare exception dates with generated anchors."""
    return (_ensure_tz(value) - _EPOCH) // _ONE_MS


@dataclass
class Participant:
    user_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> "Participant":
        if isinstance(data, str):
            return cls(user_id=data)
        return cls(user_id=str(data.get("user_id", "")).strip())


@dataclass
class OccurrencePatch:
    """Fields overridden on a single occurrence; ``None`` means not overridden."""

    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    timezone: str | None = None
    participants: list[Participant] | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.title,
                self.description,
                self.start_time,
                self.end_time,
                self.timezone,
                self.participants,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.title is not None:
            payload["title"] = self.title
        if self.description is not None:
            payload["description"] = self.description
        if self.start_time is not None:
            payload["start_time"] = serialize_datetime(self.start_time)
        if self.end_time is not None:
            payload["end_time"] = serialize_datetime(self.end_time)
        if self.timezone is not None:
            payload["timezone"] = self.timezone
        if self.participants is not None:
            payload["participants"] = [item.to_dict() for item in self.participants]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OccurrencePatch":
        data = data or {}
        participants = data.get("participants")
        return cls(
            title=data.get("title"),
            description=data.get("description"),
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            timezone=data.get("timezone"),
            participants=(
                [Participant.from_dict(item) for item in participants] if participants is not None else None
            ),
        )


@dataclass
class EventException:
    date: datetime
    is_deleted: bool = False
    override: OccurrencePatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": serialize_datetime(self.date),
            "is_deleted": self.is_deleted,
            "override": self.override.to_dict() if self.override is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventException":
        override = data.get("override")
        return cls(
            date=parse_iso_datetime(data["date"]),
            is_deleted=bool(data.get("is_deleted", False)),
            override=OccurrencePatch.from_dict(override) if override is not None else None,
        )


@dataclass
class RecurrenceSpec:
    freq: str
    dtstart: datetime
    interval: int = 1
    until: datetime | None = None
    byweekday: tuple[str, ...] = ()


@dataclass
class Event:
    id: str
    title: str
    start_time: datetime
    end_time: datetime
    timezone: str
    created_by: str
    description: str = ""
    recurrence_rule: str | None = None
    series_id: str | None = None
    participants: list[Participant] = field(default_factory=list)
    exceptions: list[EventException] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "timezone": self.timezone,
            "recurrence_rule": self.recurrence_rule,
            "series_id": self.series_id,
            "participants": [item.to_dict() for item in self.participants],
            "exceptions": [item.to_dict() for item in self.exceptions],
            "created_by": self.created_by,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description", "") or ""),
            start_time=parse_iso_datetime(data["start_time"]),
            end_time=parse_iso_datetime(data["end_time"]),
            timezone=str(data.get("timezone", "UTC") or "UTC"),
            recurrence_rule=data.get("recurrence_rule") or None,
            series_id=data.get("series_id") or None,
            participants=[Participant.from_dict(item) for item in data.get("participants") or []],
            exceptions=[EventException.from_dict(item) for item in data.get("exceptions") or []],
            created_by=str(data.get("created_by", "")),
            created_at=parse_iso_datetime(data.get("created_at")),
            updated_at=parse_iso_datetime(data.get("updated_at")),
        )


@dataclass
class Occurrence:
    start_time: datetime
    end_time: datetime
    original_event_id: str
    override: OccurrencePatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "original_event_id": self.original_event_id,
            "override": self.override.to_dict() if self.override is not None else None,
        }


@dataclass
class RecurrenceInput:
    freq: str
    interval: int = 1
    until: str | None = None
    byweekday: list[str] = field(default_factory=list)


@dataclass
class EventCreate:
    title: str
    start_time: str
    end_time: str
    timezone: str
    description: str = ""
    recurrence: RecurrenceInput | None = None
    participants: list[str] = field(default_factory=list)


@dataclass
class EventUpdate:
    """Fields supplied by the caller; local times are read in ``timezone``."""

    title: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    recurrence: RecurrenceInput | None = None
    participants: list[str] | None = None
    delete_occurrence: bool = False


@dataclass
class DeleteResult:
    message: str
    deleted_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StorageConfig:
    db_path: str = "data/events.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/events.db")).strip() or "data/events.db")


@dataclass
class ApiConfig:
    default_range_days: int = 365
    default_user_id: str = "user123"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ApiConfig":
        data = data or {}
        return cls(
            default_range_days=max(1, int(data.get("default_range_days", 365))),
            default_user_id=str(data.get("default_user_id", "user123")).strip() or "user123",
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            api=ApiConfig.from_dict(data.get("api")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


def default_query_window(now: datetime, range_days: int) -> tuple[datetime, datetime]:
    start = _ensure_tz(now).astimezone(timezone.utc)
    return start, start + timedelta(days=max(1, range_days))
