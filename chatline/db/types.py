"""Custom SQLAlchemy column types."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.types import JSON, DateTime, TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way in; values are normalized to UTC on bind
    and re-tagged as UTC on load so comparisons never mix naive and aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class EnumList(TypeDecorator):
    """JSON list of closed-enum values (e.g. a notification channel set).

    Unknown values are rejected on write; order is normalized and duplicates
    dropped so the stored set compares equal regardless of input order.
    """

    impl = JSON
    cache_ok = True

    def __init__(self, enum_cls: type[Enum], *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_cls = enum_cls

    def _normalize(self, values) -> list[str]:
        allowed = [member.value for member in self.enum_cls]
        normalized: set[str] = set()
        for raw in values:
            value = raw.value if isinstance(raw, Enum) else str(raw).strip().lower()
            if value not in allowed:
                raise ValueError(f"'{value}' is not a valid {self.enum_cls.__name__}")
            normalized.add(value)
        return [value for value in allowed if value in normalized]

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self._normalize(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return list(value)
