from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from app.core.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def business_date(moment: datetime | None = None) -> date:
    """Calendar date at the business office for ``moment`` (default: now)."""
    settings = get_settings()
    resolved = moment or utcnow()
    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    offset = timezone(timedelta(hours=settings.business_utc_offset_hours))
    return resolved.astimezone(offset).date()


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"
