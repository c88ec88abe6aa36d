from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StoreClock:
    """Reads the current time from the shared store so every process agrees on it."""

    def now(self, db: Session) -> datetime:
        return to_utc(db.execute(select(func.now())).scalar())


class ManualClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = to_utc(start) if start else datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self, db: Optional[Session] = None) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current
