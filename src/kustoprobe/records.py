"""
Synthetic telemetry record and its CSV ingestion payload.

Column order matches the target table: Timestamp, FirstName, LastName, Isgood.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timezone

COLUMNS = ("Timestamp", "FirstName", "LastName", "Isgood")


def format_timestamp(ts: datetime) -> str:
    """RFC 3339, whole seconds, `Z` suffix (e.g. 2024-01-01T00:00:00Z)."""
    return to_utc(ts).strftime("%Y-%m-%dT%H:%M:%SZ")


def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


def parse_timestamp(value: object) -> datetime | None:
    """Best-effort coercion of a returned Timestamp cell to an aware UTC datetime."""
    if isinstance(value, datetime):
        return to_utc(value)
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


@dataclass(frozen=True)
class TelemetryRecord:
    timestamp: datetime
    first_name: str
    second_name: str
    flag: bool

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))

    @classmethod
    def now(cls, first_name: str = "Sql", second_name: str = "Isgood", flag: bool = True) -> "TelemetryRecord":
        return cls(timestamp=datetime.now(timezone.utc), first_name=first_name, second_name=second_name, flag=bool(flag))

    def values(self) -> tuple[str, str, str, str]:
        return (format_timestamp(self.timestamp), self.first_name, self.second_name, "true" if self.flag else "false")

    def to_csv(self) -> str:
        buf = io.StringIO()
        csv.writer(buf, lineterminator="\n").writerow(self.values())
        return buf.getvalue()

    def as_dict(self) -> dict[str, object]:
        return dict(zip(COLUMNS, (format_timestamp(self.timestamp), self.first_name, self.second_name, self.flag)))
