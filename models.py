# models.py
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, RUNNING, SUCCEEDED, FAILED, CANCELLED)
TERMINAL_STATUSES = (SUCCEEDED, FAILED, CANCELLED)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def utc_now():
    return datetime.now(timezone.utc)


def to_iso(dt):
    """Fixed-width UTC timestamp, so string order in SQL matches time order"""
    if dt.tzinfo is None:
        raise ValueError("naive datetime has no UTC offset")
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_utc(value):
    """
    Parse an ISO-8601 instant with an explicit offset ('Z' or +hh:mm).
    Returns an aware datetime in UTC. Raises ValueError otherwise.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        # older fromisoformat only takes 3 or 6 fraction digits
        text = _FRACTION_RE.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError(f"{value!r} has no UTC offset")
    return dt.astimezone(timezone.utc)


@dataclass
class ScheduledJob:
    draft_reference: str
    scheduled_at_utc: str
    time_zone: str = "UTC"
    repeat_rule: Optional[str] = None
    id: Optional[str] = None
    status: str = PENDING   # pending | running | succeeded | failed | cancelled
    last_error: Optional[str] = None
    attempts: int = 0
    max_retries: int = 3
    next_run_at: Optional[str] = None
    worker_id: Optional[str] = None
    lease_until: Optional[str] = None
    run_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def is_recurring(self):
        return bool(self.repeat_rule)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row):
        return cls(**{k: row[k] for k in row.keys() if k in cls.__dataclass_fields__})

    def to_dict(self):
        return asdict(self)
