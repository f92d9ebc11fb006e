# recurrence.py
"""
Recurrence rules for repeating posts.

Two forms are understood:
  - interval rules: "every 1 day", "every 30 minutes", "every week",
    plus the aliases "hourly", "daily" and "weekly"
  - five-field cron expressions ("0 9 * * MON"), evaluated in UTC
"""
import re
from datetime import timedelta

from croniter import croniter

from errors import ValidationError

UNITS = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

ALIASES = {
    "hourly": "every 1 hour",
    "daily": "every 1 day",
    "weekly": "every 1 week",
}

_INTERVAL_RE = re.compile(r"^every\s+(?:(\d+)\s+)?(second|minute|hour|day|week)s?$")


def _interval(rule):
    text = " ".join(rule.strip().lower().split())
    text = ALIASES.get(text, text)
    m = _INTERVAL_RE.match(text)
    if not m:
        return None
    count = int(m.group(1)) if m.group(1) else 1
    if count < 1:
        raise ValidationError(f"Invalid repeat rule {rule!r}: interval must be at least 1")
    return UNITS[m.group(2)] * count


def validate_rule(rule):
    if not isinstance(rule, str) or not rule.strip():
        raise ValidationError("repeatRule must be a non-empty string")
    if _interval(rule) is not None:
        return
    if len(rule.split()) == 5 and croniter.is_valid(rule):
        return
    raise ValidationError(f"Invalid repeat rule {rule!r}")


def next_occurrence(rule, after):
    """First occurrence of `rule` strictly after the aware datetime `after`"""
    step = _interval(rule)
    if step is not None:
        return after + step
    return croniter(rule, after).get_next(type(after))


def next_run_after(rule, scheduled_at, now):
    """
    First occurrence after both the previous one and `now`.
    Missed occurrences are skipped rather than fired in a burst; the jump is
    computed directly so a long outage costs no more than an on-time run.
    """
    step = _interval(rule)
    if step is not None:
        if now < scheduled_at:
            return scheduled_at + step
        return scheduled_at + ((now - scheduled_at) // step + 1) * step
    return croniter(rule, max(scheduled_at, now)).get_next(type(scheduled_at))
