# submission.py
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import ValidationError
from models import PENDING, ScheduledJob, parse_utc, to_iso
from recurrence import validate_rule

logger = logging.getLogger(__name__)

SCHEDULING_DISABLED = "scheduling-disabled"


def _validate_time_zone(name):
    if name is None:
        return "UTC"
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("timeZone must be a non-empty string")
    name = name.strip()
    if name.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timeZone {name!r}")
    return name


class SubmissionGate:
    """Validates scheduling requests and turns them into pending jobs"""

    def __init__(self, store, settings, draft_lookup=None):
        self.store = store
        self.settings = settings
        self.draft_lookup = draft_lookup

    def submit(self, draft_reference, scheduled_at_utc, time_zone="UTC", repeat_rule=None):
        request = {
            "draftReference": draft_reference,
            "scheduledAtUtc": scheduled_at_utc,
            "timeZone": time_zone,
            "repeatRule": repeat_rule,
        }
        job = self._build_job(draft_reference, scheduled_at_utc, time_zone, repeat_rule)

        if not self.settings.scheduling_enabled:
            logger.info("Scheduling disabled; not enqueuing draft %s", draft_reference)
            return {"status": SCHEDULING_DISABLED, "job": request}

        if self.draft_lookup is not None and not self.draft_lookup(job.draft_reference):
            raise ValidationError(f"Draft {job.draft_reference!r} does not exist")

        job_id = self.store.enqueue(job)
        return {"jobId": job_id, "status": PENDING}

    def _build_job(self, draft_reference, scheduled_at_utc, time_zone, repeat_rule):
        if isinstance(repeat_rule, str) and not repeat_rule.strip():
            repeat_rule = None
        if not isinstance(draft_reference, str) or not draft_reference.strip():
            raise ValidationError("draftReference is required")
        if scheduled_at_utc is None or scheduled_at_utc == "":
            raise ValidationError("scheduledAtUtc is required")
        try:
            when = parse_utc(scheduled_at_utc)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"scheduledAtUtc is not an absolute ISO-8601 instant: {e}")
        tz = _validate_time_zone(time_zone)
        if repeat_rule is not None:
            validate_rule(repeat_rule)

        return ScheduledJob(
            draft_reference=draft_reference.strip(),
            scheduled_at_utc=to_iso(when),
            time_zone=tz,
            repeat_rule=repeat_rule.strip() if repeat_rule else None,
            max_retries=self.settings.max_retries,
        )
