# settings.py
import logging
import os
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")


def _as_bool(value):
    return str(value).strip().lower() in TRUE_VALUES


@dataclass
class Settings:
    """
    Runtime knobs for the gate and the workers.
    Built once at startup and passed in; nothing reads the environment later.
    """
    scheduling_enabled: bool = True
    lease_seconds: int = 30
    backoff_base: int = 2
    max_backoff_seconds: int = 300
    max_retries: int = 3
    poll_interval: float = 1.0
    publish_timeout_seconds: float = 10.0
    worker_count: int = 1

    @classmethod
    def load(cls, storage=None, environ=None):
        """
        defaults < POSTPUP_ENV (scheduling only) < config table
        Scheduling is on only in production, which is assumed when POSTPUP_ENV is unset.
        """
        environ = os.environ if environ is None else environ
        values = {"scheduling_enabled": environ.get("POSTPUP_ENV", "production").lower() == "production"}

        if storage is not None:
            for f in fields(cls):
                raw = storage.get_config(f.name)
                if raw is None:
                    continue
                try:
                    values[f.name] = _as_bool(raw) if isinstance(f.default, bool) else type(f.default)(raw)
                except ValueError:
                    logger.warning("Ignoring config %s=%r: not a valid %s", f.name, raw, type(f.default).__name__)
        settings = cls(**values)
        if settings.publish_timeout_seconds >= settings.lease_seconds:
            logger.warning(
                "publish_timeout_seconds (%s) >= lease_seconds (%s): a slow publish can outlive its lease "
                "and be picked up again by another worker",
                settings.publish_timeout_seconds, settings.lease_seconds,
            )
        return settings

    @classmethod
    def keys(cls):
        return [f.name for f in fields(cls)]
