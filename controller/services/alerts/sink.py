"""
Alert Sinks

User-visible alerts raised by the control loop and the DR handler.

Alert Types:
- safety_violation: ACTIVE schedule cancelled to protect the crop
- safety_timeout: PENDING schedule never became safe to start
- actuation_failed: device never acknowledged a command
- partial_fulfillment: DR event could not be fully allocated
- control_error: unexpected error inside a control tick
"""

from datetime import datetime
from enum import Enum
from typing import Protocol

from common.logging_setup import get_service_logger, log_alarm
from common.models import Alert
from common.timestamp import utc_now

logger = get_service_logger("alerts")


class AlertType(str, Enum):
    SAFETY_VIOLATION = "safety_violation"
    SAFETY_TIMEOUT = "safety_timeout"
    ACTUATION_FAILED = "actuation_failed"
    PARTIAL_FULFILLMENT = "partial_fulfillment"
    CONTROL_ERROR = "control_error"


class Severity(str, Enum):
    """Alert severity levels (ordered from low to high)"""
    INFO = "info"
    WARNING = "warning"
    MAJOR = "major"
    CRITICAL = "critical"


class AlertSink(Protocol):
    async def emit_alert(
        self,
        facility_id: str,
        severity: Severity | str,
        message: str,
        alert_type: AlertType | str = "general",
        zone_id: str | None = None,
        schedule_id: str | None = None,
    ) -> Alert | None:
        ...


def _value(item) -> str:
    return item.value if isinstance(item, Enum) else str(item)


class LoggingAlertSink:
    """Alerts go to the structured log only"""

    def __init__(self):
        self.emitted: list[Alert] = []

    async def emit_alert(
        self,
        facility_id: str,
        severity: Severity | str,
        message: str,
        alert_type: AlertType | str = "general",
        zone_id: str | None = None,
        schedule_id: str | None = None,
    ) -> Alert | None:
        alert = Alert(
            facility_id=facility_id,
            severity=_value(severity),
            message=message,
            alert_type=_value(alert_type),
            zone_id=zone_id,
            schedule_id=schedule_id,
        )
        log_alarm(logger, facility_id, alert.severity, message, zone_id=zone_id)
        self.emitted.append(alert)
        return alert


class StoreAlertSink:
    """
    Persists alerts as alarms and logs them.

    Repeats of the same alert type for the same zone and schedule inside
    cooldown_seconds are suppressed.
    """

    def __init__(self, store, cooldown_seconds: float = 300.0, clock=utc_now):
        self.store = store
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_alert: dict[str, datetime] = {}

    @staticmethod
    def _key(facility_id: str, alert_type: str, zone_id: str | None, schedule_id: str | None) -> str:
        return f"{facility_id}:{alert_type}:{zone_id or 'facility'}:{schedule_id or '-'}"

    def _in_cooldown(self, key: str, now: datetime) -> bool:
        last = self._last_alert.get(key)
        if last is None:
            return False
        return (now - last).total_seconds() < self.cooldown_seconds

    async def emit_alert(
        self,
        facility_id: str,
        severity: Severity | str,
        message: str,
        alert_type: AlertType | str = "general",
        zone_id: str | None = None,
        schedule_id: str | None = None,
    ) -> Alert | None:
        now = self._clock()
        key = self._key(facility_id, _value(alert_type), zone_id, schedule_id)
        if self._in_cooldown(key, now):
            logger.debug(f"Alert suppressed (cooldown): {key}")
            return None

        alert = Alert(
            facility_id=facility_id,
            severity=_value(severity),
            message=message,
            created_at=now,
            alert_type=_value(alert_type),
            zone_id=zone_id,
            schedule_id=schedule_id,
        )
        log_alarm(logger, facility_id, alert.severity, message, zone_id=zone_id)
        await self.store.save_alert(alert)
        self._last_alert[key] = now
        return alert
