"""
Command Tracker

Follows actuation commands until the device acknowledges them.

The control loop calls poll() once per tick; nothing here waits on a
device. A command that is not acknowledged within ack_timeout_s (or is
reported FAILED) is resent, up to the retry policy's max_attempts. After
that it is reported back to the loop as failed, which marks the
schedules degraded and raises an alert.

A newer command for the same zone and action kind replaces the tracked
one, since it carries the zone's new combined state.
"""

from dataclasses import dataclass, field
from datetime import datetime

from common.config import ActuationSettings
from common.exceptions import ActuationFailed
from common.logging_setup import get_service_logger
from common.models import AckStatus, ActionKind
from common.retry import RetryPolicy
from common.timestamp import ensure_utc

from .interface import ActuationInterface, ZoneCommand

logger = get_service_logger("actuation.tracker")


@dataclass
class TrackedCommand:
    """A command awaiting acknowledgement"""
    facility_id: str
    zone_id: str
    action: ZoneCommand
    duration_seconds: float
    sent_at: datetime
    command_id: str | None = None
    attempts: int = 1
    schedule_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> tuple[str, ActionKind]:
        return self.zone_id, self.action.kind

    def to_error(self) -> ActuationFailed:
        return ActuationFailed(self.zone_id, self.command_id or "unsent", self.attempts)


class CommandTracker:
    """Non-blocking ack tracking with bounded resends"""

    def __init__(
        self,
        actuator: ActuationInterface,
        settings: ActuationSettings | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.actuator = actuator
        self.settings = settings or ActuationSettings()
        self.retry = retry or RetryPolicy(max_attempts=self.settings.max_attempts)
        self._pending: dict[tuple[str, ActionKind], TrackedCommand] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, zone_id: str | None = None) -> list[TrackedCommand]:
        return [
            c for c in self._pending.values()
            if zone_id is None or c.zone_id == zone_id
        ]

    async def _send(self, tracked: TrackedCommand) -> None:
        try:
            tracked.command_id = await self.actuator.send_command(
                tracked.zone_id, tracked.action, tracked.duration_seconds
            )
        except Exception as e:
            # Counted as an attempt; the next poll resends
            tracked.command_id = None
            logger.warning(
                f"Command send failed for {tracked.zone_id} "
                f"(attempt {tracked.attempts}): {e}",
                extra={"zone_id": tracked.zone_id},
            )

    async def dispatch(
        self,
        facility_id: str,
        zone_id: str,
        action: ZoneCommand,
        duration_seconds: float,
        now: datetime,
        schedule_ids: tuple[str, ...] = (),
    ) -> TrackedCommand:
        """Send a command and start tracking it"""
        tracked = TrackedCommand(
            facility_id=facility_id,
            zone_id=zone_id,
            action=action,
            duration_seconds=duration_seconds,
            sent_at=ensure_utc(now),
            schedule_ids=tuple(schedule_ids),
        )
        self._pending[tracked.key] = tracked
        await self._send(tracked)
        return tracked

    async def poll(self, now: datetime) -> list[TrackedCommand]:
        """
        Check acknowledgements once.

        Returns:
            Commands that exhausted their attempts (no longer tracked)
        """
        now = ensure_utc(now)
        failed: list[TrackedCommand] = []

        for key, tracked in list(self._pending.items()):
            status = AckStatus.FAILED
            if tracked.command_id is not None:
                try:
                    status = await self.actuator.get_ack_status(tracked.command_id)
                except Exception as e:
                    logger.warning(f"Ack query failed for {tracked.command_id}: {e}")
                    status = AckStatus.PENDING

            if status == AckStatus.ACKED:
                del self._pending[key]
                continue

            waited = (now - tracked.sent_at).total_seconds()
            if status == AckStatus.PENDING and waited < self.settings.ack_timeout_s:
                continue

            error = tracked.to_error()
            if self.retry.should_retry(tracked.attempts, error):
                tracked.attempts += 1
                tracked.sent_at = now
                logger.info(
                    f"Resending {tracked.action.kind.value} to {tracked.zone_id} "
                    f"(attempt {tracked.attempts}/{self.retry.max_attempts})",
                    extra={"zone_id": tracked.zone_id},
                )
                await self._send(tracked)
                continue

            del self._pending[key]
            logger.error(error.message, extra={"zone_id": tracked.zone_id})
            failed.append(tracked)

        return failed
