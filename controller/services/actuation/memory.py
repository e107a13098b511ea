"""
In-Memory Actuator

Records every command and answers ack queries from a settable table.
Used by tests and dry runs of the control loop.
"""

import itertools
from dataclasses import dataclass

from common.models import AckStatus

from .interface import ZoneCommand


@dataclass
class SentCommand:
    command_id: str
    zone_id: str
    action: ZoneCommand
    duration_seconds: float


class InMemoryActuator:
    """ActuationInterface that acknowledges immediately unless told otherwise"""

    def __init__(self, default_status: AckStatus = AckStatus.ACKED):
        self.default_status = default_status
        self.sent: list[SentCommand] = []
        self._status: dict[str, AckStatus] = {}
        self._ids = itertools.count(1)

    async def send_command(
        self,
        zone_id: str,
        action: ZoneCommand,
        duration_seconds: float,
    ) -> str:
        command_id = f"cmd-{next(self._ids)}"
        self.sent.append(SentCommand(command_id, zone_id, action, duration_seconds))
        self._status[command_id] = self.default_status
        return command_id

    async def get_ack_status(self, command_id: str) -> AckStatus:
        return self._status.get(command_id, AckStatus.FAILED)

    def set_status(self, command_id: str, status: AckStatus) -> None:
        self._status[command_id] = status

    def commands_for(self, zone_id: str) -> list[SentCommand]:
        return [c for c in self.sent if c.zone_id == zone_id]

    def last_command(self, zone_id: str, kind=None) -> SentCommand | None:
        for command in reversed(self.sent):
            if command.zone_id == zone_id and (kind is None or command.action.kind == kind):
                return command
        return None
