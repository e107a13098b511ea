"""
Actuation Interface

Abstract command channel to zone equipment. Commands carry the combined
target state of a zone for one action kind; magnitude 0 restores normal
operation. Delivery is fire-and-forget and acknowledged asynchronously.
"""

from dataclasses import dataclass
from typing import Protocol

from common.models import AckStatus, ActionKind


@dataclass(frozen=True)
class ZoneCommand:
    """Target state for one action kind on a zone"""
    kind: ActionKind
    magnitude_kw: float

    @property
    def is_restore(self) -> bool:
        return self.magnitude_kw <= 0

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "magnitude_kw": self.magnitude_kw}


class ActuationInterface(Protocol):
    """Device gateway contract"""

    async def send_command(
        self,
        zone_id: str,
        action: ZoneCommand,
        duration_seconds: float,
    ) -> str:
        """Send a command and return its command id (no waiting for the device)"""
        ...

    async def get_ack_status(self, command_id: str) -> AckStatus:
        ...
