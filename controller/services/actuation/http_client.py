"""
HTTP Actuation Client

Talks to the site device gateway, which owns the field protocols
(BACnet, Modbus, MQTT) and reports acknowledgements per command.

Gateway API:
    POST /commands            {"zone_id", "kind", "magnitude_kw", "duration_seconds"}
                              -> {"command_id": "..."}
    GET  /commands/{id}       -> {"status": "PENDING" | "ACKED" | "FAILED"}
"""

import httpx

from common.config import ActuationSettings
from common.logging_setup import get_service_logger
from common.models import AckStatus

from .interface import ZoneCommand

logger = get_service_logger("actuation.http")


class HttpActuationClient:
    """ActuationInterface over the device gateway REST API"""

    def __init__(self, settings: ActuationSettings | None = None):
        self.settings = settings or ActuationSettings()
        # Reusable HTTP client - avoids connection overhead per command
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.settings.gateway_url,
                timeout=self.settings.request_timeout_s,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send_command(
        self,
        zone_id: str,
        action: ZoneCommand,
        duration_seconds: float,
    ) -> str:
        client = await self._get_client()
        response = await client.post(
            "/commands",
            json={
                "zone_id": zone_id,
                **action.to_dict(),
                "duration_seconds": duration_seconds,
            },
        )
        response.raise_for_status()
        command_id = response.json()["command_id"]
        logger.debug(
            f"Sent {action.kind.value} {action.magnitude_kw:.1f}kW to {zone_id}: {command_id}",
            extra={"zone_id": zone_id, "command_id": command_id},
        )
        return command_id

    async def get_ack_status(self, command_id: str) -> AckStatus:
        client = await self._get_client()
        response = await client.get(f"/commands/{command_id}")
        if response.status_code == 404:
            return AckStatus.FAILED
        response.raise_for_status()
        return AckStatus(response.json().get("status", "PENDING"))
