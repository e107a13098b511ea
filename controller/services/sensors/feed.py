"""
Sensor Feed

Read-only view of the latest environmental snapshot per zone. Sensor
ingestion happens elsewhere; the controller only reads.
"""

import asyncio
from typing import Protocol

from supabase import Client

from common.logging_setup import get_service_logger
from common.models import SensorSnapshot
from common.timestamp import parse_timestamp

logger = get_service_logger("sensors")


class SensorFeed(Protocol):
    """Latest snapshot per zone (None when the zone has no data)"""

    async def current(self, zone_id: str) -> SensorSnapshot | None:
        ...


class InMemorySensorFeed:
    """Sensor feed backed by a dict (tests, simulations)"""

    def __init__(self):
        self._snapshots: dict[str, SensorSnapshot] = {}

    def update(self, snapshot: SensorSnapshot) -> None:
        self._snapshots[snapshot.zone_id] = snapshot

    def clear(self, zone_id: str) -> None:
        self._snapshots.pop(zone_id, None)

    async def current(self, zone_id: str) -> SensorSnapshot | None:
        return self._snapshots.get(zone_id)


class SupabaseSensorFeed:
    """Reads the newest row of zone_environment for a zone"""

    def __init__(self, client: Client, table: str = "zone_environment"):
        self._client = client
        self._table = table

    async def current(self, zone_id: str) -> SensorSnapshot | None:
        def query():
            return (
                self._client.table(self._table)
                .select("*")
                .eq("zone_id", zone_id)
                .order("timestamp", desc=True)
                .limit(1)
                .execute()
            )

        result = await asyncio.to_thread(query)
        rows = result.data or []
        if not rows:
            return None

        row = rows[0]
        return SensorSnapshot(
            zone_id=zone_id,
            timestamp=parse_timestamp(row["timestamp"]),
            temperature_c=float(row["temperature_c"]),
            humidity_pct=float(row["humidity_pct"]),
            dli_so_far=float(row.get("dli_so_far") or 0.0),
            projected_dli=float(row.get("projected_dli") or 0.0),
            dark_hours=float(row.get("dark_hours") or 0.0),
        )
