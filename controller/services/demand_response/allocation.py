"""
DR Allocation Strategies

Split a required reduction across zones given each zone's spare
capacity. Strategies are pluggable; the default is proportional to zone
capacity with water-filling: demand a saturated zone cannot take is
redistributed over the zones that still have room.
"""

import math
from typing import Protocol

# Shares are kW with watt resolution
SHARE_DECIMALS = 3
EPSILON = 1e-9


class AllocationStrategy(Protocol):
    def allocate(
        self,
        required_kw: float,
        spare_kw: dict[str, float],
        capacity_kw: dict[str, float],
    ) -> dict[str, float]:
        """Return kW per zone; never more than the zone's spare capacity"""
        ...


class ProportionalAllocation:
    """Proportional to capacity, with water-filling of leftover demand"""

    def allocate(
        self,
        required_kw: float,
        spare_kw: dict[str, float],
        capacity_kw: dict[str, float],
    ) -> dict[str, float]:
        shares = {zone_id: 0.0 for zone_id in sorted(spare_kw)}
        open_zones = [z for z in sorted(spare_kw) if spare_kw[z] > EPSILON]
        remaining = max(0.0, required_kw)

        while remaining > EPSILON and open_zones:
            weights = {z: max(capacity_kw.get(z, 0.0), EPSILON) for z in open_zones}
            total_weight = math.fsum(weights.values())

            given = 0.0
            still_open = []
            for zone_id in open_zones:
                room = spare_kw[zone_id] - shares[zone_id]
                offer = remaining * weights[zone_id] / total_weight
                take = min(offer, room)
                shares[zone_id] += take
                given += take
                if room - take > EPSILON:
                    still_open.append(zone_id)

            remaining -= given
            open_zones = still_open
            if given <= EPSILON:
                break

        return {
            zone_id: round(share, SHARE_DECIMALS)
            for zone_id, share in shares.items()
            if share > EPSILON
        }


class PriorityOrderAllocation:
    """
    Fill zones one by one in the given order (e.g. lowest crop value first).

    Zones not named in `order` are filled last, by id.
    """

    def __init__(self, order: list[str]):
        self.order = list(order)

    def allocate(
        self,
        required_kw: float,
        spare_kw: dict[str, float],
        capacity_kw: dict[str, float],
    ) -> dict[str, float]:
        ranked = [z for z in self.order if z in spare_kw]
        ranked += sorted(z for z in spare_kw if z not in ranked)

        shares: dict[str, float] = {}
        remaining = max(0.0, required_kw)
        for zone_id in ranked:
            if remaining <= EPSILON:
                break
            take = min(remaining, spare_kw[zone_id])
            if take > EPSILON:
                shares[zone_id] = round(take, SHARE_DECIMALS)
                remaining -= take
        return shares
