"""
Sensor Feed - latest zone environment snapshots (read-only)
"""

from .feed import InMemorySensorFeed, SensorFeed, SupabaseSensorFeed

__all__ = ["InMemorySensorFeed", "SensorFeed", "SupabaseSensorFeed"]
