"""
Actuation - command channel to zone equipment

- interface.py - ActuationInterface protocol and ZoneCommand
- http_client.py - device gateway client (httpx)
- memory.py - in-memory actuator for tests and dry runs
- tracker.py - acknowledgement tracking with bounded resends
"""

from .http_client import HttpActuationClient
from .interface import ActuationInterface, ZoneCommand
from .memory import InMemoryActuator
from .tracker import CommandTracker, TrackedCommand

__all__ = [
    "ActuationInterface",
    "CommandTracker",
    "HttpActuationClient",
    "InMemoryActuator",
    "TrackedCommand",
    "ZoneCommand",
]
