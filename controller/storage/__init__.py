"""
Storage

Persistence collaborators for the controller:
- base.py - EnergyStore interface
- memory.py - In-memory store (tests, single-process runs)
- supabase_store.py - Supabase-backed store (production)
"""

from .base import EnergyStore
from .memory import InMemoryStore

__all__ = ["EnergyStore", "InMemoryStore"]
