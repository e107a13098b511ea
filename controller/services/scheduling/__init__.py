"""
Load-Shedding Scheduler

- scheduler.py - PENDING schedule creation and cancel requests
- control_loop.py - per-facility state machine (single writer)
- conflicts.py - rank order, exclusive vs stack policies
- optimizer.py - cost_optimization schedules ahead of peak windows
- service.py - runs all facility loops with a health server
"""

from .conflicts import peak_committed_kw, resolve_conflicts
from .control_loop import FacilityControlLoop
from .optimizer import PeakWindowOptimizer
from .scheduler import LoadSheddingScheduler, ShedRequest, effective_priority
from .service import ControlService
from .state import TickState, Transition, apply_transition

__all__ = [
    "ControlService",
    "FacilityControlLoop",
    "LoadSheddingScheduler",
    "PeakWindowOptimizer",
    "ShedRequest",
    "TickState",
    "Transition",
    "apply_transition",
    "effective_priority",
    "peak_committed_kw",
    "resolve_conflicts",
]
