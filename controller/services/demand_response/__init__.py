"""
Demand-Response Event Handler - grid curtailment allocation
"""

from .allocation import AllocationStrategy, PriorityOrderAllocation, ProportionalAllocation
from .handler import AllocationResult, DemandResponseHandler

__all__ = [
    "AllocationResult",
    "AllocationStrategy",
    "DemandResponseHandler",
    "PriorityOrderAllocation",
    "ProportionalAllocation",
]
