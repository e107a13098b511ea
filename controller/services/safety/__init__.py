"""
Safety Constraint Engine - crop-safety gate for load actions
"""

from .engine import ProposedAction, SafetyConstraintEngine, SafetyVerdict

__all__ = ["ProposedAction", "SafetyConstraintEngine", "SafetyVerdict"]
