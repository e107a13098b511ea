"""
Savings Verification Engine - baseline vs actual savings reports
"""

from .engine import SavingsVerificationEngine, report_fingerprint

__all__ = ["SavingsVerificationEngine", "report_fingerprint"]
