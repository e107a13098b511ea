"""
Rate Model - utility tariff lookup (time-of-use windows, demand charges)
"""

from .rate_model import RateModel, RateQuote

__all__ = ["RateModel", "RateQuote"]
