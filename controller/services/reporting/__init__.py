"""
Reporting - energy analytics and optimization recommendations
"""

from .recommendations import EnergyAnalytics, Recommendation, RecommendationService

__all__ = ["EnergyAnalytics", "Recommendation", "RecommendationService"]
