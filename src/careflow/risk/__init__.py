"""
Careflow Risk Assessment

Deterministic scoring of completed intakes into immutable RiskAssessments.
"""

from careflow.risk.scorer import RiskScorer, CrisisScreen, categorize, clamp_score
from careflow.risk.weights import RiskWeights, DEFAULT_FACTOR_WEIGHTS

__all__ = [
    "RiskScorer",
    "CrisisScreen",
    "categorize",
    "clamp_score",
    "RiskWeights",
    "DEFAULT_FACTOR_WEIGHTS",
]
