"""
Careflow Provider Routing

Ranks candidate providers for an assessed flow.
"""

from careflow.routing.matcher import ProviderMatcher, MatchWeights, URGENCY_WINDOWS
from careflow.routing.directory import ProviderDirectory, InMemoryProviderDirectory

__all__ = [
    "ProviderMatcher",
    "MatchWeights",
    "URGENCY_WINDOWS",
    "ProviderDirectory",
    "InMemoryProviderDirectory",
]
