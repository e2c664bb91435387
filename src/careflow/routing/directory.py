"""Provider Directory - source of routing candidates"""
from abc import ABC, abstractmethod
from pathlib import Path
import json

import structlog

from careflow.models.provider import ProviderProfile
from careflow.models.risk import RiskAssessment

logger = structlog.get_logger(__name__)


class ProviderDirectory(ABC):
    """
    Supplies the candidate provider set for a flow.

    Backed by whatever roster service the deployment uses; the state
    machine only needs this one query.
    """

    @abstractmethod
    async def list_candidates(
        self,
        category_id: str,
        assessment: RiskAssessment | None = None,
    ) -> list[ProviderProfile]:
        """Active providers able to take flows in this category."""
        pass


class InMemoryProviderDirectory(ProviderDirectory):
    """
    Roster kept in process memory.

    Providers register per category; a provider registered without
    categories serves every category.
    """

    def __init__(self, providers: list[ProviderProfile] | None = None):
        self._providers: dict[str, ProviderProfile] = {}
        self._categories: dict[str, set[str]] = {}
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryProviderDirectory":
        """
        Load a roster from a JSON file.

        The file holds a list of provider objects; an optional
        ``categories`` list on each entry limits where it is offered.
        """
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f)

        directory = cls()
        for entry in entries:
            entry = dict(entry)
            categories = entry.pop("categories", None)
            directory.register(ProviderProfile.model_validate(entry), categories)

        logger.info("Provider roster loaded", path=str(path), providers=len(directory._providers))
        return directory

    def register(self, provider: ProviderProfile, categories: list[str] | None = None) -> str:
        """Register or replace a provider."""
        self._providers[provider.provider_id] = provider
        self._categories[provider.provider_id] = set(categories or [])
        return provider.provider_id

    def remove(self, provider_id: str) -> bool:
        self._categories.pop(provider_id, None)
        return self._providers.pop(provider_id, None) is not None

    def get(self, provider_id: str) -> ProviderProfile | None:
        return self._providers.get(provider_id)

    async def list_candidates(
        self,
        category_id: str,
        assessment: RiskAssessment | None = None,
    ) -> list[ProviderProfile]:
        results = []
        for provider_id in sorted(self._providers):
            provider = self._providers[provider_id]
            if not provider.active:
                continue
            categories = self._categories.get(provider_id)
            if categories and category_id not in categories:
                continue
            results.append(provider)
        return results
