"""Provider models used for routing."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from careflow.models.risk import ProviderType, RiskCategory


class ProviderProfile(BaseModel):
    """A provider as the directory describes it."""
    provider_id: str
    display_name: str | None = None
    provider_type: ProviderType = ProviderType.GENERAL
    specializations: list[str] = Field(default_factory=list)

    # Availability
    next_available_at: datetime | None = None
    estimated_wait_minutes: int | None = Field(default=None, ge=0)

    # Track record
    risk_experience: list[RiskCategory] = Field(default_factory=list)
    satisfaction_rating: float | None = Field(default=None, ge=0.0, le=5.0)

    active: bool = True


class ProviderCandidate(BaseModel):
    """A ranked match. Transient, kept only in the routing decision record."""
    model_config = ConfigDict(frozen=True)

    provider_id: str
    match_score: float = Field(ge=0.0, le=1.0)
    reasons: list[str] = Field(default_factory=list)
    estimated_wait_minutes: int | None = None
