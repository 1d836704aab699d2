"""Canonical configuration surface for the consensus core."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class ReconcilerSettings(BaseModel):
    """Administrative options of the consensus reconciler.

    Applied live: the reconciler reads these at the start of every run.
    """
    interval_minutes: int = Field(default=30, ge=1)
    first_escalation_hours: float = Field(default=4, gt=0)
    subsequent_escalation_hours: float = Field(default=4, gt=0)
    max_escalation_levels: int = Field(default=3, ge=0)
    batch_size: int = Field(default=50, ge=1)
    expiration_warning_minutes: int = Field(default=60, ge=0)
    integrity_sample_max: int = Field(default=10, ge=0)
    integrity_sample_ratio: float = Field(default=0.1, ge=0, le=1)
    integrity_lookback_hours: float = Field(default=24, gt=0)


class ProofSettings(BaseModel):
    """Verification parameters for each proof type."""
    challenge_ttl_seconds: int = Field(default=300, ge=1)
    password_freshness_seconds: int = 300
    totp_digits: int = 6
    totp_period_seconds: int = 30
    totp_window: int = 1
    allowed_origins: List[str] = Field(default_factory=lambda: [
        "https://app.example.com",
    ])
    biometric_types: List[str] = Field(default_factory=lambda: ["FINGERPRINT", "FACE", "IRIS"])
    biometric_confidence_threshold: float = 0.95
    pki_algorithms: List[str] = Field(default_factory=lambda: ["RSA-SHA256", "ECDSA-SHA256"])
    external_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        """Parse comma-separated origins from env var."""
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v


class ConsensusSettings(BaseSettings):
    """Main consensus configuration."""

    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Quorum defaults
    default_high_value_threshold: Decimal = Decimal("10000")
    default_approval_hours: int = 24
    max_escalation_levels: int = 3

    # Optimistic concurrency
    concurrency_retries: int = Field(default=5, ge=1)

    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    proofs: ProofSettings = Field(default_factory=ProofSettings)

    @model_validator(mode="after")
    def sync_escalation_cap(self) -> "ConsensusSettings":
        """The reconciler never escalates past the orchestrator's cap."""
        if self.reconciler.max_escalation_levels > self.max_escalation_levels:
            self.reconciler.max_escalation_levels = self.max_escalation_levels
        return self

    class Config:
        env_prefix = "CONSENSUS_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"


@lru_cache
def load_settings(env_file: str | None = None) -> ConsensusSettings:
    """Load ConsensusSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    return ConsensusSettings(_env_file=env_path)


__all__ = [
    "ReconcilerSettings",
    "ProofSettings",
    "ConsensusSettings",
    "load_settings",
]
