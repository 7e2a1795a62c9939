"""Runtime configuration for the resilience layer.

Defaults match the behavior of the web client. Every field can be
overridden from the environment with a ``FITTRACKR_`` prefixed variable,
e.g. ``FITTRACKR_MAX_ATTEMPTS=8``.
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "FITTRACKR_"


class ResilienceConfig(BaseModel):
    """Configuration for storage, sync, checkpoints and history."""

    model_config = {"extra": "forbid"}

    # Storage
    db_path: str = ".fittrackr/local.db"
    namespace: str = "fittrackr"
    storage_poll_interval: float = Field(default=1.0, gt=0)

    # Remote collaborator
    remote_url: Optional[str] = None
    auth_token: Optional[str] = None
    request_timeout: float = Field(default=10.0, gt=0)
    health_url: Optional[str] = None
    probe_interval: float = Field(default=15.0, gt=0)

    # Retry policy
    max_attempts: int = Field(default=5, ge=1)
    initial_backoff_seconds: float = Field(default=1.0, ge=0)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)

    # Sync engine
    batch_size: int = Field(default=20, ge=1)
    periodic_sync_interval: Optional[float] = None

    # Checkpoints and active session
    locator_interval: float = Field(default=2.0, gt=0)
    checkpoint_max_age_hours: float = Field(default=24.0, gt=0)

    # History
    history_limit: int = Field(default=50, ge=1)

    # Event journal
    log_dir: str = ".fittrackr"
    journal_enabled: bool = True

    @field_validator("namespace")
    @classmethod
    def namespace_has_no_separator(cls, v: str) -> str:
        if not v or ":" in v:
            raise ValueError("namespace must be non-empty and must not contain ':'")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "ResilienceConfig":
        """Build a config from ``FITTRACKR_*`` variables plus explicit overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
