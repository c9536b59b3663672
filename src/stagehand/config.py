"""Configuration loading for Stagehand.

Reads .stagehand/config.yaml. Every field has a default, so an empty or
missing section is valid; only the file itself must exist when loaded from
disk. Environment variables override a handful of deployment settings.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from stagehand.models import Agent

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class GatewayConfig(BaseModel):
    """HTTP agent gateway used for dispatch and session notifications."""

    base_url: str = "http://127.0.0.1:18789"
    token_env: str = "STAGEHAND_GATEWAY_TOKEN"
    timeout_seconds: float = 30.0

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def resolve_token(self) -> str | None:
        return os.environ.get(self.token_env) or None


class EngineConfig(BaseModel):
    """Timing, budget and identity settings for one engine process."""

    database_path: str = ".stagehand/stagehand.db"
    workflow_dir: str = ".stagehand"
    engine_id: str = Field(default_factory=lambda: f"engine-{uuid.uuid4().hex[:8]}")

    # Claims and leases
    claim_ttl_seconds: int = 15 * 60
    lease_ttl_seconds: int = 60

    # Stale recovery
    stale_operation_age_seconds: int = 20 * 60
    active_session_max_age_seconds: int = 5 * 60

    # Ticking
    tick_limit: int = 25
    max_tick_limit: int = 100
    tick_interval_seconds: int = 30

    # Budgets
    default_max_retries: int = 2
    default_max_iterations: int = 2
    default_max_stories: int = 25

    # Notifications go to this session (the human/CEO actor)
    ceo_session_key: str = "agent:main:main"
    actor: str = "system:manager"

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    # Seeded into the agent registry at startup
    agents: list[Agent] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_limits(self) -> EngineConfig:
        if self.tick_limit < 1:
            raise ValueError("tick_limit must be >= 1")
        if self.max_tick_limit < self.tick_limit:
            raise ValueError("max_tick_limit must be >= tick_limit")
        for name in ("claim_ttl_seconds", "lease_ttl_seconds", "stale_operation_age_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    def clamp_limit(self, limit: int | None) -> int:
        """Normalize a caller-supplied batch limit into [1, max_tick_limit]."""
        if limit is None:
            return self.tick_limit
        return max(1, min(int(limit), self.max_tick_limit))


DEFAULT_CONFIG_YAML = """\
# Stagehand engine configuration
database_path: .stagehand/stagehand.db
workflow_dir: .stagehand

claim_ttl_seconds: 900
lease_ttl_seconds: 60
stale_operation_age_seconds: 1200
active_session_max_age_seconds: 300

tick_limit: 25
tick_interval_seconds: 30

ceo_session_key: "agent:main:main"

gateway:
  base_url: http://127.0.0.1:18789
  token_env: STAGEHAND_GATEWAY_TOKEN

agents:
  - id: planner
    name: planner
    display_name: Planner
    role: plan
    station: spec
    capabilities: [plan, research, spec]
  - id: builder
    name: builder
    display_name: Builder
    role: build
    station: build
    capabilities: [build, code]
  - id: reviewer
    name: reviewer
    display_name: Reviewer
    role: build_review
    station: qa
    capabilities: [review, qa]
  - id: sentinel
    name: sentinel
    display_name: Sentinel
    role: security
    station: security
    capabilities: [security, auth]
  - id: operator
    name: operator
    display_name: Operator
    role: ops
    station: ops
    capabilities: [ops, deploy]
"""


def load_config(stagehand_dir: Path) -> EngineConfig:
    """Load engine configuration from a .stagehand/ directory.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = stagehand_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Stagehand config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Stagehand config must be a mapping: {config_path}")

    config = EngineConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("STAGEHAND_DB_PATH")
    if db_path:
        config.database_path = db_path

    gateway_url = os.environ.get("STAGEHAND_GATEWAY_URL")
    if gateway_url:
        config.gateway.base_url = gateway_url.rstrip("/")

    engine_id = os.environ.get("STAGEHAND_ENGINE_ID")
    if engine_id:
        config.engine_id = engine_id

    logger.info("Loaded Stagehand config: engine=%s db=%s", config.engine_id, config.database_path)
    return config
