from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RetryConfig(BaseModel):
    """Retry budget and backoff settings for step handlers."""

    max_retries: Dict[str, int] = Field(
        default_factory=lambda: {"agent": 3, "decision": 3, "tool": 2}
    )
    backoff_base: float = 2.0
    jitter: float = 0.5
    max_delay: float = 30.0
    agent_timeout: float = 120.0


class EscalationConfig(BaseModel):
    """Confidence gating for the decision engine."""

    confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    max_specialist_invocations: int = 3
    onboarding_dir: Optional[str] = None
    answers: Dict[str, str] = Field(default_factory=dict)


class ReviewConfig(BaseModel):
    """Dual review thresholds."""

    pass_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_iterations: int = 3
    self_weight: float = 0.5
    independent_weight: float = 0.5
    sub_check_pass_score: float = 85.0
    bottleneck_seconds: float = 300.0


class StorageConfig(BaseModel):
    """Where workflow state and escalations are kept."""

    backend: Literal["filesystem", "inmemory"] = "filesystem"
    state_dir: str = "workflow-state"
    escalations_dir: str = "escalations"
    backups: int = 3


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_state_dir = os.getenv("STEPWISE_STATE_DIR")
    if env_state_dir:
        config.storage.state_dir = env_state_dir
    env_escalations_dir = os.getenv("STEPWISE_ESCALATIONS_DIR")
    if env_escalations_dir:
        config.storage.escalations_dir = env_escalations_dir
    return config
