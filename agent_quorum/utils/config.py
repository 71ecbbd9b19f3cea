"""
Configuration management for Agent Quorum.
"""

import json
import os
from datetime import datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "AGENT_QUORUM_"


class OrchestrationConfig(BaseModel):
    """Sizing and timeouts of the orchestration engine."""
    worker_pool_size: int = Field(default=8, ge=1, le=256)
    max_concurrent_sessions: int = Field(default=4, ge=1, le=100)
    agent_timeout_seconds: float = Field(default=30.0, gt=0)
    session_timeout_seconds: float = Field(default=300.0, gt=0)
    default_retry_limit: int = Field(default=3, ge=0, le=10)
    default_rounds: int = Field(default=3, ge=1, le=20)
    history_limit: int = Field(default=1000, ge=1)


class ConsensusConfig(BaseModel):
    """Thresholds of consensus scoring and insight extraction."""
    debate_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    high_consensus: float = Field(default=0.8, ge=0.0, le=1.0)
    medium_consensus: float = Field(default=0.6, ge=0.0, le=1.0)
    high_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    insight_prefix_length: int = Field(default=50, ge=1)
    max_insights: int = Field(default=10, ge=1)


class HealthConfig(BaseModel):
    """Limits of the agent health predicate."""
    inactivity_threshold_seconds: float = Field(default=3600.0, gt=0)
    min_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    max_response_time_ms: float = Field(default=30000.0, gt=0)
    recovery_after_seconds: float = Field(default=300.0, gt=0)


class TradingWindow(BaseModel):
    """Weekdays (Monday is 0) and half-open time range during which market jobs run."""
    weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    start: time = time(9, 0)
    end: time = time(16, 0)

    def contains(self, moment: datetime) -> bool:
        return moment.weekday() in self.weekdays and self.start <= moment.time() < self.end


class SchedulerConfig(BaseModel):
    """Triggers of the collaboration scheduler."""
    enabled: bool = True
    health_check_interval_seconds: float = Field(default=300.0, gt=0)
    market_analysis_interval_seconds: float = Field(default=1800.0, gt=0)
    risk_assessment_interval_seconds: float = Field(default=3600.0, gt=0)
    strategy_review_cron: str = "0 9 * * 1-5"
    maintenance_cron: str = "0 2 * * *"
    trading_window: TradingWindow = Field(default_factory=TradingWindow)
    success_rate_floor: float = Field(default=0.8, ge=0.0, le=1.0)
    confidence_floor: float = Field(default=0.7, ge=0.0, le=1.0)
    risk_consensus_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    risk_confidence_warning: float = Field(default=0.6, ge=0.0, le=1.0)
    collaboration_retention_days: int = Field(default=7, ge=1)
    terminal_task_retention_hours: float = Field(default=24.0, gt=0)


class CacheConfig(BaseModel):
    result_ttl_seconds: float = Field(default=3600.0, gt=0)


class SystemConfig(BaseModel):
    """Main system configuration."""
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)
    storage_path: Optional[str] = None

    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


# (env suffix, section or None for top level, field, converter)
_ENV_FIELDS = [
    ("LOG_LEVEL", None, "log_level", str),
    ("JSON_LOGGING", None, "json_logging", lambda v: v.lower() == "true"),
    ("STORAGE_PATH", None, "storage_path", str),
    ("WORKER_POOL_SIZE", "orchestration", "worker_pool_size", int),
    ("MAX_CONCURRENT_SESSIONS", "orchestration", "max_concurrent_sessions", int),
    ("AGENT_TIMEOUT", "orchestration", "agent_timeout_seconds", float),
    ("SESSION_TIMEOUT", "orchestration", "session_timeout_seconds", float),
    ("RETRY_LIMIT", "orchestration", "default_retry_limit", int),
    ("DEBATE_THRESHOLD", "consensus", "debate_threshold", float),
    ("INSIGHT_PREFIX_LENGTH", "consensus", "insight_prefix_length", int),
    ("SCHEDULER_ENABLED", "scheduler", "enabled", lambda v: v.lower() == "true"),
    ("HEALTH_CHECK_INTERVAL", "scheduler", "health_check_interval_seconds", float),
    ("HEALTH_RECOVERY_AFTER", "health", "recovery_after_seconds", float),
    ("RESULT_TTL", "cache", "result_ttl_seconds", float),
]


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for suffix, section, field, convert in _ENV_FIELDS:
        raw = os.getenv(ENV_PREFIX + suffix)
        if not raw:
            continue
        target = overrides if section is None else overrides.setdefault(section, {})
        target[field] = convert(raw)
    return overrides


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_from_env() -> SystemConfig:
    """
    Load configuration from AGENT_QUORUM_* environment variables.

    Returns:
        SystemConfig: Configuration object with values from environment
    """
    return SystemConfig(**_env_overrides())


def load_config_from_file(config_path: Optional[Path] = None) -> SystemConfig:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to configuration file, defaults to ./agent_quorum.json

    Returns:
        SystemConfig: Configuration object, defaults when the file is absent or unreadable
    """
    if config_path is None:
        config_path = Path("agent_quorum.json")

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = json.load(f)
        return SystemConfig(**config_data)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load config from {config_path}: {e}")
        return SystemConfig()


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the global configuration instance, file settings overridden by the environment.

    Returns:
        SystemConfig: Global configuration
    """
    global _config
    if _config is None:
        file_config = load_config_from_file()
        overrides = _env_overrides()
        if overrides:
            file_config = SystemConfig(**_deep_merge(file_config.model_dump(), overrides))
        _config = file_config

    return _config


def set_config(config: Optional[SystemConfig]) -> None:
    """
    Set the global configuration instance; None resets it to be reloaded.

    Args:
        config: Configuration to set as global
    """
    global _config
    _config = config
