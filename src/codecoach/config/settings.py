"""Configuration model for codecoach."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class CollectorConfig(BaseModel):
    window_size: int = Field(default=512, ge=1)
    require_open_documents: bool = True
    default_language: str = "python"


class ClassifierConfig(BaseModel):
    pause_threshold_seconds: float = Field(default=30.0, gt=0)
    delete_window_seconds: float = Field(default=10.0, gt=0)
    delete_threshold: int = Field(default=5, ge=1)
    repeat_error_threshold: int = Field(default=3, ge=1)
    repeat_error_base: float = Field(default=0.5, ge=0, le=1)
    repeat_error_increment: float = Field(default=0.15, ge=0, le=1)
    circular_edit_confidence: float = Field(default=0.6, ge=0, le=1)
    history_size: int = Field(default=200, ge=2)
    trigger_threshold: float = Field(default=0.5, ge=0, le=1)
    signal_cooldown_seconds: float = Field(default=60.0, ge=0)


class HintConfig(BaseModel):
    timeout_seconds: float = Field(default=2.0, gt=0)
    cache_ttl_seconds: float = Field(default=7 * 24 * 3600, gt=0)
    episode_cooldown_seconds: float = Field(default=300.0, gt=0)
    similarity_threshold: float = Field(default=0.6, ge=0, le=1)
    max_code_chars: int = Field(default=4000, ge=100)
    history_limit: int = Field(default=5, ge=0)
    max_upstream_per_minute: int = Field(default=20, ge=1)
    auto_hints: bool = True
    fallback_path: Optional[Path] = None


class AggregatorConfig(BaseModel):
    recency_window_days: float = Field(default=90.0, gt=0)
    reinforcement_threshold: int = Field(default=3, ge=1)
    severity_half_life_days: float = Field(default=14.0, gt=0)


class SchedulerConfig(BaseModel):
    ladder_days: list[int] = Field(default_factory=lambda: [1, 3, 7, 14, 30])
    initial_ease: float = Field(default=2.5, ge=1.3)
    min_ease: float = Field(default=1.3, ge=1.3)
    fast_response_ms: int = Field(default=5000, ge=0)
    token_history: int = Field(default=32, ge=1)
    cas_attempts: int = Field(default=5, ge=1)


class StoreConfig(BaseModel):
    backend: StoreBackend = StoreBackend.SQLITE
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.05, ge=0)


class ClaudeConfig(BaseModel):
    api_key: Optional[str] = Field(default=None)
    model: str = "claude-sonnet-4-6"
    max_tokens: int = 600

    def get_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get("ANTHROPIC_API_KEY")

    def get_model(self) -> str:
        return os.environ.get("CODECOACH_CLAUDE_MODEL") or self.model


class Settings(BaseModel):
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    hints: HintConfig = Field(default_factory=HintConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    default_user_id: str = "local"
    log_level: str = "INFO"
    data_dir: Path = Path.home() / ".codecoach"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        config_path = config_path or Path.home() / ".codecoach" / "config.yaml"
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        return cls()

    def save(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.data_dir / "config.yaml"
        with open(config_path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)
