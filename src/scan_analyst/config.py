"""Configuration models for the scan analyst service."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field


class InferenceConfig(BaseModel):
    """Configures the text-generation and embedding endpoint."""

    base_url: str | None = None
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_provider: Literal["openai", "hashing"] = "hashing"
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url or self.api_key)


class WorkflowHistoryConfig(BaseModel):
    """Configures access to the orchestration service's HTTP API."""

    base_url: str = "http://localhost:7243"
    namespace: str = Field(default="default", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class DependencyGraphConfig(BaseModel):
    """Configures access to the composition-analysis REST API."""

    base_url: str = "http://localhost:8080"
    api_key: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class StoreConfig(BaseModel):
    path: str = Field(default="scan_analyst.db", min_length=1)


class RouterConfig(BaseModel):
    """Thresholds and defaults used while routing a query."""

    auto_answer_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    match_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    default_window_days: int = Field(default=30, ge=1)
    top_weakness_limit: int = Field(default=10, ge=1)
    default_team: str = "default"
    explanation_cache_size: int = Field(default=256, ge=1)


class AppConfig(BaseModel):
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    workflow: WorkflowHistoryConfig = Field(default_factory=WorkflowHistoryConfig)
    dependency: DependencyGraphConfig = Field(default_factory=DependencyGraphConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        """Build configuration from `SCAN_ANALYST_*` environment variables.

        Unset variables keep the model defaults; invalid values raise
        `pydantic.ValidationError`.
        """
        env = os.environ if environ is None else environ

        def _pick(**pairs: str) -> dict[str, str]:
            return {field: env[name] for field, name in pairs.items() if env.get(name)}

        return cls.model_validate(
            {
                "inference": _pick(
                    base_url="SCAN_ANALYST_LLM_BASE_URL",
                    api_key="OPENAI_API_KEY",
                    model="SCAN_ANALYST_LLM_MODEL",
                    embedding_model="SCAN_ANALYST_EMBEDDING_MODEL",
                    embedding_provider="SCAN_ANALYST_EMBEDDING_PROVIDER",
                    timeout_seconds="SCAN_ANALYST_LLM_TIMEOUT",
                ),
                "workflow": _pick(
                    base_url="SCAN_ANALYST_TEMPORAL_URL",
                    namespace="SCAN_ANALYST_TEMPORAL_NAMESPACE",
                    timeout_seconds="SCAN_ANALYST_TEMPORAL_TIMEOUT",
                ),
                "dependency": _pick(
                    base_url="SCAN_ANALYST_DTRACK_URL",
                    api_key="SCAN_ANALYST_DTRACK_API_KEY",
                    timeout_seconds="SCAN_ANALYST_DTRACK_TIMEOUT",
                ),
                "store": _pick(path="SCAN_ANALYST_DB_PATH"),
                "router": _pick(default_team="SCAN_ANALYST_DEFAULT_TEAM"),
                **_pick(log_level="SCAN_ANALYST_LOG_LEVEL"),
            }
        )
