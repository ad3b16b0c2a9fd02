"""Configuration models for the ops assistant."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PROVIDER_NAME = re.compile(r"^[A-Za-z0-9-]+(?:_[A-Za-z0-9-]+)*$")

TransportType = Literal["stdio", "sse", "streamable-http", "streamableHttp"]


class AgentConfig(BaseModel):
    """Configures the conversation loop."""

    max_iterations: int = Field(default=10, ge=1)
    history_limit: int = Field(default=10, ge=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class CacheConfig(BaseModel):
    """Configures the exact and semantic answer caches and the fast tier."""

    ttl_seconds: int = Field(default=3600, ge=1)
    min_answer_length: int = Field(default=10, ge=0)
    semantic_enabled: bool = True
    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_candidates: int = Field(default=100, ge=1)


class RetrievalConfig(BaseModel):
    """Configures knowledge retrieval and rank fusion."""

    max_results: int = Field(default=3, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    excerpt_chars: int = Field(default=200, ge=1)


class LLMConfig(BaseModel):
    """OpenAI-compatible chat and embedding endpoints."""

    model: str = "gpt-4o"
    api_key: str | None = None
    base_url: str | None = None
    embedding_model: str | None = None


class ProviderConfig(BaseModel):
    """One external tool provider, in the `mcpServers` config format."""

    model_config = ConfigDict(populate_by_name=True)

    type: TransportType = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    base_url: str | None = Field(default=None, alias="baseUrl")
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=300.0, gt=0.0)
    is_active: bool = Field(default=True, alias="isActive")
    description: str = ""

    @property
    def transport(self) -> str:
        return "streamable-http" if self.type == "streamableHttp" else self.type


class AppConfig(BaseModel):
    """Top-level application configuration."""

    model_config = ConfigDict(populate_by_name=True)

    database_path: str = "ops_agent.db"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"
    agent: AgentConfig = Field(default_factory=AgentConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict, alias="mcpServers")

    @field_validator("providers")
    @classmethod
    def _check_provider_names(
        cls, providers: dict[str, ProviderConfig]
    ) -> dict[str, ProviderConfig]:
        for name in providers:
            validate_provider_name(name)
        return providers


def validate_provider_name(name: str) -> str:
    """Reject provider names that would make qualified tool names ambiguous."""
    if not _PROVIDER_NAME.match(name):
        raise ValueError(
            f"Invalid provider name {name!r}: use letters, digits, '-' and single '_'"
        )
    return name


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from a JSON file, then apply environment overrides."""

    data: dict = {}
    if path is not None:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    config = AppConfig.model_validate(data)

    llm = config.llm
    llm.api_key = os.getenv("OPENAI_API_KEY", llm.api_key)
    llm.base_url = os.getenv("OPENAI_BASE_URL", llm.base_url)
    llm.model = os.getenv("OPENAI_MODEL", llm.model)
    llm.embedding_model = os.getenv("OPENAI_EMBEDDING_MODEL", llm.embedding_model)
    config.database_path = os.getenv("OPS_AGENT_DB", config.database_path)
    config.log_level = os.getenv("OPS_AGENT_LOG_LEVEL", config.log_level)
    log_format = os.getenv("OPS_AGENT_LOG_FORMAT")
    if log_format in ("json", "console"):
        config.log_format = log_format
    return config
