"""Configuration loading and validation."""

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ContextDefaults(BaseModel):
    """Global context-management defaults."""

    window_size: int = Field(default=4096, description="Window size when no model capacity is known")
    strategy: str = Field(default="intelligent_truncation", description="Retention strategy")
    ratio: float = Field(default=0.8, description="Fraction of the window usable for history")
    search_enhanced: bool = Field(default=False, description="Recall relevant older messages via search")
    cache_ttl: int = Field(default=300, description="Middleware context cache TTL in seconds")
    max_search_results: int = Field(default=10, description="Candidates requested per search")
    relevance_threshold: float = Field(default=0.7, description="Minimum relevance for recall candidates")
    recency_window_minutes: int = Field(default=60, description="Age under which a message counts as recent")
    search_timeout_seconds: float = Field(default=2.0, description="Deadline for the search phase")


class ProviderDefaults(BaseModel):
    """Provider-specific overrides of the global defaults."""

    ratio: Optional[float] = None
    strategy: Optional[str] = None
    search_enhanced: Optional[bool] = None


DEFAULT_PROVIDER_TABLE: dict[str, ProviderDefaults] = {
    "openai": ProviderDefaults(ratio=0.85),
    "gemini": ProviderDefaults(ratio=0.8, strategy="recent_messages"),
    "xai": ProviderDefaults(ratio=0.75),
}


class ContextConfig(BaseModel):
    """Effective context settings for one conversation/model pair."""

    window_size: int = 4096
    strategy: str = "intelligent_truncation"
    ratio: float = 0.8
    search_enhanced: bool = False
    cache_ttl: int = 300
    max_search_results: int = 10
    relevance_threshold: float = 0.7

    @property
    def budget(self) -> int:
        """Usable token budget: floor(ratio * window_size)."""
        return int(self.window_size * self.ratio)


class ContextOverrides(BaseModel):
    """Conversation-level overrides; unset fields fall through to defaults."""

    window_size: Optional[int] = None
    strategy: Optional[str] = None
    ratio: Optional[float] = None
    search_enhanced: Optional[bool] = None
    cache_ttl: Optional[int] = None
    max_search_results: Optional[int] = None
    relevance_threshold: Optional[float] = None

    def explicit(self) -> dict[str, Any]:
        """Only the fields that are actually set."""
        return self.model_dump(exclude_none=True)


class SearchServiceConfig(BaseModel):
    """Conversation search service configuration."""

    base_url: Optional[str] = Field(default=None, description="Search service URL (in-memory search if unset)")
    timeout_seconds: float = Field(default=2.0, description="Per-request timeout")
    max_retries: int = Field(default=1, description="Retries per search request")


class APIConfig(BaseModel):
    """Local API configuration."""

    enabled: bool = Field(default=False, description="Enable local API server")
    bind: str = Field(default="127.0.0.1:4831", description="Bind address")


class KeeperConfig(BaseSettings):
    """Main configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_KEEPER_",
        case_sensitive=False,
        extra="ignore",
    )

    context: ContextDefaults = Field(default_factory=ContextDefaults)
    providers: dict[str, ProviderDefaults] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_TABLE)
    )
    search: SearchServiceConfig = Field(default_factory=SearchServiceConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @classmethod
    def load(cls, config_path: Optional[Path | str] = None) -> "KeeperConfig":
        """Load configuration from file and environment."""
        if config_path is None:
            config_path = find_config_file()
        elif isinstance(config_path, str):
            config_path = Path(config_path)

        config_dict: dict[str, Any] = {}
        if config_path and config_path.exists():
            if config_path.suffix.lower() == ".json":
                with open(config_path, "r") as f:
                    config_dict = json.load(f) or {}
            else:
                # Default to YAML for .yaml, .yml, or no extension
                with open(config_path, "r") as f:
                    config_dict = yaml.safe_load(f) or {}

        # Provider entries in the file extend the built-in table
        if "providers" in config_dict and config_dict["providers"]:
            providers = {name: table.model_dump() for name, table in DEFAULT_PROVIDER_TABLE.items()}
            for name, table in config_dict["providers"].items():
                providers[name.lower()] = dict(table or {})
            config_dict["providers"] = providers

        env_overrides: dict[str, dict[str, Any]] = {}
        if search_url := os.getenv("CONTEXT_KEEPER_SEARCH_URL"):
            env_overrides.setdefault("search", {})["base_url"] = search_url
        if api_bind := os.getenv("CONTEXT_KEEPER_API_BIND"):
            env_overrides.setdefault("api", {})["bind"] = api_bind

        for key, value in env_overrides.items():
            if key in config_dict:
                config_dict[key].update(value)
            else:
                config_dict[key] = value

        return cls(**config_dict)


def find_config_file() -> Optional[Path]:
    """Find config file in resolution order. Prefers JSON over YAML if both exist."""
    candidates = [
        Path(".context-keeper"),
        Path.home() / ".config" / "context-keeper",
    ]
    for directory in candidates:
        for name in ("config.json", "config.yaml", "config.yml"):
            path = directory / name
            if path.exists():
                return path

    return None
