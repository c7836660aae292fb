"""Engine configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (PATTERNMEM_* prefix, ``__`` for nesting)
    - Default values

Key components:
    - EngineConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import math
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from patternmem.core.console import get_logger
from patternmem.core.result import ConfigurationError

logger = get_logger(__name__)

CONFIG_ENV_VAR = "PATTERNMEM_CONFIG"

DecayAlgorithm = Literal["hybrid", "exponential", "linear"]


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class StorageConfig(BaseModel):
    """Where the store, session artifacts and markdown summary live."""

    store_dir: Path = Field(
        default_factory=lambda: Path.home() / ".patternmem",
        description="Directory holding the pattern store.",
    )
    store_file: str = Field(default="patterns.json", description="Store file name.")
    sessions_dir: Path | None = Field(
        default=None,
        description="Directory of session artifacts. Defaults to <store_dir>/sessions.",
    )
    session_glob: str = Field(default="*.json", description="Glob matching session artifacts.")
    markdown_path: Path | None = Field(
        default=None,
        description="Markdown summary output. Defaults to <store_dir>/PATTERNS.md.",
    )
    write_retries: int = Field(
        default=2, ge=0, description="Extra attempts for a failed atomic store write."
    )

    @model_validator(mode="after")
    def _fill_derived_paths(self) -> StorageConfig:
        self.store_dir = self.store_dir.expanduser()
        if self.sessions_dir is None:
            self.sessions_dir = self.store_dir / "sessions"
        else:
            self.sessions_dir = self.sessions_dir.expanduser()
        if self.markdown_path is None:
            self.markdown_path = self.store_dir / "PATTERNS.md"
        else:
            self.markdown_path = self.markdown_path.expanduser()
        return self

    @property
    def store_path(self) -> Path:
        return self.store_dir / self.store_file


class CapacityConfig(BaseModel):
    """Capacity bounds for categories, examples and session artifacts."""

    max_patterns_per_category: int = Field(
        default=100, ge=1, description="Soft upper bound on patterns per category."
    )
    category_limits: dict[str, int] = Field(
        default_factory=dict,
        description="Per-category overrides of max_patterns_per_category.",
    )
    max_examples: int = Field(
        default=5, ge=1, description="Example session ids kept per pattern (oldest dropped)."
    )
    max_session_files: int = Field(
        default=10, ge=0, description="Session artifacts kept after cleanup."
    )

    def limit_for(self, category: str) -> int:
        return self.category_limits.get(str(category), self.max_patterns_per_category)


class DecayWeights(BaseModel):
    """Weights of the hybrid score components.

    They are expected to sum to about 1.0 but are never renormalized, since
    eviction behaviour is tuned against the raw formula.
    """

    recency: float = Field(default=0.4, ge=0.0)
    frequency: float = Field(default=0.4, ge=0.0)
    success_rate: float = Field(default=0.2, ge=0.0)

    @model_validator(mode="after")
    def _warn_on_unusual_sum(self) -> DecayWeights:
        total = self.recency + self.frequency + self.success_rate
        if not math.isclose(total, 1.0, abs_tol=0.01):
            logger.warning("Decay weights sum to %.3f, expected about 1.0", total)
        return self


class DecayConfig(BaseModel):
    """Decay scoring model."""

    algorithm: DecayAlgorithm = Field(default="hybrid", description="Decay model to apply.")
    half_life_days: float = Field(default=90.0, gt=0.0, description="Recency half-life in days.")
    weights: DecayWeights = Field(default_factory=DecayWeights)


class ClusteringConfig(BaseModel):
    """Agglomerative clustering within a category."""

    enabled: bool = Field(default=True)
    similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    min_cluster_size: int = Field(default=1, ge=1)
    max_cluster_size: int = Field(default=20, ge=1)


class DeduplicationConfig(BaseModel):
    """Exact and fuzzy duplicate detection."""

    enabled: bool = Field(default=True, description="Disable to admit every candidate as new.")
    fuzzy_match_threshold: float = Field(default=0.90, ge=0.0, le=1.0)


class EvictionConfig(BaseModel):
    """Protection rules applied before capacity eviction."""

    protect_high_frequency: bool = Field(default=True)
    protect_threshold: int = Field(default=5, ge=1)
    protect_recent: bool = Field(default=True)
    protect_recent_days: float = Field(default=7.0, ge=0.0)
    protect_cluster_representatives: bool = Field(default=True)
    protect_proven: bool = Field(
        default=True, description="Protect patterns with success rate 1.0 seen at least 3 times."
    )


class ExportConfig(BaseModel):
    """Markdown summary generation."""

    auto_generate_markdown: bool = Field(default=True)
    markdown_top_n: int = Field(default=20, ge=1)


class TextConfig(BaseModel):
    """Tokenizer settings."""

    min_token_length: int = Field(default=3, ge=1)


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class EngineConfig(BaseSettings):
    """Engine-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="PATTERNMEM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    eviction: EvictionConfig = Field(default_factory=EvictionConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    text: TextConfig = Field(default_factory=TextConfig)
    log_level: str = Field(default="INFO", description="Log level for patternmem output.")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.home() / ".patternmem.toml")
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc

    suffix = path.suffix.lower()
    parser = json.loads if suffix == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like PATTERNMEM_DECAY__HALF_LIFE_DAYS.
    """
    prefix = EngineConfig.model_config.get("env_prefix", "")
    delimiter = EngineConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    for group_name, field_info in EngineConfig.model_fields.items():
        annotation = field_info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            for field in annotation.model_fields:
                env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
                if env_key in env_vars:
                    overrides.add(f"{group_name}.{field}")
        elif f"{prefix}{group_name}".upper() in env_vars:
            overrides.add(group_name)

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[EngineConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigurationError as exc:
        error = str(exc)

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = EngineConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = EngineConfig()

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result


__all__ = [
    "CONFIG_ENV_VAR",
    "CapacityConfig",
    "ClusteringConfig",
    "ConfigLoadResult",
    "DecayAlgorithm",
    "DecayConfig",
    "DecayWeights",
    "DeduplicationConfig",
    "EngineConfig",
    "EvictionConfig",
    "ExportConfig",
    "StorageConfig",
    "TextConfig",
    "load_config",
]
