"""Layered configuration loader for rethread."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaValidationError

from .errors import TranslationProviderConfigurationError

APP_NAME = "rethread"
LOCAL_CONFIG_NAME = "rethread.yaml"

BatchStrategyName = Literal["single", "smart", "fixed", "character-budget"]


class RethreadConfig(BaseModel):
    """Schema describing all supported configuration options."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    LLM_PROVIDER: Literal["azure_openai", "openai"] = Field(
        default="openai",
        description="Large language model provider selection.",
    )
    AZURE_OPENAI_API_KEY: Optional[str] = Field(default=None, repr=False)
    AZURE_OPENAI_ENDPOINT: Optional[str] = None
    AZURE_OPENAI_API_VERSION: Optional[str] = None
    AZURE_OPENAI_DEPLOYMENT_NAME: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = Field(default=None, repr=False)
    RETHREAD_PROVIDER_DEBUG: bool = False

    RETHREAD_BATCH_STRATEGY: Optional[BatchStrategyName] = None
    RETHREAD_OPTIMAL_BATCH_SIZE: int = Field(default=25, ge=1)
    RETHREAD_MAX_COMPLEXITY: int = Field(default=400, gt=0)
    RETHREAD_CHAR_BUDGET: Optional[int] = Field(default=None, ge=1)
    RETHREAD_BALANCED_BATCHING: bool = False
    RETHREAD_MAX_SEGMENT_CHARS: Optional[int] = Field(default=None, ge=1)

    RETHREAD_BATCH_TIMEOUT_BASE: float = Field(default=20.0, gt=0)
    RETHREAD_BATCH_TIMEOUT_PER_SEGMENT: float = Field(default=2.0, ge=0)
    RETHREAD_BATCH_TIMEOUT_MAX: float = Field(default=120.0, gt=0)
    RETHREAD_FALLBACK_DELAY: float = Field(default=3.0, ge=0)
    RETHREAD_FALLBACK_TIMEOUT: float = Field(default=8.0, gt=0)
    RETHREAD_NO_PROGRESS_TIMEOUT: Optional[float] = Field(default=60.0, gt=0)
    RETHREAD_POLL_INTERVAL: float = Field(default=0.05, gt=0)
    RETHREAD_FAIL_FAST: bool = True

    RETHREAD_FUZZY_THRESHOLD: float = Field(default=30.0, ge=0, le=100)

    RETHREAD_LOG_LEVEL: str = "INFO"
    RETHREAD_LOG_FILE: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Blank values mean "unset" so that defaults apply.
        data = {
            key: value
            for key, value in data.items()
            if not (isinstance(value, str) and not value.strip())
        }
        raw_value = data.get("LLM_PROVIDER")
        if isinstance(raw_value, str):
            normalized = raw_value.strip().lower().replace("-", "_")
            synonyms = {
                "azure_open_ai": "azure_openai",
                "azureopenai": "azure_openai",
            }
            normalized = synonyms.get(normalized, normalized)
            if normalized not in {"openai", "azure_openai"}:
                normalized = "openai"
            data["LLM_PROVIDER"] = normalized
        return data

    @field_validator("RETHREAD_BATCH_STRATEGY", mode="before")
    @classmethod
    def _normalise_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("_", "-")
        return value

    @field_validator("RETHREAD_LOG_LEVEL")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level '{value}'")
        return level


def config_paths(app_dir: Path) -> List[Path]:
    """YAML files consulted in order; later files override earlier ones."""

    return [
        Path.home() / ".config" / APP_NAME / "config.yaml",
        app_dir / LOCAL_CONFIG_NAME,
    ]


def _load_yaml_layers(paths: Sequence[Path]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for path in paths:
        if not path.is_file():
            continue
        try:
            with path.open("r", encoding="utf-8") as handle:
                parsed = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise TranslationProviderConfigurationError(
                f"Configuration file {path} could not be read: {exc}"
            ) from exc
        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise TranslationProviderConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        result.update({str(key).upper(): value for key, value in parsed.items()})
    return result


def _merge_env_sources(target: Dict[str, Any], *, app_dir: Path) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(RethreadConfig.model_fields)

    def merge_values(values: Mapping[str, Optional[str]]) -> None:
        for key, value in values.items():
            if value is None or key not in allowed:
                continue
            target[key] = value

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path))

    merge_values(os.environ)


def load_settings(app_dir: Optional[Path] = None) -> RethreadConfig:
    """Read every configuration layer and validate the combined result."""

    base_dir = app_dir or Path.cwd()
    combined = _load_yaml_layers(config_paths(base_dir))
    _merge_env_sources(combined, app_dir=base_dir)
    try:
        return RethreadConfig.model_validate(combined)
    except SchemaValidationError as exc:
        raise TranslationProviderConfigurationError(
            _format_validation_errors(exc.errors())
        ) from exc


@lru_cache(maxsize=4)
def get_settings(app_dir: Optional[Path] = None) -> RethreadConfig:
    """Return the validated settings, loading them once per directory."""

    return load_settings(app_dir)


def validate_provider_settings(settings: RethreadConfig) -> None:
    provider = settings.LLM_PROVIDER
    errors: List[str] = []

    if provider == "openai":
        if not settings.OPENAI_API_KEY:
            errors.append(
                "OPENAI_API_KEY is required when LLM_PROVIDER is 'openai'."
            )
    elif provider == "azure_openai":
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": settings.AZURE_OPENAI_API_KEY,
                "AZURE_OPENAI_ENDPOINT": settings.AZURE_OPENAI_ENDPOINT,
                "AZURE_OPENAI_API_VERSION": settings.AZURE_OPENAI_API_VERSION,
                "AZURE_OPENAI_DEPLOYMENT_NAME": settings.AZURE_OPENAI_DEPLOYMENT_NAME,
            }.items()
            if not value
        ]
        if missing:
            errors.append(
                "The following Azure OpenAI settings must be provided when "
                f"LLM_PROVIDER is 'azure_openai': {', '.join(missing)}."
            )

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise TranslationProviderConfigurationError(
            "Configuration validation errors detected:\n" + bullet_list
        )


def _format_validation_errors(entries: Sequence[Mapping[str, Any]]) -> str:
    details: List[str] = []
    for entry in entries:
        location = ".".join(str(part) for part in entry.get("loc") or () if part != "")
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}")
    return "Configuration validation errors detected:\n" + "\n".join(details)
