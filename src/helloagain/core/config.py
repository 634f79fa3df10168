"""
Configuration schema and loading for helloagain.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from helloagain.codec.prompts import DEFAULT_MAX_FIELD_LENGTH, DEFAULT_PROMPT_TEMPLATE, DEFAULT_SYSTEM_PROMPT


class OpenAISettings(BaseModel):
    """Remote batch service connection settings.

    api_key may be left unset here: the service falls back to the key saved
    in the durable store with ``helloagain set-key``.
    """

    model_config = {"frozen": True}

    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    api_key: str | None = Field(default=None, description="API key (overrides the stored key)")
    model: str = Field(default="gpt-4o-mini", description="Model used for every request in the batch")
    route: str = Field(default="/v1/chat/completions", description="Endpoint route for batch requests")
    completion_window: str = Field(default="24h", description="Batch completion window")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Per-request timeout")
    max_retries: int = Field(default=0, ge=0, description="SDK-level retries per call (0 = caller decides)")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class PromptSettings(BaseModel):
    """Per-row request content."""

    model_config = {"frozen": True}

    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="Fixed system instruction")
    template: str = Field(default=DEFAULT_PROMPT_TEMPLATE, description="Jinja2 template for the user message")
    max_field_length: int = Field(default=DEFAULT_MAX_FIELD_LENGTH, gt=0, description="Truncation limit per interpolated field")
    schema_name: str = Field(default="profile", description="Name sent with the response schema")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int | None = Field(default=None, gt=0, description="Maximum response tokens")


class PollingSettings(BaseModel):
    """Poll scheduler settings."""

    model_config = {"frozen": True}

    interval_seconds: float = Field(default=60.0, gt=0, description="Seconds between polls of active jobs")


class StoreSettings(BaseModel):
    """Durable store settings."""

    model_config = {"frozen": True}

    url: str = Field(default="sqlite:///./.helloagain/state.db", description="SQLAlchemy connection URL")


class HelloAgainSettings(BaseModel):
    """Top-level configuration."""

    model_config = {"frozen": True}

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    prompt: PromptSettings = Field(default_factory=PromptSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return upper


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (validation will likely fail)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Dynaconf uppercases keys at every level; Pydantic fields are lowercase."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> HelloAgainSettings:
    """Load settings from an optional YAML file with environment overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (HELLOAGAIN_*) - highest priority
    2. Config file, when given
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: HELLOAGAIN_OPENAI__API_KEY for nested keys.

    Args:
        config_path: Path to YAML configuration file, or None for env-only

    Returns:
        Validated HelloAgainSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config_path is given but doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="HELLOAGAIN",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,  # The CLI loads .env itself
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return HelloAgainSettings(**raw_config)
