"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./abraxas.yaml (working directory)
3. ~/.abraxas/config.yaml (user home)

Environment variables override YAML: ABRAXAS_<FIELD>, e.g.
ABRAXAS_SPRITES_TOKEN or ABRAXAS_WEBHOOK_BASE_URL.
${VAR} references in YAML values resolve from environment at load time.

The encryption key is deliberately not part of Settings; the credential
vault loads it on its own so it never appears in a settings dump.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "ABRAXAS_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class Settings(BaseModel):
    """Runtime configuration for the orchestrator."""

    database_url: str | None = None
    sprites_api_base: str = "https://api.sprites.dev/v1"
    sprites_token: str = ""
    github_api_base: str = "https://api.github.com"
    webhook_base_url: str = "http://localhost:8000"
    sandbox_timeout_seconds: float = Field(default=30.0, gt=0)
    system_agent_name: str = "Abraxas"
    git_user_name: str = "abraxxxxas"
    git_user_email: str = "abraxas@sprites.dev"
    agent_setup_script: str | None = None
    destroy_max_retries: int = Field(default=3, ge=1)
    log_level: str = "INFO"

    @field_validator("sprites_api_base", "github_api_base", "webhook_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Normalize base URLs so paths can be appended with '/'."""
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        """Accept log levels in any case."""
        return value.upper()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "abraxas.yaml",
        Path.cwd() / "abraxas.yml",
        Path.home() / ".abraxas" / "config.yaml",
        Path.home() / ".abraxas" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply ABRAXAS_<FIELD> env var overrides to config data.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    for field_name in Settings.model_fields:
        value = os.environ.get(_ENV_PREFIX + field_name.upper())
        if value is not None and value != "":
            data[field_name] = value
    return data


def load_settings(config_path: str | None = None) -> Settings:
    """Load settings from YAML file and environment.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.abraxas/).

    Returns:
        Validated Settings; defaults apply when no file is found.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    data: dict[str, Any] = {}
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}
        data = _resolve_env_vars_recursive(raw_data)

    data = _apply_env_overrides(data)
    return Settings(**data)
