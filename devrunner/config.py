"""
DevRunner Configuration

Pydantic-backed configuration loaded from environment variables.
Uses DEVRUNNER_ prefix for all environment variables.

The Config instance is the explicit feature-flag struct handed to every
service through ServiceContext; services never read the environment.
"""

import os
import threading
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from devrunner.errors import ConfigError


RELEASE_MODE_GIT_CLI = "git-cli"


class Config(BaseModel):
    """
    Pydantic-backed configuration loaded from environment variables.

    Key env vars:
    - DEVRUNNER_DB_PATH (default: .devrunner.sqlite)
    - DEVRUNNER_EXECUTE_GATES (default: false; gates fail with execution_disabled)
    - DEVRUNNER_BABY_STEPS (default: false; pause after the first failed attempt)
    - DEVRUNNER_RELEASE_MODE (default: git-cli)
    - DEVRUNNER_LLM_AGENTS + ANTHROPIC_API_KEY (enable the model-backed agents)
    - DEVRUNNER_DETERMINISTIC_AGENTS (allow template agents when the model is off)
    - DEVRUNNER_SECRETS_KEY (base64 AES-256 key for stored hosting tokens)
    """

    # Database
    db_path: Path = Field(default=Path(".devrunner.sqlite"))

    # Environment
    environment: str = Field(default="local")
    log_level: str = Field(default="INFO")

    # Pipeline flags
    execute_gates: bool = Field(default=False)
    baby_steps: bool = Field(default=False)
    release_mode: str = Field(default=RELEASE_MODE_GIT_CLI)

    # Agents
    llm_agents: bool = Field(default=False)
    deterministic_agents: bool = Field(default=False)
    anthropic_api_key: Optional[str] = Field(default=None)
    anthropic_api_url: str = Field(default="https://api.anthropic.com/v1/messages")
    anthropic_model: str = Field(default="claude-sonnet-4-5")
    anthropic_max_tokens: int = Field(default=16000)

    # Workspace / subprocess
    sandbox_root: Optional[Path] = Field(default=None)
    gate_timeout_seconds: int = Field(default=600)
    git_timeout_seconds: int = Field(default=300)

    # Hosting APIs
    secrets_key: Optional[str] = Field(default=None, repr=False)
    github_api_url: str = Field(default="https://api.github.com")
    netlify_api_url: str = Field(default="https://api.netlify.com/api/v1")
    http_timeout_seconds: float = Field(default=30.0)

    # Deploy polling
    deploy_poll_interval_seconds: float = Field(default=10.0)
    deploy_timeout_seconds: float = Field(default=300.0)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def llm_runtime_enabled(self) -> bool:
        """Model-backed agents need both the flag and an API key."""
        return bool(self.llm_agents and self.anthropic_api_key)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: str, cast=int):
    raw = os.environ.get(name, default)
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}", metadata={"variable": name}) from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}", metadata={"variable": name})
    return value


def load_config() -> Config:
    """Load DevRunner configuration from environment."""
    sandbox_root = os.environ.get("DEVRUNNER_SANDBOX_ROOT")
    return Config(
        db_path=Path(os.environ.get("DEVRUNNER_DB_PATH", ".devrunner.sqlite")).expanduser(),
        environment=os.environ.get("DEVRUNNER_ENV", "local"),
        log_level=os.environ.get("DEVRUNNER_LOG_LEVEL", "INFO"),

        # Pipeline flags
        execute_gates=_parse_bool(os.environ.get("DEVRUNNER_EXECUTE_GATES")),
        baby_steps=_parse_bool(os.environ.get("DEVRUNNER_BABY_STEPS")),
        release_mode=(os.environ.get("DEVRUNNER_RELEASE_MODE") or RELEASE_MODE_GIT_CLI).strip().lower(),

        # Agents
        llm_agents=_parse_bool(os.environ.get("DEVRUNNER_LLM_AGENTS")),
        deterministic_agents=_parse_bool(os.environ.get("DEVRUNNER_DETERMINISTIC_AGENTS")),
        anthropic_api_key=os.environ.get("DEVRUNNER_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY"),
        anthropic_api_url=os.environ.get("DEVRUNNER_ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages"),
        anthropic_model=os.environ.get("DEVRUNNER_ANTHROPIC_MODEL", "claude-sonnet-4-5"),
        anthropic_max_tokens=_env_number("DEVRUNNER_ANTHROPIC_MAX_TOKENS", "16000"),

        # Workspace / subprocess
        sandbox_root=Path(sandbox_root).expanduser() if sandbox_root else None,
        gate_timeout_seconds=_env_number("DEVRUNNER_GATE_TIMEOUT_SECONDS", "600"),
        git_timeout_seconds=_env_number("DEVRUNNER_GIT_TIMEOUT_SECONDS", "300"),

        # Hosting APIs
        secrets_key=os.environ.get("DEVRUNNER_SECRETS_KEY") or None,
        github_api_url=os.environ.get("DEVRUNNER_GITHUB_API_URL", "https://api.github.com").rstrip("/"),
        netlify_api_url=os.environ.get("DEVRUNNER_NETLIFY_API_URL", "https://api.netlify.com/api/v1").rstrip("/"),
        http_timeout_seconds=_env_number("DEVRUNNER_HTTP_TIMEOUT_SECONDS", "30", float),

        # Deploy polling
        deploy_poll_interval_seconds=_env_number("DEVRUNNER_DEPLOY_POLL_INTERVAL_SECONDS", "10", float),
        deploy_timeout_seconds=_env_number("DEVRUNNER_DEPLOY_TIMEOUT_SECONDS", "300", float),
    )


# Singleton config instance (lazy loaded)
_config: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Get or create the singleton config instance."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def _reset_config_for_tests() -> None:
    """Reset the global config cache (tests only)."""
    global _config
    with _config_lock:
        _config = None
