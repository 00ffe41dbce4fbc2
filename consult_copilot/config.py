"""Configuration management for the consulting copilot."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.consult-copilot/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

# Environment variables consulted when no key is configured explicitly.
API_KEY_ENV_FALLBACKS = ("OPENAI_API_KEY", "LLM_API_KEY")

# Provider settings read from the environment when not set in config; first name wins.
LLM_ENV_FALLBACKS: dict[str, tuple[str, ...]] = {
    "base_url": ("OPENAI_BASE_URL", "LLM_API_BASE"),
    "model": ("OPENAI_MODEL", "LLM_MODEL"),
    "timeout_seconds": ("LLM_TIMEOUT_MS",),
    "max_output_tokens": ("LLM_MAX_OUTPUT_TOKENS",),
    "telemetry": ("ENABLE_LLM_LOGGING",),
}


class LLMConfig(BaseModel):
    """Chat-completion provider configuration."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 90.0
    max_output_tokens: int = 1200
    temperature: float = 1.0
    telemetry: bool = False
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0

    @model_validator(mode="before")
    @classmethod
    def _apply_env_fallbacks(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        merged = dict(data)
        for field_name, env_names in LLM_ENV_FALLBACKS.items():
            if merged.get(field_name) is not None:
                continue
            value = next((os.environ[name] for name in env_names if os.environ.get(name, "").strip()), None)
            if value is None:
                continue
            if field_name == "timeout_seconds":
                merged[field_name] = float(value) / 1000
            elif field_name == "telemetry":
                merged[field_name] = value.strip().lower() == "true"
            else:
                merged[field_name] = value.strip()
        return merged

    def resolved_api_key(self) -> str:
        """Return the configured key, falling back to well-known env vars."""
        if self.api_key.strip():
            return self.api_key.strip()
        for name in API_KEY_ENV_FALLBACKS:
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return ""


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_turns: int = 5
    history_limit: int = 20


class GuardrailConfig(BaseModel):
    """Mutation throttle configuration."""

    throttle_window_seconds: float = 60.0
    throttle_limit: int = 3


class ToolsConfig(BaseModel):
    """Tool execution configuration."""

    timeout_seconds: float = 300.0


class ServerConfig(BaseModel):
    """Inbound HTTP surface configuration."""

    host: str = "127.0.0.1"
    port: int = 8340
    # "module:callable" returning (estimates_service, contracts_service)
    services_factory: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for the consulting copilot."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="COPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; env vars are layered in by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Never persist the secret back to disk.
        data = self.model_dump(exclude_none=True)
        data.get("llm", {}).pop("api_key", None)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
