"""Configuration management for Moss."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from moss.exceptions import ConfigurationError


# Paths
CONFIG_DIR_NAME = ".moss"
CONFIG_FILENAME = "config.yml"
DEFAULT_MANIFEST_FILENAME = "mcp.json"
DEFAULT_HOME_CONFIG_DIR = Path("~/.moss").expanduser()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
API_KEY_ENV_VARS = ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "OR_API_KEY")
BASE_URL_ENV_VARS = ("OPENROUTER_BASE_URL", "OPENAI_BASE_URL")

DEFAULT_SYSTEM_PROMPT = (
    "You are a philosopher. You are smart. Critical thinking is your strength. "
    "You are given a question and you need to answer it."
)


def find_config_dir(start: Path | str | None = None) -> Path:
    """Locate the `.moss` directory.

    Searches upward from `start` (default: cwd), then `~/.moss`. When neither
    exists, `<start>/.moss` is created.
    """
    origin = Path(start).expanduser().resolve() if start is not None else Path.cwd().resolve()
    for directory in (origin, *origin.parents):
        candidate = directory / CONFIG_DIR_NAME
        if candidate.is_dir():
            return candidate

    if DEFAULT_HOME_CONFIG_DIR.is_dir():
        return DEFAULT_HOME_CONFIG_DIR

    created = origin / CONFIG_DIR_NAME
    created.mkdir(parents=True, exist_ok=True)
    return created


def _first_env(names: tuple[str, ...]) -> str:
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return ""


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openrouter"
    model: str = "anthropic/claude-sonnet-4"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.5
    max_tokens: int = 32000
    timeout: float = 120.0


class AgentConfig(BaseModel):
    """Agent behaviour configuration."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class LockConfig(BaseModel):
    """Configuration lock timing."""

    timeout_ms: int = 5000
    retry_interval_ms: int = 100


class MCPConfig(BaseModel):
    """Remote tool server configuration."""

    manifest: str = ""
    close_timeout_ms: int = 5000


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "think",
        "fs_read",
        "fs_write",
        "fs_exists",
        "fs_listdir",
        "os_shell_exec",
    ]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Moss."""

    config_dir: Path = Field(default_factory=lambda: Path.cwd() / CONFIG_DIR_NAME)
    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MOSS_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Path | str, config_dir: Path | str | None = None) -> "Config":
        """Load configuration from a YAML file."""
        config_path = Path(path).expanduser()
        data: dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                # Imported lazily: logging configuration itself reads the config.
                from moss.logging import get_logger

                get_logger(__name__).error("Error reading config file", path=str(config_path), error=str(e))
                data = {}
            if not isinstance(data, dict):
                data = {}

        data["config_dir"] = Path(config_dir).expanduser() if config_dir else config_path.parent
        config = cls(**data)
        config.apply_environment_fallbacks()
        return config

    @classmethod
    def load(cls, config_dir: Path | str | None = None) -> "Config":
        """Load configuration from `<configDir>/config.yml`, env vars overriding."""
        directory = Path(config_dir).expanduser() if config_dir else find_config_dir()
        directory.mkdir(parents=True, exist_ok=True)
        return cls.from_yaml(directory / CONFIG_FILENAME, config_dir=directory)

    def apply_environment_fallbacks(self) -> None:
        """Fill backend credentials from the conventional provider env vars."""
        if not self.model.api_key:
            self.model.api_key = _first_env(API_KEY_ENV_VARS)
        if not self.model.base_url:
            self.model.base_url = _first_env(BASE_URL_ENV_VARS) or OPENROUTER_BASE_URL

    def require_api_key(self) -> str:
        """Return the API key or raise when none is configured."""
        key = self.model.api_key.strip()
        if not key:
            raise ConfigurationError(
                "API key not found. Please set OPENROUTER_API_KEY environment variable "
                f"or add model.api_key to {self.config_dir / CONFIG_FILENAME}"
            )
        return key

    @property
    def memory_path(self) -> Path:
        return self.config_dir / "memory.jsonl"

    def resolved_manifest_path(self) -> Path:
        """Resolve the MCP manifest path, anchoring relative paths to the config dir."""
        raw = self.mcp.manifest.strip()
        if not raw:
            return self.config_dir / DEFAULT_MANIFEST_FILENAME
        path = Path(raw).expanduser()
        if path.is_absolute():
            return path
        return self.config_dir / path

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else self.config_dir / CONFIG_FILENAME
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude={"config_dir"}, exclude_none=True)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Mask a secret for display, keeping `visible` chars at each end."""
    if not value:
        return "Not set"
    if len(value) <= visible * 2:
        return "*" * len(value)
    middle = "*" * (len(value) - visible * 2)
    return f"{value[:visible]}{middle}{value[-visible:]}"


def environment_status(config: "Config") -> list[tuple[str, str]]:
    """Describe the effective backend settings with secrets masked."""
    rows = [
        ("Config directory", str(config.config_dir)),
        ("Provider", config.model.provider),
        ("Model", config.model.model),
        ("API key", mask_secret(config.model.api_key)),
        ("Base URL", config.model.base_url or f"{OPENROUTER_BASE_URL} (default)"),
        ("MCP manifest", str(config.resolved_manifest_path())),
    ]
    if config.model.api_key and not config.model.api_key.startswith("sk-"):
        rows.append(("Warning", 'API key does not look like an OpenRouter key (expected "sk-" prefix)'))
    return rows


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
