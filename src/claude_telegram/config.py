"""Configuration management for claude-telegram."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from claude_telegram.errors import ConfigFileNotFoundError, ConfigurationError, EnvironmentVariableError

DEFAULT_CONFIG_FILE = "claude-telegram.yaml"
ENV_REFERENCE = re.compile(r"\$\{(\w+)\}")

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "delegate", "dontAsk", "plan"]


class PluginSpec(BaseModel):
    """One entry of the `modules` list."""

    import_path: str = Field(alias="import", min_length=1)
    enabled: bool = True
    options: dict[str, Any] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Bot settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAUDE_TELEGRAM_",
        case_sensitive=False,
        extra="ignore",
    )

    # Telegram
    token: str = Field(min_length=1, description="Telegram bot token")
    whitelist: list[int] = Field(default_factory=list, description="Telegram user ids allowed to chat")

    # Claude CLI
    workspace: Path = Field(description="Working directory for Claude")
    claude_path: str = Field(default="claude", description="Claude CLI executable")
    permission_mode: PermissionMode = "acceptEdits"
    timeout: float = Field(default=300, gt=0, description="Per-turn timeout in seconds")
    kill_grace: float = Field(default=5, gt=0, description="Seconds between SIGTERM and SIGKILL")
    model: str | None = None
    system_prompt: str | None = None
    add_dirs: list[Path] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    disable_slash_commands: bool = False
    setting_sources: str | None = None
    strict_mcp_config: bool = False
    mcp_config: list[str] = Field(default_factory=list)

    # Bot behavior
    session_namespace: str | None = Field(
        default=None, description="Seed for session ids so deployments sharing a whitelist never collide"
    )
    status_interval: float = Field(default=3, gt=0, description="Seconds between live status edits")
    modules: list[str | PluginSpec] = Field(default_factory=list)

    @field_validator("workspace")
    @classmethod
    def _workspace_exists(cls, value: Path) -> Path:
        resolved = value.expanduser().resolve()
        if not resolved.is_dir():
            raise ValueError(f"workspace directory does not exist: {resolved}")
        return resolved

    @field_validator("add_dirs")
    @classmethod
    def _resolve_dirs(cls, value: list[Path]) -> list[Path]:
        return [item.expanduser().resolve() for item in value]

    @field_validator("tools", mode="before")
    @classmethod
    def _tools_as_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("setting_sources", mode="before")
    @classmethod
    def _join_sources(cls, value: Any) -> Any:
        if isinstance(value, list | tuple):
            return ",".join(str(item) for item in value)
        return value

    def plugin_specs(self) -> list[PluginSpec]:
        return [PluginSpec.model_validate({"import": item}) if isinstance(item, str) else item for item in self.modules]


def interpolate_env(value: Any) -> Any:
    """Recursively replace `${VAR}` references in every string value."""

    if isinstance(value, str):

        def _lookup(match: re.Match[str]) -> str:
            name = match.group(1)
            resolved = os.environ.get(name)
            if resolved is None:
                raise EnvironmentVariableError(f"Environment variable {name} is not set")
            return resolved

        return ENV_REFERENCE.sub(_lookup, value)
    if isinstance(value, list):
        return [interpolate_env(item) for item in value]
    if isinstance(value, dict):
        return {str(key): interpolate_env(item) for key, item in value.items()}
    return value


def resolve_config_path(config_path: Path | str | None = None) -> Path:
    return Path(config_path or DEFAULT_CONFIG_FILE).expanduser().resolve()


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load, interpolate and validate the YAML config file."""

    path = resolve_config_path(config_path)
    if not path.is_file():
        raise ConfigFileNotFoundError(f"Config file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root must be a mapping: {path}")

    data = interpolate_env(raw)
    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config {path}:\n{exc}") from exc
