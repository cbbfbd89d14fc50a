"""Application-level exception types for claude-telegram."""

from __future__ import annotations


class ClaudeTelegramError(Exception):
    """Base exception for claude-telegram."""


class ConfigurationError(ClaudeTelegramError):
    """Base exception for configuration and startup validation errors."""


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when the config file does not exist."""


class EnvironmentVariableError(ConfigurationError):
    """Raised when a `${VAR}` reference in the config cannot be resolved."""


class PluginLoadError(ClaudeTelegramError):
    """Raised when a configured plugin cannot be imported or built."""


class DispatcherBusyError(ClaudeTelegramError):
    """Raised when an operation requires no turn to be in flight."""


class ClaudeCliCheckError(ClaudeTelegramError):
    """Raised when the Claude CLI is missing or incompatible."""
