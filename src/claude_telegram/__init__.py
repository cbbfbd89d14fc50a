"""claude-telegram - chat with Claude Code from Telegram."""

from .dispatcher import JobDispatcher
from .hookspecs import hookimpl
from .runner import ProcessRunner
from .session import SessionStore
from .types import Continue, Deny, PluginCommand, TurnContext, TurnResult

__version__ = "0.1.0"

__all__ = [
    "Continue",
    "Deny",
    "JobDispatcher",
    "PluginCommand",
    "ProcessRunner",
    "SessionStore",
    "TurnContext",
    "TurnResult",
    "hookimpl",
]
