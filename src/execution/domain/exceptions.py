from typing import Any, Dict, Optional

from src.execution.domain.command import CommandStatus, EventLevel


class CommandError(Exception):
    """
    Base class for every failure that ends a claimed command.
    Each subclass fixes the terminal status and the audit event level.
    """

    terminal_status = CommandStatus.FAILED
    level = EventLevel.ERROR
    security = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def code(self) -> str:
        return type(self).__name__


class SignatureInvalid(CommandError):
    """Envelope authentication failed. Never retried."""

    terminal_status = CommandStatus.CANCELLED


class GovernanceBlocked(CommandError):
    """Kill switch active or capability disabled."""

    terminal_status = CommandStatus.CANCELLED
    level = EventLevel.WARN


class PathTraversal(CommandError):
    """Resolved path escapes the sandbox root."""

    security = True


class CommandNotAllowed(CommandError):
    """Unknown command name or non-allowlisted shell token."""

    level = EventLevel.WARN


class ExecutionTimeout(CommandError):
    """Subprocess exceeded its wall-clock budget and was killed."""


class ExecutionFailed(CommandError):
    """Non-zero exit, I/O failure or invalid payload."""
