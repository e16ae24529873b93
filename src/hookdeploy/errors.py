"""Error taxonomy for deployment runs.

Every failure that can end a stage maps to one ``ErrorKind``.  The kind is
what gets persisted on a stage/target result, so the string values are part
of the run status surface and must not change.

Key exports:
    ErrorKind — Persisted error kind names
    DeployError — Base class (kind, message, captured output, target)
    AuthenticationError, TransportError, RemoteCommandError,
    StageTimeoutError, ValidationError, ArtifactError
    InvalidTransitionError — Run state machine violation (registry)
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds recorded on stage and target results."""

    AUTHENTICATION = "AuthenticationError"
    TRANSPORT = "TransportError"
    REMOTE_COMMAND = "RemoteCommandError"
    TIMEOUT = "TimeoutError"
    VALIDATION = "ValidationError"
    ARTIFACT = "ArtifactError"
    INTERNAL = "InternalError"


class DeployError(Exception):
    """Base class for all deployment failures.

    Attributes:
        kind: The ``ErrorKind`` persisted with the result.
        message: Human readable description.
        output: Whatever output was captured before the failure.
        target: Target host name the error happened on, if any.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        target: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.output = output
        self.target = target
        self.exit_code = exit_code

    def __str__(self) -> str:
        if self.target:
            return f"[{self.target}] {self.message}"
        return self.message


class AuthenticationError(DeployError):
    """Credential missing, unreadable, or refused by the target. Never retried."""

    kind = ErrorKind.AUTHENTICATION


class TransportError(DeployError):
    """Network or connection failure. Eligible for bounded retries."""

    kind = ErrorKind.TRANSPORT


class RemoteCommandError(DeployError):
    """A command ran and exited non-zero. Surfaced verbatim, never retried."""

    kind = ErrorKind.REMOTE_COMMAND


class StageTimeoutError(DeployError):
    """An operation exceeded its stage timeout."""

    kind = ErrorKind.TIMEOUT


class ValidationError(DeployError):
    """Malformed pipeline definition or trigger payload."""

    kind = ErrorKind.VALIDATION


class ArtifactError(DeployError):
    """The staging area does not hold what a stage needs (clone or files)."""

    kind = ErrorKind.ARTIFACT


class InvalidTransitionError(RuntimeError):
    """A run state change would regress from a terminal or skip a state."""
