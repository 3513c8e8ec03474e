"""
Error taxonomy for the operator.

Errors are wrapped where they happen with structured context and classified
once, when the controller decides whether a reconciliation is retried.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Retry classification of an operator error."""

    TRANSIENT = "transient"
    CONFIG = "config"
    PERMANENT = "permanent"


class OperatorError(Exception):
    """
    Base class for classified operator errors.

    Carries the retry classification, the underlying cause and a mapping of
    diagnostic context (namespace, name, key, resource, ...).
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = {}
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, key: str, value: Any) -> "OperatorError":
        """Attach a context value and return the same error for chaining."""
        self.context[key] = value
        return self

    def __str__(self) -> str:
        text = self.message
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            text = f"{text} [{details}]"
        return text


class TransientError(OperatorError):
    """Infrastructure hiccup; always retryable."""

    kind = ErrorKind.TRANSIENT


class ConfigError(OperatorError):
    """Missing or misconfigured precondition; retryable once repaired."""

    kind = ErrorKind.CONFIG


class PermanentError(OperatorError):
    """Irrecoverable failure; never retried."""

    kind = ErrorKind.PERMANENT


def error_kind(err: BaseException) -> ErrorKind:
    """Return the declared kind of an error; unclassified errors are permanent."""
    if isinstance(err, OperatorError):
        return err.kind
    return ErrorKind.PERMANENT


def should_retry(err: Optional[BaseException]) -> bool:
    """Whether a reconciliation that failed with ``err`` should be retried."""
    if err is None:
        return False
    return error_kind(err) in (ErrorKind.TRANSIENT, ErrorKind.CONFIG)
