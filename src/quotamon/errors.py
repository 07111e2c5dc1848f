"""Errors raised by probes and the layers underneath them."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTHENTICATION_REQUIRED = "authentication_required"
    EXECUTION_FAILED = "execution_failed"
    PARSE_FAILED = "parse_failed"
    TIMEOUT = "timeout"


class ProbeError(Exception):
    """Base class for every failure a probe reports."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str = "", cause: Exception | None = None) -> None:
        super().__init__(message)
        self.reason = message
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind.value}: {self.reason}"
        return self.kind.value


class AuthenticationRequired(ProbeError):
    """Credentials are missing, expired or rejected. Needs user action."""

    kind = ErrorKind.AUTHENTICATION_REQUIRED

    def __init__(self, message: str = "login required", cause: Exception | None = None) -> None:
        super().__init__(message, cause)


class ExecutionFailed(ProbeError):
    kind = ErrorKind.EXECUTION_FAILED


class ParseFailed(ProbeError):
    kind = ErrorKind.PARSE_FAILED


class Timeout(ProbeError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "timed out", cause: Exception | None = None) -> None:
        super().__init__(message, cause)
