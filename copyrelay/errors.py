"""
Error kinds for the copy relay.

A single exception type carries a tagged kind instead of a class hierarchy.
Callers branch on `error.kind`; the kind decides the default retryable flag
and the severity used for logging.
"""

import logging
import sqlite3
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """How loudly an error should be reported."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(str, Enum):
    """Fault taxonomy: (code, retryable, severity)."""

    NETWORK = "NETWORK_ERROR"
    API = "API_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    EXECUTION = "EXECUTION_ERROR"
    DATABASE = "DATABASE_ERROR"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_BREAKER_ERROR"
    CONFIGURATION = "CONFIGURATION_ERROR"

    @property
    def retryable(self) -> bool:
        return _KIND_DEFAULTS[self][0]

    @property
    def severity(self) -> Severity:
        return _KIND_DEFAULTS[self][1]


_KIND_DEFAULTS = {
    ErrorKind.NETWORK: (True, Severity.MEDIUM),
    ErrorKind.API: (True, Severity.MEDIUM),
    ErrorKind.VALIDATION: (False, Severity.HIGH),
    ErrorKind.EXECUTION: (False, Severity.HIGH),
    ErrorKind.DATABASE: (True, Severity.HIGH),
    ErrorKind.INSUFFICIENT_FUNDS: (False, Severity.CRITICAL),
    ErrorKind.CIRCUIT_OPEN: (True, Severity.HIGH),
    ErrorKind.CONFIGURATION: (False, Severity.CRITICAL),
}

_SEVERITY_LOG_LEVEL = {
    Severity.LOW: logging.DEBUG,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class CopyRelayError(Exception):
    """Raised for any classified fault in the relay."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind.retryable if retryable is None else retryable

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def severity(self) -> Severity:
        return self.kind.severity

    def __repr__(self) -> str:
        return f"CopyRelayError({self.kind.name}: {self.message})"


def classify(exc: BaseException) -> CopyRelayError:
    """
    Map any exception onto an ErrorKind.

    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, CopyRelayError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        # 4xx other than rate limiting will not succeed on retry
        retryable = status >= 500 or status == 429
        return CopyRelayError(ErrorKind.API, f"HTTP {status} from {exc.request.url}", retryable)
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return CopyRelayError(ErrorKind.NETWORK, str(exc) or type(exc).__name__)
    if isinstance(exc, sqlite3.Error):
        return CopyRelayError(ErrorKind.DATABASE, str(exc))
    return CopyRelayError(ErrorKind.EXECUTION, str(exc) or type(exc).__name__)


def log_error(exc: BaseException, context: str) -> CopyRelayError:
    """Log an exception at a level matching its severity and return it classified."""
    error = classify(exc)
    level = _SEVERITY_LOG_LEVEL[error.severity]
    retry_hint = " (retryable)" if error.retryable else ""
    logger.log(level, f"{context}: [{error.code}] {error.message}{retry_hint}")
    return error
