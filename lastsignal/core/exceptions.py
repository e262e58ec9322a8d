"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy for LastSignal.

- Maps every failure onto one of four handling policies
- Carries context for logging
- Lets the control loop decide between retry and abort

============================================================
EXCEPTION HIERARCHY
============================================================
LastSignalError (base)
├── ConfigurationError          fatal at startup, never retried
│   ├── MissingConfigError
│   ├── InvalidConfigError
│   └── InvalidDurationError
├── ChannelError                transient, recovered by the orchestrator
│   └── ChannelAuthError
├── OAuthError                  token exchange / refresh failure
├── StatePersistenceError       propagated, cycle retried after cool-down
├── DeliveryExhaustedError      ends one action, other actions still run
└── EscalationCompleteError     startup guard, nothing left to do

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class LastSignalError(Exception):
    """
    Base exception for all LastSignal errors.

    All exceptions carry:
    - severity: for log level selection
    - context: for debugging
    - classification: for retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        if ctx_str:
            line = f"{line} | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(LastSignalError):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    def __init__(self, key: str, source: str = "config"):
        super().__init__(
            message=f"Missing required configuration: {key} (in {source})",
            config_key=key,
            context={"source": source},
        )


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            actual_value=value,
            context={"reason": reason},
        )


class InvalidDurationError(ConfigurationError):
    """A duration string could not be parsed."""

    def __init__(self, value: Any, reason: str):
        super().__init__(
            message=f"Invalid duration {value!r}: {reason}",
            actual_value=value,
            context={"reason": reason},
        )


# ============================================================
# CHANNEL ERRORS
# ============================================================

class ChannelError(LastSignalError):
    """A channel operation failed (network, protocol, remote API)."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if channel:
            context["channel"] = channel
        if operation:
            context["operation"] = operation

        super().__init__(message, context=context, **kwargs)


class ChannelAuthError(ChannelError):
    """Channel credentials were rejected."""

    default_severity = Severity.HIGH


class OAuthError(LastSignalError):
    """OAuth token exchange, refresh or storage failed."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT


# ============================================================
# STATE ERRORS
# ============================================================

class StatePersistenceError(LastSignalError):
    """Lifecycle state could not be read or written."""

    default_severity = Severity.CRITICAL
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if path:
            context["path"] = path

        super().__init__(message, context=context, **kwargs)


# ============================================================
# DELIVERY ERRORS
# ============================================================

class DeliveryExhaustedError(LastSignalError):
    """No delivery was possible across an entire required action."""

    default_severity = Severity.CRITICAL
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        failed: int = 0,
        skipped: int = 0,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if action:
            context["action"] = action
        context["failed"] = failed
        context["skipped"] = skipped

        super().__init__(message, context=context, **kwargs)


class EscalationCompleteError(LastSignalError):
    """Every configured recipient has already received the last signal."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE


__all__ = [
    "Severity",
    "ErrorClassification",
    "LastSignalError",
    "ConfigurationError",
    "MissingConfigError",
    "InvalidConfigError",
    "InvalidDurationError",
    "ChannelError",
    "ChannelAuthError",
    "OAuthError",
    "StatePersistenceError",
    "DeliveryExhaustedError",
    "EscalationCompleteError",
]
