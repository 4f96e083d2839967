"""Error taxonomy for KEYSTONE.

Every engine error carries the fields the error envelope needs:
    - error_type: stable snake_case identifier
    - error_code: short machine code
    - recovery_action: what the caller can do next
    - user_message: safe, non-technical text for the widget

Fatal kinds short-circuit to the error envelope. Source errors are resolved by
the ErrorRecoveryController and surface only once recovery is exhausted.
CacheError is never surfaced: the engine treats it as a cache miss.
"""

from typing import Any


class KeystoneError(Exception):
    """Base exception for all engine errors."""

    error_type = "internal_error"
    error_code = "KS-500"
    recovery_action = "retry_later"
    user_message = "Something went wrong while loading this widget."
    fatal = True

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the error envelope."""
        return {
            "error_type": self.error_type,
            "error_code": self.error_code,
            "message": self.message,
            "recovery_action": self.recovery_action,
            "user_message": self.user_message,
        }


class InvalidIntentError(KeystoneError):
    """Malformed intent, or a metric/dimension unknown to the catalog."""

    error_type = "invalid_intent"
    error_code = "KS-400"
    recovery_action = "fix_request"
    user_message = "This widget asks for data that is not available."


class UnsupportedIntentError(KeystoneError):
    """No query constructor exists for a requested source kind."""

    error_type = "unsupported_intent"
    error_code = "KS-422"
    recovery_action = "fix_request"
    user_message = "This widget cannot be built from the configured data sources."


class SecurityViolation(KeystoneError):
    """A plan entry failed validation. Never retried, never falls back."""

    error_type = "security_violation"
    error_code = "KS-403"
    recovery_action = "none"
    user_message = "This request was blocked by a data access policy."

    def __init__(
        self,
        message: str,
        entry: Any = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, detail)
        self.entry = entry


class SourceError(KeystoneError):
    """Base for failures reported by a SourceAdapter."""

    error_type = "source_error"
    error_code = "KS-502"
    recovery_action = "retry_later"
    user_message = "The data source did not respond correctly."
    fatal = False


class SourceTimeout(SourceError):
    """The source did not answer within its sub-deadline. Retryable."""

    error_type = "source_timeout"
    error_code = "KS-504"
    user_message = "The data source took too long to respond."


class DeadlineExceeded(SourceTimeout):
    """The request deadline was spent before recovery could finish."""

    error_type = "deadline_exceeded"
    error_code = "KS-508"


class TransientNetworkError(SourceError):
    """Connection reset, rate limited, gateway errors. Retryable."""

    error_type = "transient_network_error"
    error_code = "KS-503"


class SourceUnavailable(SourceError):
    """Source is down or misconfigured. Not retried; triggers fallback."""

    error_type = "source_unavailable"
    error_code = "KS-501"
    recovery_action = "use_fallback"
    user_message = "The data source is currently unavailable."


class SchemaConflictError(KeystoneError):
    """Two plan entries disagree on the type of the same field."""

    error_type = "schema_conflict"
    error_code = "KS-409"
    recovery_action = "contact_support"
    user_message = "The data sources returned incompatible results."


class CacheError(KeystoneError):
    """Cache backend failure. Non-fatal: the engine proceeds as a miss."""

    error_type = "cache_error"
    error_code = "KS-510"
    fatal = False


# Error kind name (as carried by ExecutionResult.error_kind) → exception class
SOURCE_ERRORS: dict[str, type[KeystoneError]] = {
    "SourceTimeout": SourceTimeout,
    "DeadlineExceeded": DeadlineExceeded,
    "TransientNetworkError": TransientNetworkError,
    "SourceUnavailable": SourceUnavailable,
    "SecurityViolation": SecurityViolation,
}


def error_from_kind(kind: str, detail: str) -> KeystoneError:
    """Rebuild the exception for a classified ExecutionResult error."""
    cls = SOURCE_ERRORS.get(kind, SourceError)
    return cls(detail)
