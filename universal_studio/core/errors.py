"""Pipeline error taxonomy and user-facing error messages."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base error for per-task pipeline failures."""

    stage: str = "unknown"


class MissingInputError(PipelineError):
    stage = "input"


class EmptyResultError(PipelineError):
    stage = "empty_result"


class GenerationTimeoutError(EmptyResultError):
    stage = "timeout"


class TransportError(PipelineError):
    stage = "transport"


class UnknownCapabilityError(PipelineError):
    stage = "classification"


class InvalidTaskError(PipelineError):
    stage = "classification"


class TurnCancelledError(PipelineError):
    stage = "cancelled"


class CredentialsRequiredError(RuntimeError):
    """Raised to the caller when no valid API credential is available for a new turn."""


class TurnInProgressError(RuntimeError):
    """Raised when a conversation already has a turn in flight."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"A turn is already running for conversation {conversation_id}")
        self.conversation_id = conversation_id


# =============================================================================
# Failure text classification
# =============================================================================
# The remote service reports an unknown/revoked key as a missing entity, and the
# SDK refuses to build a client without one. Both mean the stored key is unusable.

_CREDENTIAL_INDICATORS = (
    "requested entity was not found.",
    "api key must be set",
    "api key not valid",
    "api_key_invalid",
)

_QUOTA_INDICATORS = frozenset([
    "resource_exhausted",
    "quota exceeded",
    "rate limit exceeded",
    "too many requests",
    "429",
])

CREDENTIAL_ERROR_MESSAGE = (
    "Your API key appears to be invalid or was not set. "
    "Please select a valid key and try again."
)
QUOTA_ERROR_MESSAGE = (
    "Quota exceeded: the Gemini API rejected the request because the key's quota is exhausted. "
    "Wait for the quota to reset, use a different API key, or upgrade the plan."
)
CANCELLED_MESSAGE = "The request was cancelled before it finished."


def is_credential_error(error: BaseException) -> bool:
    error_str = str(error).lower()
    return any(indicator in error_str for indicator in _CREDENTIAL_INDICATORS)


def is_quota_error(error: BaseException) -> bool:
    """Check if an exception is a provider quota/rate limit error (e.g. RESOURCE_EXHAUSTED)."""
    error_str = str(error).lower()
    return any(indicator in error_str for indicator in _QUOTA_INDICATORS)


def describe_error(error: BaseException) -> str:
    """Return the human-readable message shown in an error record."""
    if is_credential_error(error):
        return CREDENTIAL_ERROR_MESSAGE
    if isinstance(error, TurnCancelledError):
        return CANCELLED_MESSAGE
    if is_quota_error(error):
        return QUOTA_ERROR_MESSAGE
    message = str(error).strip() or "Please try again."
    return f"An error occurred: {message}"
