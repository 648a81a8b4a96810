from __future__ import annotations

import pytest

from universal_studio.core.errors import (
    CANCELLED_MESSAGE,
    CREDENTIAL_ERROR_MESSAGE,
    QUOTA_ERROR_MESSAGE,
    EmptyResultError,
    GenerationTimeoutError,
    TransportError,
    TurnCancelledError,
    describe_error,
    is_credential_error,
    is_quota_error,
)


@pytest.mark.parametrize(
    "message",
    [
        "404 NOT_FOUND. Requested entity was not found.",
        "API Key must be set before calling the Gemini API.",
        "400 API key not valid. Please pass a valid API key.",
        "reason: API_KEY_INVALID",
    ],
)
def test_credential_failures_are_recognized(message):
    error = TransportError(message)
    assert is_credential_error(error)
    assert describe_error(error) == CREDENTIAL_ERROR_MESSAGE


def test_quota_failures_get_dedicated_message():
    error = TransportError("429 RESOURCE_EXHAUSTED. You exceeded your current quota.")
    assert is_quota_error(error)
    assert not is_credential_error(error)
    assert describe_error(error) == QUOTA_ERROR_MESSAGE


def test_other_failures_are_prefixed():
    assert describe_error(EmptyResultError("TTS failed to produce audio data.")) == (
        "An error occurred: TTS failed to produce audio data."
    )
    assert describe_error(RuntimeError("")) == "An error occurred: Please try again."


def test_cancellation_message():
    assert describe_error(TurnCancelledError("stop")) == CANCELLED_MESSAGE


def test_stages():
    assert GenerationTimeoutError.stage == "timeout"
    assert issubclass(GenerationTimeoutError, EmptyResultError)
    assert TransportError("x").stage == "transport"
