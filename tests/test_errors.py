"""
Tests for the error taxonomy helpers
"""
from clerksim.errors import (
    AIServiceError,
    InvalidResponseError,
    MaxRetriesExceededError,
    QuotaExceededError,
    RateLimitError,
    error_from_payload,
    is_background_retryable,
    is_transient_error,
    split_quota_message,
    user_facing_message,
)


def test_split_quota_message_on_first_separator():
    assert split_quota_message("QUOTA_EXCEEDED: Limit: 20 cases per day") == (
        "QUOTA_EXCEEDED", "Limit: 20 cases per day"
    )


def test_quota_error_exposes_reason_to_learner():
    error = error_from_payload(
        "QUOTA_EXCEEDED: You have exceeded your daily quota. Please try again tomorrow.", 429
    )

    assert isinstance(error, QuotaExceededError)
    assert error.code == "QUOTA_EXCEEDED"
    assert user_facing_message(error) == "You have exceeded your daily quota. Please try again tomorrow."
    assert not is_transient_error(error)
    assert not is_background_retryable(error)


def test_payload_mapping():
    assert isinstance(error_from_payload("Too many requests", 429), RateLimitError)
    assert isinstance(error_from_payload("rate limit hit"), RateLimitError)
    plain = error_from_payload("model overloaded", 503)
    assert type(plain) is AIServiceError
    assert plain.status_code == 503


def test_transient_detection():
    assert is_transient_error(RateLimitError())
    assert is_transient_error(Exception("got 429 from upstream"))
    assert is_transient_error(AIServiceError("slow down", status_code=429))
    assert not is_transient_error(AIServiceError("server error", status_code=500))
    assert not is_transient_error(InvalidResponseError("feedback", ["diagnosis"]))


def test_background_retry_covers_server_and_network_errors():
    assert is_background_retryable(AIServiceError("bad gateway", status_code=502))
    assert is_background_retryable(Exception("Network error calling osce-followup-questions"))
    assert is_background_retryable(Exception("Failed to fetch"))
    assert not is_background_retryable(InvalidResponseError("osce-followup-questions"))
    assert not is_background_retryable(ValueError("bad input"))


def test_invalid_response_hides_details_from_learner():
    error = InvalidResponseError("generate-case", ["opening_line", "diagnosis"])

    assert "opening_line" in str(error)
    assert "opening_line" not in user_facing_message(error)


def test_max_retries_message():
    assert "busy" in user_facing_message(MaxRetriesExceededError(3, RateLimitError()))
    assert user_facing_message(RuntimeError("boom")) == "boom"
