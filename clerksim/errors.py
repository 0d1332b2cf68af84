"""
Exception hierarchy for case orchestration and AI service failures
"""
from typing import Dict, List, Optional, Tuple

QUOTA_CODE = "QUOTA_EXCEEDED"
GENERIC_RETRY_MESSAGE = "The AI service returned an unexpected response. Please try again."
BUSY_MESSAGE = "The AI service is busy right now. Please wait a moment and try again."

_SERVER_ERROR_CODES = ("500", "502", "503", "504")


class SimulatorError(Exception):
    """Base error. ``user_message`` is safe to show to the learner."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message


class CaseValidationError(SimulatorError):
    """Rejected locally before any network call."""


class InvalidTransitionError(SimulatorError):
    def __init__(self, operation: str, phase: str):
        super().__init__(
            f"Cannot {operation} while case is {phase}",
            user_message="That action is not available at this stage of the case.",
        )
        self.operation = operation
        self.phase = phase


class AIServiceError(SimulatorError):
    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message=user_message)
        self.status_code = status_code


class RateLimitError(AIServiceError):
    def __init__(self, message: str = "Rate limit exceeded (429)", status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code, user_message=BUSY_MESSAGE)


class QuotaExceededError(AIServiceError):
    """Business rule rejection. Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = 429):
        code, reason = split_quota_message(message)
        super().__init__(message, status_code=status_code, user_message=reason)
        self.code = code
        self.reason = reason


class InvalidResponseError(AIServiceError):
    """The service answered with a payload that does not match the contract."""

    def __init__(self, operation: str, missing_fields: Optional[List[str]] = None, detail: str = ""):
        self.operation = operation
        self.missing_fields = missing_fields or []
        message = f"Invalid {operation} response"
        if self.missing_fields:
            message += f": missing {', '.join(self.missing_fields)}"
        elif detail:
            message += f": {detail}"
        super().__init__(message, user_message=GENERIC_RETRY_MESSAGE)


class MaxRetriesExceededError(SimulatorError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"Max retries exceeded after {attempts} attempts", user_message=BUSY_MESSAGE)
        self.attempts = attempts
        self.last_error = last_error


class CaseGenerationError(SimulatorError):
    pass


class CompletionError(SimulatorError):
    pass


class ResultsFetchError(SimulatorError):
    """Joint failure of the examination/investigation fan-in.

    ``partial`` holds whatever was fetched successfully; it has already been
    committed to the case by the time this is raised.
    """

    def __init__(self, errors: Dict[str, BaseException], partial=None):
        kinds = ", ".join(sorted(errors))
        super().__init__(
            f"Failed to fetch {kinds} results",
            user_message=f"Could not generate {kinds} results. Please try again.",
        )
        self.errors = errors
        self.partial = partial


def split_quota_message(message: str) -> Tuple[str, str]:
    """Split ``"QUOTA_EXCEEDED: reason"`` on the first ``": "``."""
    code, sep, reason = message.partition(": ")
    if not sep:
        return QUOTA_CODE, message
    return code, reason


def is_quota_error(error: BaseException) -> bool:
    if isinstance(error, QuotaExceededError):
        return True
    text = str(error)
    return QUOTA_CODE in text or "quota" in text.lower()


def is_transient_error(error: BaseException) -> bool:
    """True for rate-limit failures (HTTP 429 or a rate-limit marker)."""
    if isinstance(error, (InvalidResponseError, MaxRetriesExceededError)) or is_quota_error(error):
        return False
    if isinstance(error, RateLimitError) or getattr(error, "status_code", None) == 429:
        return True
    text = str(error).lower()
    return "429" in text or "rate limit" in text


def is_background_retryable(error: BaseException) -> bool:
    """Wider predicate for background jobs: rate limits, 5xx and network failures."""
    if is_transient_error(error):
        return True
    if isinstance(error, (InvalidResponseError, MaxRetriesExceededError)) or is_quota_error(error):
        return False
    status_code = getattr(error, "status_code", None)
    if status_code is not None and 500 <= status_code < 600:
        return True
    text = str(error).lower()
    return any(code in text for code in _SERVER_ERROR_CODES) or "network" in text or "fetch" in text


def error_from_payload(error_text: str, status_code: Optional[int] = None) -> AIServiceError:
    """Map an ``{"error": ...}`` payload from the AI service onto the taxonomy."""
    if error_text.startswith(QUOTA_CODE) or "quota" in error_text.lower():
        return QuotaExceededError(error_text, status_code=status_code)
    if status_code == 429 or "rate limit" in error_text.lower() or "429" in error_text:
        return RateLimitError(error_text, status_code=status_code)
    return AIServiceError(error_text, status_code=status_code)


def user_facing_message(error: BaseException) -> str:
    if isinstance(error, SimulatorError):
        return error.user_message
    if is_quota_error(error):
        return split_quota_message(str(error))[1]
    return str(error) or "Something went wrong. Please try again."
