"""
Background generation of OSCE follow-up questions
"""
import asyncio
import logging
from typing import Optional

from .cache import LocalCaseCache
from .config import OSCE_MAX_ATTEMPTS
from .errors import MaxRetriesExceededError, is_background_retryable
from .gateway import AIGateway
from .models import GeneratedCase, OSCEGenerationStatus, OSCEQuestionSet, OSCEQuestionsRequest, OSCEStatus, utcnow
from .retry import Sleep, invoke_with_retry

logger = logging.getLogger(__name__)


async def generate_followup_questions(
    gateway: AIGateway,
    cache: LocalCaseCache,
    case_id: str,
    case: GeneratedCase,
    department: Optional[str] = None,
    max_attempts: int = OSCE_MAX_ATTEMPTS,
    sleep: Sleep = asyncio.sleep,
) -> Optional[OSCEQuestionSet]:
    """
    Generate and cache the follow-up questions for an OSCE station.

    Progress is recorded as an OSCEGenerationStatus in the cache so a poller
    can display it. Rate limits, 5xx and network failures are retried with
    backoff; on final failure the status becomes ``failed`` and None is returned.
    """
    status = OSCEGenerationStatus(case_id=case_id, max_attempts=max_attempts)
    await cache.save_osce_status(status)
    request = OSCEQuestionsRequest(case_id=case_id, department=department, case=case)

    async def attempt() -> OSCEQuestionSet:
        status.attempts += 1
        return await gateway.osce_followup_questions(request)

    async def on_retry(attempt_number: int, error: BaseException):
        status.status = OSCEStatus.RETRYING
        status.last_error = str(error)
        await cache.save_osce_status(status)

    try:
        questions = await invoke_with_retry(
            attempt,
            max_attempts,
            is_retryable=is_background_retryable,
            sleep=sleep,
            on_retry=on_retry,
        )
    except Exception as e:
        cause = e.last_error if isinstance(e, MaxRetriesExceededError) and e.last_error else e
        logger.error(f"Follow-up question generation failed for case {case_id} after {status.attempts} attempts: {cause}")
        status.status = OSCEStatus.FAILED
        status.last_error = str(cause)
        status.completed_at = utcnow()
        await cache.save_osce_status(status)
        return None

    await cache.save_osce_questions(case_id, questions)
    status.status = OSCEStatus.READY
    status.last_error = None
    status.completed_at = utcnow()
    await cache.save_osce_status(status)
    logger.info(f"Follow-up questions ready for case {case_id} after {status.attempts} attempts")
    return questions
