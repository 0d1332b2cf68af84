"""
Redis-backed local mirror of active cases and OSCE follow-up questions
"""
import logging
from typing import Optional, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from .config import CACHE_TTL, CASE_KEY_PREFIX, OSCE_QUESTIONS_PREFIX, OSCE_STATUS_PREFIX, REDIS_URL
from .models import CachedCase, CaseState, OSCEGenerationStatus, OSCEQuestionSet, utcnow

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Redis client singleton
_redis_client: Optional[redis.Redis] = None


async def get_cache() -> redis.Redis:
    """Get Redis client instance"""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=10
        )

    return _redis_client


async def close_cache():
    """Close Redis connection"""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def case_key(case_id: str) -> str:
    return f"{CASE_KEY_PREFIX}{case_id}"


def questions_key(case_id: str) -> str:
    return f"{OSCE_QUESTIONS_PREFIX}{case_id}"


def status_key(case_id: str) -> str:
    return f"{OSCE_STATUS_PREFIX}{case_id}"


class LocalCaseCache:
    """
    Non-authoritative mirror keyed by case id.

    Every operation is best effort: Redis failures are logged and reported as
    a miss, and entries that fail validation are deleted and treated as absent.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl: int = CACHE_TTL):
        self._client = client
        self.ttl = ttl

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_cache()
        return self._client

    async def _write(self, key: str, value: BaseModel) -> bool:
        try:
            client = await self._redis()
            await client.setex(key, self.ttl, value.model_dump_json())
            return True
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def _read(self, key: str, model: Type[M]) -> Optional[M]:
        try:
            client = await self._redis()
            raw = await client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if not raw:
            return None

        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding invalid cache entry {key}: {e.error_count()} errors")
            await self._delete(key)
            return None

    async def _delete(self, *keys: str):
        try:
            client = await self._redis()
            await client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache delete failed for {keys}: {e}")

    # --- cases ---
    async def save_case(self, state: CaseState) -> bool:
        if not state.case_id:
            return False
        record = CachedCase(
            case_id=state.case_id,
            conversation=list(state.messages),
            case_state=state,
            last_updated=utcnow(),
        )
        return await self._write(case_key(state.case_id), record)

    async def load_case(self, case_id: str) -> Optional[CachedCase]:
        record = await self._read(case_key(case_id), CachedCase)
        if record is not None and record.case_id != case_id:
            logger.warning(f"Cache entry for {case_id} belongs to {record.case_id}; discarding")
            await self._delete(case_key(case_id))
            return None
        return record

    async def clear_case(self, case_id: str):
        await self._delete(case_key(case_id), questions_key(case_id), status_key(case_id))
        logger.info(f"Cleared local cache for case {case_id}")

    # --- OSCE follow-up questions ---
    async def save_osce_questions(self, case_id: str, questions: OSCEQuestionSet) -> bool:
        return await self._write(questions_key(case_id), questions)

    async def load_osce_questions(self, case_id: str) -> Optional[OSCEQuestionSet]:
        return await self._read(questions_key(case_id), OSCEQuestionSet)

    async def osce_questions_ready(self, case_id: str) -> bool:
        return await self.load_osce_questions(case_id) is not None

    async def save_osce_status(self, status: OSCEGenerationStatus) -> bool:
        return await self._write(status_key(status.case_id), status)

    async def load_osce_status(self, case_id: str) -> Optional[OSCEGenerationStatus]:
        return await self._read(status_key(case_id), OSCEGenerationStatus)
