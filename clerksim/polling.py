"""
Polling for asynchronously generated OSCE follow-up questions
"""
import asyncio
import contextlib
import logging
from enum import Enum
from typing import Callable, Optional

from .cache import LocalCaseCache
from .config import POLL_INTERVAL_SECONDS
from .models import OSCEGenerationStatus, OSCEQuestionSet, OSCEStatus
from .retry import Sleep

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"


class FollowUpQuestionPoller:
    """
    Waits for the follow-up questions of one case to appear in the cache.

    The poll loop is a single task owned by the poller. It ends the moment the
    questions are ready, or when ``stop`` is called (also on leaving the
    ``async with`` block). A ``failed`` generation status is shown but does not
    stop polling, since the generator may still be retrying.
    """

    def __init__(self, cache: LocalCaseCache, case_id: str, interval: float = POLL_INTERVAL_SECONDS,
                 sleep: Sleep = asyncio.sleep,
                 on_change: Optional[Callable[["FollowUpQuestionPoller"], None]] = None):
        self.cache = cache
        self.case_id = case_id
        self.interval = interval
        self._sleep = sleep
        self._on_change = on_change
        self._task: Optional[asyncio.Task] = None
        self.state = PollerState.IDLE
        self.questions: Optional[OSCEQuestionSet] = None
        self.generation_status: Optional[OSCEGenerationStatus] = None
        self.ticks = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, state: PollerState):
        if state != self.state:
            logger.debug(f"Follow-up poller for {self.case_id}: {self.state.value} -> {state.value}")
        self.state = state
        if self._on_change is not None:
            self._on_change(self)

    async def _check_ready(self) -> bool:
        questions = await self.cache.load_osce_questions(self.case_id)
        if questions is None:
            return False
        self.questions = questions
        self._set_state(PollerState.READY)
        return True

    async def start(self):
        if self.active or self.state == PollerState.READY:
            return
        if await self._check_ready():
            return

        self.generation_status = await self.cache.load_osce_status(self.case_id)
        self._set_state(PollerState.POLLING)
        self._task = asyncio.create_task(self._run())

    async def tick(self):
        self.ticks += 1
        self.generation_status = await self.cache.load_osce_status(self.case_id)
        if await self._check_ready():
            return
        if self.generation_status and self.generation_status.status == OSCEStatus.FAILED:
            self._set_state(PollerState.FAILED)
        else:
            self._set_state(PollerState.POLLING)

    async def _run(self):
        while self.state != PollerState.READY:
            await self._sleep(self.interval)
            await self.tick()
        logger.info(f"Follow-up questions for {self.case_id} ready after {self.ticks} polls")

    async def wait(self) -> Optional[OSCEQuestionSet]:
        """Wait until the questions are ready or polling is stopped"""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.questions

    async def stop(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.state != PollerState.READY:
            self._set_state(PollerState.IDLE)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
