"""
Stopwatch/countdown clock for clerking sessions and OSCE stations
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .config import AUTO_START_DELAY_SECONDS, DEFAULT_STATION_SECONDS
from .retry import Sleep

logger = logging.getLogger(__name__)


class ClockMode(str, Enum):
    STOPWATCH = "stopwatch"
    COUNTDOWN = "countdown"


def format_clock(seconds: int) -> str:
    minutes, secs = divmod(max(seconds, 0), 60)
    return f"{minutes:02d}:{secs:02d}"


class SessionClock:
    """
    One-second clock with two modes.

    In countdown mode ``on_time_up`` fires exactly once when the remaining time
    reaches zero, after which the clock halts at zero. Pause, resume and reset
    are no-ops when there is nothing to do. Switching mode clears both counters
    and any previous time-up.
    """

    def __init__(self, mode: ClockMode = ClockMode.STOPWATCH, duration: int = DEFAULT_STATION_SECONDS,
                 on_time_up: Optional[Callable[[], None]] = None,
                 on_tick: Optional[Callable[["SessionClock"], None]] = None,
                 sleep: Sleep = asyncio.sleep, tick_seconds: float = 1.0):
        self.mode = mode
        self.duration = duration
        self.elapsed = 0
        self.remaining = duration
        self.running = False
        self.time_up = False
        self._on_time_up = on_time_up
        self._on_tick = on_tick
        self._sleep = sleep
        self.tick_seconds = tick_seconds
        self._task: Optional[asyncio.Task] = None
        self._auto_start: Optional[asyncio.Task] = None

    @property
    def display(self) -> str:
        return format_clock(self.remaining if self.mode == ClockMode.COUNTDOWN else self.elapsed)

    @property
    def pristine(self) -> bool:
        return not self.running and not self.time_up and self.elapsed == 0 and self.remaining == self.duration

    def _cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _cancel_auto_start(self):
        if self._auto_start is not None and not self._auto_start.done():
            self._auto_start.cancel()
        self._auto_start = None

    def start(self):
        if self.running or self.time_up:
            return
        self.running = True
        self._task = asyncio.create_task(self._run())

    resume = start

    def pause(self):
        if not self.running:
            return
        self.running = False
        self._cancel()

    def reset(self):
        if self.pristine:
            return
        self.running = False
        self._cancel()
        self.elapsed = 0
        self.remaining = self.duration
        self.time_up = False

    def switch_mode(self, mode: ClockMode):
        self.running = False
        self._cancel()
        self._cancel_auto_start()
        self.mode = mode
        self.elapsed = 0
        self.remaining = self.duration
        self.time_up = False

    def set_duration(self, seconds: int):
        if seconds <= 0:
            raise ValueError("Countdown duration must be positive")
        self.duration = seconds
        if not self.running:
            self.remaining = seconds
            self.time_up = False

    def schedule_auto_start(self, delay: float = AUTO_START_DELAY_SECONDS):
        """Start after ``delay`` seconds unless started or disposed first"""
        if self._auto_start is not None and not self._auto_start.done():
            return

        async def delayed_start():
            await self._sleep(delay)
            self.start()

        self._auto_start = asyncio.create_task(delayed_start())

    def tick(self):
        if not self.running:
            return
        if self.mode == ClockMode.STOPWATCH:
            self.elapsed += 1
        elif self.remaining <= 1:
            self.elapsed += self.remaining
            self.remaining = 0
            self.running = False
            self.time_up = True
            logger.info(f"Countdown finished after {self.elapsed}s")
            if self._on_time_up is not None:
                self._on_time_up()
        else:
            self.remaining -= 1
            self.elapsed += 1
        if self._on_tick is not None:
            self._on_tick(self)

    async def _run(self):
        while self.running:
            await self._sleep(self.tick_seconds)
            self.tick()

    async def wait(self):
        """Wait for a pending auto-start and then for the clock to stop"""
        if self._auto_start is not None:
            await asyncio.wait({self._auto_start})
        if self._task is not None:
            await asyncio.wait({self._task})

    def dispose(self):
        self.running = False
        self._cancel()
        self._cancel_auto_start()
