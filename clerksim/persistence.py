"""
Sequential multi-step persistence with progress reporting
"""
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence

from pydantic import BaseModel, Field

from .models import CaseState

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Some of your work could not be saved to the server. It is still kept on this device."


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    FAILED = "failed"


class SaveStep(NamedTuple):
    name: str
    action: Callable[[], Awaitable[None]]


class BatchSaveProgress(BaseModel):
    current_step: str
    step_number: int
    total_steps: int

    @property
    def percent(self) -> int:
        return round(self.step_number / self.total_steps * 100) if self.total_steps else 100


class BatchSaveReport(BaseModel):
    completed: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


ProgressListener = Callable[[Optional[BatchSaveProgress], SaveStatus], None]


class BatchPersistenceQueue:
    """
    Runs save steps strictly in order, one batch at a time.

    A failing step is logged and recorded, the remaining steps still run, and
    nothing is raised to the caller: remote persistence never blocks the learner.
    Overlapping runs on the same queue are a programming error.
    """

    def __init__(self):
        self.status = SaveStatus.IDLE
        self.message: Optional[str] = None
        self.progress: Optional[BatchSaveProgress] = None
        self.last_report: Optional[BatchSaveReport] = None
        self._running = False
        self._listeners: List[ProgressListener] = []

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: ProgressListener):
        self._listeners.append(listener)

    def _notify(self):
        for listener in self._listeners:
            listener(self.progress, self.status)

    async def run(self, steps: Sequence[SaveStep]) -> BatchSaveReport:
        if self._running:
            raise RuntimeError("A batch save is already running on this queue")

        self._running = True
        self.status = SaveStatus.SAVING
        self.message = None
        report = BatchSaveReport()
        total = len(steps)
        try:
            for number, step in enumerate(steps, start=1):
                self.progress = BatchSaveProgress(current_step=step.name, step_number=number, total_steps=total)
                self._notify()
                try:
                    await step.action()
                    report.completed.append(step.name)
                except Exception as e:
                    logger.error(f"Save step '{step.name}' failed ({number}/{total}): {e}")
                    report.failed[step.name] = str(e)
        finally:
            self._running = False
            self.progress = None

        if report.failed:
            self.status = SaveStatus.FAILED
            self.message = FAILURE_MESSAGE
        else:
            self.status = SaveStatus.SAVED
        self.last_report = report
        self._notify()
        return report


class SimpleSaveIndicator:
    """Single-line status over a queue"""

    def __init__(self, queue: BatchPersistenceQueue, message: str = "Saving..."):
        self.queue = queue
        self.message = message

    @property
    def visible(self) -> bool:
        return self.queue.status in (SaveStatus.SAVING, SaveStatus.FAILED)

    @property
    def text(self) -> str:
        if self.queue.status == SaveStatus.SAVING:
            return self.message
        if self.queue.status == SaveStatus.FAILED:
            return self.queue.message or FAILURE_MESSAGE
        if self.queue.status == SaveStatus.SAVED:
            return "Saved"
        return ""


class DetailedSaveIndicator:
    """Step-by-step view of the same queue; records every step that started."""

    def __init__(self, queue: BatchPersistenceQueue):
        self.queue = queue
        self.history: List[BatchSaveProgress] = []
        queue.subscribe(self._on_progress)

    def _on_progress(self, progress: Optional[BatchSaveProgress], status: SaveStatus):
        if progress is not None:
            self.history.append(progress)

    @property
    def current_step(self) -> Optional[str]:
        return self.queue.progress.current_step if self.queue.progress else None

    @property
    def current_step_number(self) -> int:
        return self.queue.progress.step_number if self.queue.progress else 0

    @property
    def total_steps(self) -> int:
        return self.queue.progress.total_steps if self.queue.progress else 0

    @property
    def percent(self) -> int:
        return self.queue.progress.percent if self.queue.progress else 0


def build_case_save_steps(store, user_email: str, state: CaseState) -> List[SaveStep]:
    """Conversation, case state, results, then feedback, from a frozen snapshot of ``state``."""
    snapshot = state.model_copy(deep=True)
    case_id = snapshot.case_id

    async def save_conversation():
        await store.save_conversation(user_email, case_id, snapshot.messages)

    async def save_case_state():
        await store.save_case_state(user_email, case_id, snapshot.secondary_context())

    async def save_results():
        await store.save_results(
            user_email, case_id, snapshot.examination_results, snapshot.investigation_results
        )

    async def save_feedback():
        for kind, feedback in (
            ("simple", snapshot.feedback),
            ("detailed", snapshot.detailed_feedback),
            ("comprehensive", snapshot.comprehensive_feedback),
            ("osce", snapshot.osce_evaluation),
        ):
            if feedback is not None:
                await store.save_feedback(user_email, case_id, feedback, kind=kind)

    steps = [
        SaveStep("Saving conversation", save_conversation),
        SaveStep("Saving case details", save_case_state),
    ]
    if snapshot.examination_results or snapshot.investigation_results:
        steps.append(SaveStep("Saving results", save_results))
    if any(f is not None for f in (snapshot.feedback, snapshot.detailed_feedback,
                                   snapshot.comprehensive_feedback, snapshot.osce_evaluation)):
        steps.append(SaveStep("Saving feedback", save_feedback))
    return steps
