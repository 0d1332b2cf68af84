"""
Case lifecycle state machine: generation, clerking, results, completion
"""
import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from .backend.services import CaseStoreProtocol
from .cache import LocalCaseCache
from .clock import ClockMode, SessionClock
from .config import AUTO_START_DELAY_SECONDS, DEFAULT_STATION_SECONDS, DEPARTMENTS
from .context import ContextOptimizer
from .errors import (
    CaseGenerationError,
    CaseValidationError,
    CompletionError,
    InvalidTransitionError,
    ResultsFetchError,
    user_facing_message,
)
from .followup import generate_followup_questions
from .gateway import AIGateway
from .models import (
    CaseReport,
    CaseRequest,
    CaseState,
    CaseType,
    ComprehensiveFeedback,
    ConsultantTeachingNotes,
    Difficulty,
    Feedback,
    Message,
    OSCEEvaluation,
    OSCEEvaluationRequest,
    OSCEStudentResponse,
    PatientTurnRequest,
)
from .persistence import BatchPersistenceQueue, BatchSaveReport, build_case_save_steps
from .polling import FollowUpQuestionPoller
from .results import CombinedResults, ParallelResultsCoordinator
from .retry import ResilientInvoker, Sleep

logger = logging.getLogger(__name__)

OPENING_TEMPLATE = 'The patient is here today with the following complaint:\n\n"{opening_line}"'

# Fields a results request overwrites
RESULTS_FIELDS = (
    "preliminary_diagnosis", "examination_plan", "investigation_plan",
    "examination_results", "investigation_results",
)


def resolve_department(name: Optional[str]) -> Optional[str]:
    """Canonical department name for ``name``, ignoring case and surrounding space"""
    wanted = (name or "").strip().lower()
    for department in DEPARTMENTS:
        if department.lower() == wanted:
            return department
    return None


class CasePhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    GENERATING = "generating"
    CLERKING = "clerking"
    AWAITING_RESULTS = "awaiting_results"
    REVIEWING_RESULTS = "reviewing_results"
    COMPLETING = "completing"
    COMPLETED = "completed"


class FeedbackStatus(str, Enum):
    READY = "feedback_ready"
    PENDING = "feedback_pending"


ALLOWED_TRANSITIONS: Dict[CasePhase, Set[CasePhase]] = {
    CasePhase.UNINITIALIZED: {CasePhase.GENERATING},
    CasePhase.GENERATING: {CasePhase.CLERKING, CasePhase.REVIEWING_RESULTS, CasePhase.UNINITIALIZED},
    # OSCE stations complete straight from clerking
    CasePhase.CLERKING: {CasePhase.AWAITING_RESULTS, CasePhase.COMPLETING},
    CasePhase.AWAITING_RESULTS: {CasePhase.REVIEWING_RESULTS, CasePhase.CLERKING},
    CasePhase.REVIEWING_RESULTS: {CasePhase.AWAITING_RESULTS, CasePhase.COMPLETING},
    CasePhase.COMPLETING: {CasePhase.COMPLETED, CasePhase.REVIEWING_RESULTS, CasePhase.CLERKING},
    CasePhase.COMPLETED: set(),
}


class CompletionOutcome(BaseModel):
    status: FeedbackStatus
    feedback: Optional[ComprehensiveFeedback] = None
    # Usually still generating when completion returns
    case_report: Optional[CaseReport] = None


class CaseLifecycleController:
    """
    Owns one case from generation to completion.

    The controller is the only writer of ``state``. Other components get
    snapshots or commit callbacks. Clerking turns are serialized so the
    transcript order always matches the conversation. Background work (report,
    deferred feedback, follow-up questions, persistence) runs as tasks owned by
    the controller and is cancelled by ``dispose``.
    """

    def __init__(self, gateway: AIGateway, store: CaseStoreProtocol, cache: LocalCaseCache, user_email: str,
                 user_country: Optional[str] = None, invoker: Optional[ResilientInvoker] = None,
                 optimizer: Optional[ContextOptimizer] = None, sleep: Sleep = asyncio.sleep):
        if not user_email:
            raise CaseValidationError("A user email is required to run a case")
        self.gateway = gateway
        self.store = store
        self.cache = cache
        self.user_email = user_email
        self.user_country = user_country
        self.invoker = invoker or ResilientInvoker(sleep=sleep)
        self.optimizer = optimizer or ContextOptimizer()
        self.coordinator = ParallelResultsCoordinator(gateway, self.invoker)
        self.persistence = BatchPersistenceQueue()
        self._sleep = sleep

        self.state = CaseState()
        self.phase = CasePhase.UNINITIALIZED
        self.feedback_status: Optional[FeedbackStatus] = None

        self._turn_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._report_task: Optional[asyncio.Task] = None
        self._feedback_task: Optional[asyncio.Task] = None
        self._followup_task: Optional[asyncio.Task] = None

    # --- helpers ---
    def _transition(self, target: CasePhase, operation: str):
        if target not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(operation, self.phase.value)
        logger.info(f"Case {self.state.case_id or '-'}: {self.phase.value} -> {target.value} ({operation})")
        self.phase = target

    def _require(self, operation: str, *phases: CasePhase):
        if self.phase not in phases:
            raise InvalidTransitionError(operation, self.phase.value)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _mirror(self):
        if self.phase != CasePhase.COMPLETED:
            await self.cache.save_case(self.state)

    # --- generation ---
    async def generate_case(self, department: str, difficulty: Difficulty = Difficulty.STANDARD, *,
                            case_type: CaseType = CaseType.SIMULATION, condition: Optional[str] = None,
                            custom_case: Optional[str] = None,
                            station_seconds: Optional[int] = None) -> CaseState:
        self._require("generate a case", CasePhase.UNINITIALIZED)
        if not department or not department.strip():
            raise CaseValidationError("Department is required", user_message="Please select a department.")
        canonical = resolve_department(department)
        if canonical is None:
            raise CaseValidationError(
                f"Unknown department: {department}", user_message="Please select a department from the list.",
            )
        department = canonical
        if case_type == CaseType.PRACTICE and not (condition or custom_case):
            raise CaseValidationError(
                "Practice cases need a condition or a custom description",
                user_message="Please choose a condition or describe the case you want to practise.",
            )

        self._transition(CasePhase.GENERATING, "generate a case")
        request = CaseRequest(
            case_type=case_type, department=department, difficulty=difficulty,
            condition=condition, custom_case=custom_case,
        )
        try:
            case = await self.invoker.invoke(lambda: self.gateway.generate_case(request))
            state = CaseState(
                case_type=case_type, department=department, difficulty=difficulty,
                case=case, station_seconds=station_seconds,
            )
            identity = await self.store.open_case(self.user_email, self.user_country, state)
        except Exception as e:
            self._transition(CasePhase.UNINITIALIZED, "abandon generation")
            logger.error(f"Case generation failed for {department}: {e}")
            raise CaseGenerationError(str(e), user_message=user_facing_message(e)) from e

        state.case_id = identity.case_id
        state.session_id = identity.session_id
        state.messages.append(Message.system(OPENING_TEMPLATE.format(opening_line=case.opening_line)))
        self.state = state
        self._transition(CasePhase.CLERKING, "start clerking")
        await self._mirror()

        if case_type == CaseType.OSCE:
            self.start_followup_generation()
        return state

    async def generate_practice_case(self, department: str, condition: Optional[str] = None,
                                     difficulty: Difficulty = Difficulty.STANDARD,
                                     custom_case: Optional[str] = None) -> CaseState:
        return await self.generate_case(
            department, difficulty, case_type=CaseType.PRACTICE,
            condition=condition, custom_case=custom_case,
        )

    async def generate_osce_case(self, department: str, difficulty: Difficulty = Difficulty.STANDARD,
                                 station_seconds: int = DEFAULT_STATION_SECONDS) -> CaseState:
        return await self.generate_case(
            department, difficulty, case_type=CaseType.OSCE, station_seconds=station_seconds,
        )

    # --- clerking ---
    async def send_message(self, text: str) -> List[Message]:
        """Run one clerking turn and return the messages it appended after the learner's.

        Failures are absorbed into the transcript as a single system message.
        """
        if not text or not text.strip():
            raise CaseValidationError("Message is empty", user_message="Please type a question first.")
        self._require("send a message", CasePhase.CLERKING)

        async with self._turn_lock:
            self._require("send a message", CasePhase.CLERKING)
            context = self.optimizer.optimize(self.state.messages, self.state.case, self.state.department)
            self.state.messages.append(Message.student(text))
            request = PatientTurnRequest(
                case_id=self.state.case_id, message=text, context=context, case=self.state.case,
            )
            try:
                turn = await self.invoker.invoke(lambda: self.gateway.patient_turn(request))
                replies = [
                    Message(sender=u.sender, text=u.text, speaker_label=u.speaker_label)
                    for u in turn.messages
                ]
            except Exception as e:
                logger.error(f"Clerking turn failed for case {self.state.case_id}: {e}")
                replies = [Message.system(f"Error: {user_facing_message(e)}")]

            self.state.messages.extend(replies)
            await self._mirror()
            return replies

    # --- results ---
    async def request_results(self, examination_plan: str, investigation_plan: str,
                              preliminary_diagnosis: Optional[str] = None) -> CombinedResults:
        if not (examination_plan or "").strip() and not (investigation_plan or "").strip():
            raise CaseValidationError(
                "Both examination and investigation plans are empty",
                user_message="Please enter an examination plan or an investigation plan.",
            )
        self._require("request results", CasePhase.CLERKING, CasePhase.REVIEWING_RESULTS)

        async with self._turn_lock:
            prior = self.phase
            self._transition(CasePhase.AWAITING_RESULTS, "request results")
            state = self.state
            previous = {field: getattr(state, field) for field in RESULTS_FIELDS}
            committed = set()
            state.examination_plan = examination_plan or ""
            state.investigation_plan = investigation_plan or ""
            if preliminary_diagnosis is not None:
                state.preliminary_diagnosis = preliminary_diagnosis
            # Re-running the phase replaces earlier results
            state.examination_results = []
            state.investigation_results = []

            def commit_examination(results):
                state.examination_results = list(results)
                committed.add("examination")

            def commit_investigation(results):
                state.investigation_results = list(results)
                committed.add("investigation")

            def roll_back():
                # restores the case as it was before this request
                for field, value in previous.items():
                    setattr(state, field, value)
                self.phase = prior

            try:
                combined = await self.coordinator.fetch(
                    state.case_id, state.case, state.examination_plan, state.investigation_plan,
                    commit_examination, commit_investigation, department=state.department,
                )
            except ResultsFetchError:
                if committed:
                    self._transition(CasePhase.REVIEWING_RESULTS, "review partial results")
                    await self._mirror()
                    self.schedule_persist()
                else:
                    roll_back()
                raise
            except Exception:
                roll_back()
                raise

            self._transition(CasePhase.REVIEWING_RESULTS, "review results")
            await self._mirror()
            self.schedule_persist()
            return combined

    # --- completion ---
    async def complete_case(self, final_diagnosis: str, management_plan: str,
                            is_visible: bool = False) -> CompletionOutcome:
        """
        Persist the finished case and start feedback and report generation.

        Returns as soon as the case is stored. Comprehensive feedback is tried
        once inline: on success the outcome is ``feedback_ready``, otherwise it
        is ``feedback_pending`` and generation continues in the background. The
        narrative case report is always generated in the background.
        """
        if not final_diagnosis or not final_diagnosis.strip():
            raise CaseValidationError("Final diagnosis is required", user_message="Please enter a final diagnosis.")
        if not management_plan or not management_plan.strip():
            raise CaseValidationError("Management plan is required", user_message="Please enter a management plan.")
        self._require("complete the case", CasePhase.REVIEWING_RESULTS)

        self._transition(CasePhase.COMPLETING, "complete the case")
        self.state.final_diagnosis = final_diagnosis
        self.state.management_plan = management_plan

        await self.persist()
        try:
            await self.store.complete_case(
                self.user_email, self.state.case_id, final_diagnosis, management_plan, is_visible=is_visible,
            )
        except Exception as e:
            self._transition(CasePhase.REVIEWING_RESULTS, "retry completion")
            logger.error(f"Failed to complete case {self.state.case_id}: {e}")
            raise CompletionError(str(e), user_message="Could not save your case. Please try again.") from e

        review = self.state.review_request()
        self._report_task = self._spawn(self._generate_report(review), "case-report")

        try:
            feedback = await self.gateway.comprehensive_feedback(review)
        except Exception as e:
            logger.warning(f"Feedback not ready at completion for case {self.state.case_id}: {e}")
            self.feedback_status = FeedbackStatus.PENDING
            self._feedback_task = self._spawn(self._generate_feedback(review), "comprehensive-feedback")
        else:
            self.state.comprehensive_feedback = feedback
            self.feedback_status = FeedbackStatus.READY
            self._spawn(self._store_feedback(feedback, "comprehensive"), "save-feedback")

        self._transition(CasePhase.COMPLETED, "finish")
        await self.cache.clear_case(self.state.case_id)
        return CompletionOutcome(
            status=self.feedback_status,
            feedback=self.state.comprehensive_feedback,
            case_report=self.state.case_report,
        )

    async def _store_feedback(self, feedback: BaseModel, kind: str):
        try:
            await self.store.save_feedback(self.user_email, self.state.case_id, feedback, kind=kind)
        except Exception as e:
            logger.error(f"Failed to save {kind} feedback for case {self.state.case_id}: {e}")

    async def _generate_report(self, review) -> Optional[CaseReport]:
        try:
            report = await self.invoker.invoke(lambda: self.gateway.case_report(review))
        except Exception as e:
            logger.error(f"Case report generation failed for case {review.case_id}: {e}")
            return None
        self.state.case_report = report
        try:
            await self.store.save_case_report(review.case_id, report)
        except Exception as e:
            logger.error(f"Failed to save case report for case {review.case_id}: {e}")
        return report

    async def _generate_feedback(self, review) -> Optional[ComprehensiveFeedback]:
        try:
            feedback = await self.invoker.invoke(lambda: self.gateway.comprehensive_feedback(review))
        except Exception as e:
            logger.error(f"Background feedback generation failed for case {review.case_id}: {e}")
            return None
        self.state.comprehensive_feedback = feedback
        self.feedback_status = FeedbackStatus.READY
        await self._store_feedback(feedback, "comprehensive")
        return feedback

    async def wait_for_feedback(self) -> Optional[ComprehensiveFeedback]:
        if self._feedback_task is not None:
            await asyncio.wait({self._feedback_task})
        return self.state.comprehensive_feedback

    async def wait_for_report(self) -> Optional[CaseReport]:
        if self._report_task is not None:
            await asyncio.wait({self._report_task})
        return self.state.case_report

    async def fetch_feedback(self) -> Feedback:
        """Short consultant feedback for a completed case"""
        self._require("fetch feedback", CasePhase.COMPLETED)
        review = self.state.review_request()
        feedback = await self.invoker.invoke(lambda: self.gateway.feedback(review))
        self.state.feedback = feedback
        await self._store_feedback(feedback, "simple")
        return feedback

    async def fetch_detailed_feedback(self) -> ConsultantTeachingNotes:
        """Consultant teaching notes for a completed case"""
        self._require("fetch detailed feedback", CasePhase.COMPLETED)
        if not self.state.department or not self.state.case_id:
            raise CaseValidationError("Department and case id are required for detailed feedback")
        review = self.state.review_request()
        notes = await self.invoker.invoke(lambda: self.gateway.detailed_feedback(review))
        self.state.detailed_feedback = notes
        await self._store_feedback(notes, "detailed")
        return notes

    # --- OSCE ---
    def start_followup_generation(self) -> asyncio.Task:
        if self._followup_task is None or self._followup_task.done():
            self._followup_task = self._spawn(
                generate_followup_questions(
                    self.gateway, self.cache, self.state.case_id, self.state.case,
                    department=self.state.department, sleep=self._sleep,
                ),
                "osce-followup-questions",
            )
        return self._followup_task

    def follow_up_poller(self, **kwargs) -> FollowUpQuestionPoller:
        if self.state.case_type != CaseType.OSCE or not self.state.case_id:
            raise CaseValidationError("Follow-up questions only exist for generated OSCE stations")
        kwargs.setdefault("sleep", self._sleep)
        return FollowUpQuestionPoller(self.cache, self.state.case_id, **kwargs)

    def station_clock(self, on_time_up=None, auto_start: bool = True,
                      delay: float = AUTO_START_DELAY_SECONDS) -> SessionClock:
        """Countdown clock for the station; the stopwatch is used for other cases"""
        if self.state.case_type == CaseType.OSCE:
            clock = SessionClock(
                ClockMode.COUNTDOWN, duration=self.state.station_seconds or DEFAULT_STATION_SECONDS,
                on_time_up=on_time_up, sleep=self._sleep,
            )
            if auto_start:
                clock.schedule_auto_start(delay)
        else:
            clock = SessionClock(ClockMode.STOPWATCH, sleep=self._sleep)
        return clock

    async def submit_osce_answers(self, responses: List[OSCEStudentResponse]) -> OSCEEvaluation:
        if self.state.case_type != CaseType.OSCE:
            raise CaseValidationError("Only OSCE stations take follow-up answers")
        self._require("submit OSCE answers", CasePhase.CLERKING)
        questions = await self.cache.load_osce_questions(self.state.case_id)
        if questions is None:
            raise CaseValidationError(
                "Follow-up questions are not ready",
                user_message="The follow-up questions are still being prepared. Please wait a moment.",
            )

        async with self._turn_lock:
            self._transition(CasePhase.COMPLETING, "submit OSCE answers")
            review = self.state.review_request()
            request = OSCEEvaluationRequest(
                **review.model_dump(), questions=questions.questions, responses=responses,
            )
            try:
                evaluation = await self.invoker.invoke(lambda: self.gateway.evaluate_osce(request))
            except Exception as e:
                self._transition(CasePhase.CLERKING, "retry OSCE evaluation")
                logger.error(f"OSCE evaluation failed for case {self.state.case_id}: {e}")
                raise CompletionError(str(e), user_message=user_facing_message(e)) from e

            self.state.osce_evaluation = evaluation
            await self.persist()
            try:
                await self.store.complete_case(self.user_email, self.state.case_id, "", "")
            except Exception as e:
                logger.error(f"Failed to mark OSCE case {self.state.case_id} complete: {e}")

            self.feedback_status = FeedbackStatus.READY
            self._transition(CasePhase.COMPLETED, "finish station")
            await self.cache.clear_case(self.state.case_id)
            return evaluation

    # --- resume ---
    async def resume_case(self, case_id: str) -> bool:
        """
        Restore a case from the local cache.

        Returns False, leaving the controller uninitialized, when the server
        session is no longer valid or the cached copy is missing or corrupt.
        """
        self._require("resume a case", CasePhase.UNINITIALIZED)
        try:
            validation = await self.store.validate_session(case_id)
        except Exception as e:
            logger.warning(f"Session validation failed for case {case_id}: {e}")
            return False
        if not validation.is_valid:
            logger.info(f"Session for case {case_id} is no longer valid; starting fresh")
            await self.cache.clear_case(case_id)
            return False

        record = await self.cache.load_case(case_id)
        if record is None:
            return False

        self._transition(CasePhase.GENERATING, "resume a case")
        self.state = record.case_state.model_copy(update={
            "case_id": case_id,
            "session_id": validation.session_id,
            "messages": list(record.conversation),
        })
        if self.state.examination_results or self.state.investigation_results:
            self._transition(CasePhase.REVIEWING_RESULTS, "resume reviewing results")
        else:
            self._transition(CasePhase.CLERKING, "resume clerking")

        if self.state.case_type == CaseType.OSCE and not await self.cache.osce_questions_ready(case_id):
            status = await self.cache.load_osce_status(case_id)
            if status is None:
                self.start_followup_generation()
        return True

    # --- persistence ---
    async def persist(self) -> BatchSaveReport:
        """Mirror the current state to the remote store. Never raises."""
        if not self.state.case_id:
            return BatchSaveReport()
        async with self._persist_lock:
            steps = build_case_save_steps(self.store, self.user_email, self.state)
            return await self.persistence.run(steps)

    def schedule_persist(self) -> asyncio.Task:
        return self._spawn(self.persist(), "persist-case")

    # --- teardown ---
    async def dispose(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()
