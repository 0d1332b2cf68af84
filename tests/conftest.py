"""
Shared fakes for the AI service, the remote store and Redis
"""
import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from clerksim.cache import LocalCaseCache
from clerksim.errors import CaseValidationError
from clerksim.gateway import OperationGateway
from clerksim.models import (
    CaseIdentity,
    CaseReport,
    ComprehensiveFeedback,
    ConsultantTeachingNotes,
    Feedback,
    GeneratedCase,
    OSCEEvaluation,
    OSCEQuestion,
    OSCEQuestionSet,
    PatientTurn,
    PatientUtterance,
    ResultSet,
    ScoreBreakdown,
    SessionValidation,
)


def make_case(**overrides) -> GeneratedCase:
    data = {
        "diagnosis": "Acute coronary syndrome",
        "primary_info": "Central chest pain for 2 hours\nRadiates to left arm\nSweating\nSmoker",
        "opening_line": "Doctor, my chest feels really tight.",
    }
    data.update(overrides)
    return GeneratedCase(**data)


def make_questions(count: int = 10) -> OSCEQuestionSet:
    return OSCEQuestionSet.model_construct(questions=[
        OSCEQuestion(id=i + 1, domain="management", question=f"Question {i + 1}?") for i in range(count)
    ])


def quantitative(name="Troponin", value=120.0, low=0.0, high=14.0) -> Dict[str, Any]:
    return {"type": "quantitative", "name": name, "value": value, "unit": "ng/L",
            "range": {"low": low, "high": high}}


def descriptive(name="ECG") -> Dict[str, Any]:
    return {"type": "descriptive", "name": name, "findings": "ST elevation in V1-V4",
            "impression": "Anterior STEMI", "abnormal_flags": ["ST elevation"]}


def default_handlers() -> Dict[str, Callable]:
    return {
        "generate-case": lambda request: make_case(),
        "patient-turn": lambda request: PatientTurn(messages=[
            PatientUtterance(text=f"Reply to: {request.message}"),
        ]),
        "examination-results": lambda request: ResultSet(results=[descriptive("Cardiovascular examination")]),
        "investigation-results": lambda request: ResultSet(results=[quantitative()]),
        "feedback": lambda request: Feedback(diagnosis="ACS", key_learning_point="Ask about radiation"),
        "detailed-feedback": lambda request: ConsultantTeachingNotes(
            diagnosis="ACS", key_learning_point="Structure the pain history"),
        "comprehensive-feedback": lambda request: ComprehensiveFeedback(
            diagnosis="ACS", key_learning_point="Time is muscle"),
        "case-report": lambda request: CaseReport(
            patient_info="58M", examination="Diaphoretic", investigations="Raised troponin",
            assessment="Anterior STEMI", management="Primary PCI"),
        "osce-followup-questions": lambda request: make_questions(),
        "osce-evaluation": lambda request: OSCEEvaluation(
            diagnosis="ACS",
            score_breakdown=ScoreBreakdown(history_coverage=4, relevance_of_questions=4,
                                           clinical_reasoning=3, followup_questions=4, overall_score=15)),
    }


class FakeGateway(OperationGateway):
    """Scripted AI service. A handler may return a model, raise, or be async."""

    def __init__(self, **handlers):
        self.handlers = default_handlers()
        self.handlers.update({name.replace("_", "-"): handler for name, handler in handlers.items()})
        self.calls: List[tuple] = []

    def on(self, operation: str, handler: Callable):
        self.handlers[operation] = handler

    def fail_times(self, operation: str, times: int, error: Exception):
        """Raise ``error`` for the first ``times`` calls, then use the default"""
        fallback = self.handlers[operation]
        state = {"left": times}

        def handler(request):
            if state["left"] > 0:
                state["left"] -= 1
                raise error
            return fallback(request)

        self.handlers[operation] = handler

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def call(self, operation, request):
        self.calls.append((operation, request))
        result = self.handlers[operation](request)
        if inspect.isawaitable(result):
            result = await result
        return result


class FakeStore:
    """Records every call; methods listed in ``fail_on`` raise."""

    def __init__(self, session_valid: bool = True):
        self.calls: List[tuple] = []
        self.fail_on = set()
        self.session_valid = session_valid
        self.conversations: Dict[str, list] = {}

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def create_or_get_user(self, email, country=None):
        self._record("create_or_get_user", email, country)
        return "user-1"

    async def open_case(self, user_email, user_country, state):
        self._record("open_case", user_email, user_country)
        return CaseIdentity(case_id="case-1", session_id="session-1")

    async def save_conversation(self, user_email, case_id, messages):
        self._record("save_conversation", case_id, list(messages))
        self.conversations[case_id] = list(messages)

    async def save_case_state(self, user_email, case_id, fields):
        self._record("save_case_state", case_id, fields)

    async def save_results(self, user_email, case_id, examination_results, investigation_results):
        self._record("save_results", case_id, list(examination_results), list(investigation_results))

    async def save_feedback(self, user_email, case_id, feedback, kind="simple"):
        self._record("save_feedback", case_id, kind)

    async def complete_case(self, user_email, case_id, final_diagnosis, management_plan, is_visible=False):
        self._record("complete_case", case_id, final_diagnosis, management_plan)

    async def save_case_report(self, case_id, report):
        self._record("save_case_report", case_id)

    async def validate_session(self, case_id):
        self._record("validate_session", case_id)
        if self.session_valid:
            return SessionValidation(is_valid=True, session_id="session-2")
        return SessionValidation(is_valid=False)

    async def invalidate_session(self, case_id):
        self._record("invalidate_session", case_id)

    async def update_visibility(self, user_email, case_id, is_visible):
        self._record("update_visibility", case_id, is_visible)

    async def list_completed_cases(self, user_email):
        self._record("list_completed_cases", user_email)
        if user_email != "student@example.com":
            raise CaseValidationError(f"User {user_email} not found")
        return [{"case_id": "case-1", "case_type": "simulation", "department": "Cardiology",
                 "diagnosis": "Acute coronary syndrome", "completed_at": "2026-01-05T10:00:00+00:00"}]

    async def get_case(self, user_email, case_id):
        self._record("get_case", user_email, case_id)
        if user_email != "student@example.com" or case_id != "case-1":
            raise CaseValidationError(f"Case {case_id} not found for {user_email}")
        return {"case_id": case_id, "department": "Cardiology",
                "messages": [{"sender": m.sender.value, "text": m.text}
                             for m in self.conversations.get(case_id, [])]}


class FakeRedis:
    """The subset of redis.asyncio.Redis used by LocalCaseCache"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.reads: List[str] = []
        self.broken = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("Connection refused")

    async def get(self, key) -> Optional[str]:
        self._check()
        self.reads.append(key)
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        return True

    async def delete(self, *keys):
        self._check()
        removed = sum(1 for key in keys if self.data.pop(key, None) is not None)
        return removed


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and only yields control"""

    def __init__(self, on_sleep: Optional[Callable[[int], Any]] = None):
        self.delays: List[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.on_sleep is not None:
            outcome = self.on_sleep(len(self.delays))
            if inspect.isawaitable(outcome):
                await outcome
        await asyncio.sleep(0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return LocalCaseCache(client=fake_redis)


@pytest.fixture
def sleeper():
    return SleepRecorder()
