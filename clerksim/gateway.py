"""
Request/response contract with the external AI generation service
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Type

import httpx
from pydantic import BaseModel, ValidationError

from .config import AI_SERVICE_URL, AI_TIMEOUT
from .errors import AIServiceError, CaseValidationError, InvalidResponseError, error_from_payload
from .models import (
    CaseReport,
    CaseRequest,
    CaseReviewRequest,
    ComprehensiveFeedback,
    ConsultantTeachingNotes,
    Feedback,
    GeneratedCase,
    OSCEEvaluation,
    OSCEEvaluationRequest,
    OSCEQuestionSet,
    OSCEQuestionsRequest,
    PatientTurn,
    PatientTurnRequest,
    ResultSet,
    ResultsRequest,
)

logger = logging.getLogger(__name__)


class Operation(NamedTuple):
    method: str
    request_model: Type[BaseModel]
    response_model: Type[BaseModel]


OPERATIONS: Dict[str, Operation] = {
    "generate-case": Operation("generate_case", CaseRequest, GeneratedCase),
    "patient-turn": Operation("patient_turn", PatientTurnRequest, PatientTurn),
    "examination-results": Operation("examination_results", ResultsRequest, ResultSet),
    "investigation-results": Operation("investigation_results", ResultsRequest, ResultSet),
    "feedback": Operation("feedback", CaseReviewRequest, Feedback),
    "detailed-feedback": Operation("detailed_feedback", CaseReviewRequest, ConsultantTeachingNotes),
    "comprehensive-feedback": Operation("comprehensive_feedback", CaseReviewRequest, ComprehensiveFeedback),
    "case-report": Operation("case_report", CaseReviewRequest, CaseReport),
    "osce-followup-questions": Operation("osce_followup_questions", OSCEQuestionsRequest, OSCEQuestionSet),
    "osce-evaluation": Operation("evaluate_osce", OSCEEvaluationRequest, OSCEEvaluation),
}


class AIGateway(Protocol):
    async def generate_case(self, request: CaseRequest) -> GeneratedCase: ...

    async def patient_turn(self, request: PatientTurnRequest) -> PatientTurn: ...

    async def examination_results(self, request: ResultsRequest) -> ResultSet: ...

    async def investigation_results(self, request: ResultsRequest) -> ResultSet: ...

    async def feedback(self, request: CaseReviewRequest) -> Feedback: ...

    async def detailed_feedback(self, request: CaseReviewRequest) -> ConsultantTeachingNotes: ...

    async def comprehensive_feedback(self, request: CaseReviewRequest) -> ComprehensiveFeedback: ...

    async def case_report(self, request: CaseReviewRequest) -> CaseReport: ...

    async def osce_followup_questions(self, request: OSCEQuestionsRequest) -> OSCEQuestionSet: ...

    async def evaluate_osce(self, request: OSCEEvaluationRequest) -> OSCEEvaluation: ...


def missing_fields(error: ValidationError) -> List[str]:
    return [
        ".".join(str(part) for part in item["loc"])
        for item in error.errors()
        if item["type"] == "missing"
    ]


def parse_response(operation: str, payload: Any, model: Type[BaseModel]) -> BaseModel:
    """Validate an untrusted payload, raising InvalidResponseError on mismatch."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        missing = missing_fields(e)
        logger.warning(f"Invalid {operation} response, missing fields: {missing or 'none'}; {e.error_count()} errors")
        raise InvalidResponseError(operation, missing, detail=str(e.errors()[0]["msg"])) from e


class OperationGateway(ABC):
    """Maps each gateway method onto a named operation handled by ``call``."""

    @abstractmethod
    async def call(self, operation: str, request: BaseModel) -> BaseModel:
        raise NotImplementedError

    async def dispatch(self, operation: str, payload: Dict[str, Any]) -> BaseModel:
        entry = OPERATIONS.get(operation)
        if entry is None:
            raise CaseValidationError(f"Unknown operation: {operation}")
        try:
            request = entry.request_model.model_validate(payload)
        except ValidationError as e:
            raise CaseValidationError(f"Invalid {operation} request: {e.error_count()} errors") from e
        return await getattr(self, entry.method)(request)

    async def generate_case(self, request: CaseRequest) -> GeneratedCase:
        return await self.call("generate-case", request)

    async def patient_turn(self, request: PatientTurnRequest) -> PatientTurn:
        return await self.call("patient-turn", request)

    async def examination_results(self, request: ResultsRequest) -> ResultSet:
        return await self.call("examination-results", request)

    async def investigation_results(self, request: ResultsRequest) -> ResultSet:
        return await self.call("investigation-results", request)

    async def feedback(self, request: CaseReviewRequest) -> Feedback:
        return await self.call("feedback", request)

    async def detailed_feedback(self, request: CaseReviewRequest) -> ConsultantTeachingNotes:
        return await self.call("detailed-feedback", request)

    async def comprehensive_feedback(self, request: CaseReviewRequest) -> ComprehensiveFeedback:
        return await self.call("comprehensive-feedback", request)

    async def case_report(self, request: CaseReviewRequest) -> CaseReport:
        return await self.call("case-report", request)

    async def osce_followup_questions(self, request: OSCEQuestionsRequest) -> OSCEQuestionSet:
        return await self.call("osce-followup-questions", request)

    async def evaluate_osce(self, request: OSCEEvaluationRequest) -> OSCEEvaluation:
        return await self.call("osce-evaluation", request)


class HttpAIGateway(OperationGateway):
    """Talks to a remote AI service exposing ``POST /api/ai/<operation>``."""

    def __init__(self, base_url: str = AI_SERVICE_URL, timeout: float = AI_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self):
        await self._client.aclose()

    async def call(self, operation: str, request: BaseModel) -> BaseModel:
        try:
            response = await self._client.post(
                f"/api/ai/{operation}",
                json=request.model_dump(mode="json"),
            )
        except httpx.TimeoutException as e:
            raise AIServiceError(f"Network timeout calling {operation}: {e}", status_code=504) from e
        except httpx.TransportError as e:
            raise AIServiceError(f"Network error calling {operation}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            if response.is_error:
                raise error_from_payload(response.text or f"HTTP {response.status_code}", response.status_code)
            raise InvalidResponseError(operation, detail="response body is not JSON")

        if isinstance(data, dict) and "error" in data:
            raise error_from_payload(str(data["error"]), response.status_code)
        if response.is_error:
            raise error_from_payload(f"HTTP {response.status_code} from {operation}", response.status_code)

        return parse_response(operation, data, OPERATIONS[operation].response_model)
