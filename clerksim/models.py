"""
Pydantic models for case state, AI service contracts and cache records
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import OSCE_QUESTION_COUNT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Sender(str, Enum):
    STUDENT = "student"
    PATIENT = "patient"
    PARENT = "parent"
    SYSTEM = "system"


class Difficulty(str, Enum):
    STANDARD = "standard"
    INTERMEDIATE = "intermediate"
    DIFFICULT = "difficult"


class CaseType(str, Enum):
    SIMULATION = "simulation"
    PRACTICE = "practice"
    OSCE = "osce"


class Message(BaseModel):
    """One transcript entry. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    sender: Sender
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    speaker_label: Optional[str] = None

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(sender=Sender.SYSTEM, text=text)

    @classmethod
    def student(cls, text: str) -> "Message":
        return cls(sender=Sender.STUDENT, text=text)


# --- CASE DETAILS ---
class PatientProfile(BaseModel):
    education_level: Optional[str] = None
    health_literacy: Optional[str] = None
    occupation: Optional[str] = None
    record_keeping: Optional[str] = None


class PediatricProfile(BaseModel):
    patient_age: int
    age_group: str
    responding_parent: Optional[str] = None
    parent_profile: Optional[PatientProfile] = None
    developmental_stage: Optional[str] = None
    communication_level: Optional[str] = None


class GeneratedCase(BaseModel):
    diagnosis: str = Field(..., min_length=1)
    primary_info: str = Field(..., min_length=1)
    opening_line: str = Field(..., min_length=1)
    patient_profile: Optional[PatientProfile] = None
    pediatric_profile: Optional[PediatricProfile] = None
    is_pediatric: bool = False


class CaseRequest(BaseModel):
    """Request for the generate-case operation"""
    case_type: CaseType = CaseType.SIMULATION
    department: str = Field(..., min_length=1)
    difficulty: Difficulty = Difficulty.STANDARD
    condition: Optional[str] = None
    custom_case: Optional[str] = None
    model: Optional[str] = None


# --- CLERKING ---
class EssentialInfo(BaseModel):
    diagnosis: str
    key_symptoms: List[str] = Field(default_factory=list)
    patient_age: str = "adult"
    department: Optional[str] = None
    conversation_summary: Optional[str] = None


class OptimizedContext(BaseModel):
    recent_messages: List[Message]
    essential_info: EssentialInfo


class PatientTurnRequest(BaseModel):
    case_id: str
    message: str
    context: OptimizedContext
    case: GeneratedCase


class PatientUtterance(BaseModel):
    sender: Sender = Sender.PATIENT
    text: str = Field(..., min_length=1)
    speaker_label: Optional[str] = None


class PatientTurn(BaseModel):
    messages: List[PatientUtterance] = Field(default_factory=list)


# --- RESULTS ---
class ResultStatus(str, Enum):
    NORMAL = "Normal"
    HIGH = "High"
    LOW = "Low"
    CRITICAL = "Critical"


class Urgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    CRITICAL = "critical"


class ReferenceRange(BaseModel):
    low: float
    high: float


def derive_status(value: float, reference: ReferenceRange) -> ResultStatus:
    if value > reference.high:
        return ResultStatus.HIGH
    if value < reference.low:
        return ResultStatus.LOW
    return ResultStatus.NORMAL


class QuantitativeResult(BaseModel):
    type: Literal["quantitative"] = "quantitative"
    name: str
    category: Optional[str] = None
    urgency: Urgency = Urgency.ROUTINE
    value: float
    unit: str = ""
    range: ReferenceRange
    status: Optional[ResultStatus] = None

    @model_validator(mode="after")
    def apply_status(self):
        # Critical is the generator's call; everything else follows the range.
        if self.status != ResultStatus.CRITICAL:
            self.status = derive_status(self.value, self.range)
        return self


class DescriptiveResult(BaseModel):
    type: Literal["descriptive"] = "descriptive"
    name: str
    category: Optional[str] = None
    urgency: Urgency = Urgency.ROUTINE
    findings: str
    impression: str
    recommendation: Optional[str] = None
    abnormal_flags: List[str] = Field(default_factory=list)
    report_type: Optional[str] = None


Result = Annotated[Union[QuantitativeResult, DescriptiveResult], Field(discriminator="type")]


class ResultsRequest(BaseModel):
    case_id: str
    plan: str = Field(..., min_length=1)
    case: GeneratedCase
    department: Optional[str] = None


class ResultSet(BaseModel):
    results: List[Result] = Field(default_factory=list)


# --- FEEDBACK ---
class Feedback(BaseModel):
    diagnosis: str
    key_learning_point: str
    what_you_did_well: List[str] = Field(default_factory=list)
    what_could_be_improved: List[str] = Field(default_factory=list)
    clinical_tip: str = ""


class MissedOpportunity(BaseModel):
    opportunity: str
    clinical_significance: str


class ConsultantTeachingNotes(BaseModel):
    diagnosis: str
    key_learning_point: str
    clerking_structure: str = ""
    missed_opportunities: List[MissedOpportunity] = Field(default_factory=list)
    clinical_reasoning: str = ""
    communication_notes: str = ""
    clinical_pearls: List[str] = Field(default_factory=list)


class ClinicalOpportunities(BaseModel):
    areas_for_improvement: List[str] = Field(default_factory=list)
    missed_opportunities: List[MissedOpportunity] = Field(default_factory=list)


class ComprehensiveFeedback(BaseModel):
    diagnosis: str
    key_learning_point: str
    what_you_did_well: List[str] = Field(default_factory=list)
    clinical_reasoning: str = ""
    clinical_opportunities: ClinicalOpportunities = Field(default_factory=ClinicalOpportunities)
    clinical_pearls: List[str] = Field(default_factory=list)


class CaseReport(BaseModel):
    patient_info: str
    examination: str
    investigations: str
    assessment: str
    management: str
    learning_points: List[str] = Field(default_factory=list)


class CaseReviewRequest(BaseModel):
    """Shared payload for feedback, teaching notes and report generation"""
    case_id: str
    department: Optional[str] = None
    case: GeneratedCase
    conversation: List[Message] = Field(default_factory=list)
    preliminary_diagnosis: str = ""
    examination_plan: str = ""
    investigation_plan: str = ""
    examination_results: List[Result] = Field(default_factory=list)
    investigation_results: List[Result] = Field(default_factory=list)
    final_diagnosis: str = ""
    management_plan: str = ""


# --- OSCE ---
class OSCEQuestion(BaseModel):
    id: int
    domain: str
    question: str = Field(..., min_length=1)


class OSCEQuestionSet(BaseModel):
    questions: List[OSCEQuestion]

    @field_validator("questions")
    @classmethod
    def exact_count(cls, value):
        if len(value) != OSCE_QUESTION_COUNT:
            raise ValueError(f"expected {OSCE_QUESTION_COUNT} questions, got {len(value)}")
        return value


class OSCEQuestionsRequest(BaseModel):
    case_id: str
    department: Optional[str] = None
    case: GeneratedCase


class OSCEStudentResponse(BaseModel):
    question_id: int
    answer: str = ""


class ScoreBreakdown(BaseModel):
    history_coverage: int
    relevance_of_questions: int
    clinical_reasoning: int
    followup_questions: int
    overall_score: int


class FollowupAnswerReview(BaseModel):
    question: str
    student_answer: str = ""
    feedback: str = ""


class OSCEEvaluation(BaseModel):
    diagnosis: str
    score_breakdown: ScoreBreakdown
    rationale_for_score: str = ""
    clinical_opportunities: ClinicalOpportunities = Field(default_factory=ClinicalOpportunities)
    followup_answers: List[FollowupAnswerReview] = Field(default_factory=list)
    clinical_pearls: List[str] = Field(default_factory=list)


class OSCEEvaluationRequest(CaseReviewRequest):
    questions: List[OSCEQuestion] = Field(default_factory=list)
    responses: List[OSCEStudentResponse] = Field(default_factory=list)


class OSCEStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    READY = "ready"
    FAILED = "failed"


class OSCEGenerationStatus(BaseModel):
    case_id: str
    status: OSCEStatus = OSCEStatus.PENDING
    attempts: int = 0
    max_attempts: int
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


# --- CASE STATE ---
class CaseState(BaseModel):
    """In-memory authoritative record of the active case"""
    case_id: Optional[str] = None
    session_id: Optional[str] = None
    case_type: CaseType = CaseType.SIMULATION
    department: Optional[str] = None
    difficulty: Difficulty = Difficulty.STANDARD
    case: Optional[GeneratedCase] = None
    messages: List[Message] = Field(default_factory=list)
    preliminary_diagnosis: str = ""
    examination_plan: str = ""
    investigation_plan: str = ""
    examination_results: List[Result] = Field(default_factory=list)
    investigation_results: List[Result] = Field(default_factory=list)
    final_diagnosis: str = ""
    management_plan: str = ""
    feedback: Optional[Feedback] = None
    detailed_feedback: Optional[ConsultantTeachingNotes] = None
    comprehensive_feedback: Optional[ComprehensiveFeedback] = None
    case_report: Optional[CaseReport] = None
    osce_evaluation: Optional[OSCEEvaluation] = None
    station_seconds: Optional[int] = None

    def review_request(self) -> CaseReviewRequest:
        return CaseReviewRequest(
            case_id=self.case_id,
            department=self.department,
            case=self.case,
            conversation=list(self.messages),
            preliminary_diagnosis=self.preliminary_diagnosis,
            examination_plan=self.examination_plan,
            investigation_plan=self.investigation_plan,
            examination_results=list(self.examination_results),
            investigation_results=list(self.investigation_results),
            final_diagnosis=self.final_diagnosis,
            management_plan=self.management_plan,
        )

    def secondary_context(self) -> Dict[str, Any]:
        """Fields persisted alongside the transcript"""
        return self.model_dump(
            mode="json",
            include={
                "preliminary_diagnosis", "examination_plan", "investigation_plan",
                "examination_results", "investigation_results", "final_diagnosis",
                "management_plan", "feedback",
            },
        )


class CachedCase(BaseModel):
    """Browser-local style mirror of a case, keyed by case id"""
    case_id: str = Field(..., min_length=1)
    conversation: List[Message]
    case_state: CaseState
    last_updated: datetime = Field(default_factory=utcnow)


class CaseIdentity(BaseModel):
    case_id: str
    session_id: str


class SessionValidation(BaseModel):
    is_valid: bool
    session_id: Optional[str] = None
