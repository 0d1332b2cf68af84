"""
Pydantic models for API request/response schemas
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional
from enum import Enum

from ..models import Message, Result


class BatchSaveAction(str, Enum):
    SAVE_CONVERSATION = "saveConversation"
    SAVE_CASE_STATE = "saveCaseState"
    SAVE_RESULTS = "saveResults"
    SAVE_FEEDBACK = "saveFeedback"
    SAVE_DETAILED_FEEDBACK = "saveDetailedFeedback"


class BatchSaveRequest(BaseModel):
    """One step of a batch save, keyed by user and case"""
    action: BatchSaveAction
    user_email: Optional[str] = Field(None, alias="userEmail")
    user_country: Optional[str] = Field(None, alias="userCountry")
    case_id: Optional[str] = Field(None, alias="caseId")
    messages: List[Message] = Field(default_factory=list)
    case_state: Dict[str, Any] = Field(default_factory=dict, alias="caseState")
    examination_results: List[Result] = Field(default_factory=list, alias="examinationResults")
    investigation_results: List[Result] = Field(default_factory=list, alias="investigationResults")
    feedback: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "action": "saveConversation",
                "userEmail": "student@example.com",
                "caseId": "3f1c2e9a-1b7d-4c55-9a0e-2d8b7f6c1a11",
                "messages": [{"sender": "student", "text": "What brings you in today?"}],
            }
        },
    )


class BatchSaveResponse(BaseModel):
    success: bool
    action: BatchSaveAction
    case_id: str


class SessionValidationRequest(BaseModel):
    case_id: str = Field(..., alias="caseId")

    model_config = ConfigDict(populate_by_name=True)


class VisibilityRequest(BaseModel):
    user_email: str = Field(..., alias="userEmail")
    case_id: str = Field(..., alias="caseId")
    is_visible: bool = Field(..., alias="isVisible")

    model_config = ConfigDict(populate_by_name=True)
