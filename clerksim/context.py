"""
Conversation context trimming before AI calls that consume history
"""
from typing import List, Optional, Sequence

from .config import (
    ALWAYS_KEEP_LAST,
    MEDICAL_TERMS,
    RECENT_MESSAGE_WINDOW,
    SUMMARY_MAX_MESSAGES,
    SUMMARY_SNIPPET_CHARS,
    SUMMARY_THRESHOLD,
)
from .models import EssentialInfo, GeneratedCase, Message, OptimizedContext, Sender

SUMMARY_HEADER = "Previous conversation summary:\n"
SUMMARY_FOOTER = "\n\n--- Current conversation continues ---\n"


def contains_medical_terms(text: str) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in MEDICAL_TERMS)


class ContextOptimizer:
    """Reduces a transcript to a bounded, relevant slice plus case essentials.

    Stateless: the same history and case always give the same result.
    """

    def __init__(
        self,
        recent_window: int = RECENT_MESSAGE_WINDOW,
        keep_last: int = ALWAYS_KEEP_LAST,
        summary_threshold: int = SUMMARY_THRESHOLD,
        summary_max_messages: int = SUMMARY_MAX_MESSAGES,
    ):
        self.recent_window = recent_window
        self.keep_last = keep_last
        self.summary_threshold = summary_threshold
        self.summary_max_messages = summary_max_messages

    def filter_relevant(self, history: Sequence[Message]) -> List[Message]:
        tail_start = len(history) - self.keep_last
        return [
            message for index, message in enumerate(history)
            if message.sender == Sender.SYSTEM
            or index >= tail_start
            or contains_medical_terms(message.text)
        ]

    def summarize(self, history: Sequence[Message]) -> Optional[str]:
        if len(history) <= self.summary_threshold:
            return None

        relevant = [
            m for m in history
            if m.sender != Sender.SYSTEM and contains_medical_terms(m.text)
        ][:self.summary_max_messages]
        if not relevant:
            return None

        lines = [f"{m.sender.value}: {m.text[:SUMMARY_SNIPPET_CHARS]}..." for m in relevant]
        return SUMMARY_HEADER + "\n".join(lines) + SUMMARY_FOOTER

    def recent_messages(self, history: Sequence[Message]) -> List[Message]:
        if len(history) <= self.recent_window:
            return list(history)
        return self.filter_relevant(history)[-self.recent_window:]

    def essential_info(self, case: GeneratedCase, department: Optional[str], summary: Optional[str]) -> EssentialInfo:
        symptoms = [line.strip() for line in case.primary_info.splitlines() if line.strip()][:3]
        if case.is_pediatric and case.pediatric_profile:
            age = str(case.pediatric_profile.patient_age)
        else:
            age = "adult"
        return EssentialInfo(
            diagnosis=case.diagnosis,
            key_symptoms=symptoms,
            patient_age=age,
            department=department,
            conversation_summary=summary,
        )

    def optimize(self, history: Sequence[Message], case: GeneratedCase,
                 department: Optional[str] = None) -> OptimizedContext:
        summary = self.summarize(history)
        return OptimizedContext(
            recent_messages=self.recent_messages(history),
            essential_info=self.essential_info(case, department, summary),
        )


_default_optimizer = ContextOptimizer()


def optimize(history: Sequence[Message], case: GeneratedCase,
             department: Optional[str] = None) -> OptimizedContext:
    return _default_optimizer.optimize(history, case, department)


def summarize_conversation(history: Sequence[Message]) -> Optional[str]:
    return _default_optimizer.summarize(history)
