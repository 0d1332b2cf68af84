"""
SQLAlchemy database models
"""
from sqlalchemy import Boolean, Column, String, Integer, DateTime, JSON, Text, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from .database import Base
import uuid


def generate_uuid():
    return str(uuid.uuid4())


class User(Base):
    """Learner identified by email"""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False)
    country = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_active = Column(DateTime(timezone=True), onupdate=func.now())

    cases = relationship("Case", back_populates="user")

    __table_args__ = (
        Index("ix_users_email", "email"),
    )


class Case(Base):
    """One simulated patient encounter"""
    __tablename__ = "cases"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    # Case metadata
    case_type = Column(String, nullable=False, default="simulation")
    department = Column(String)
    difficulty = Column(String)
    diagnosis = Column(String)
    case_details = Column(JSON)  # GeneratedCase payload

    # Learner work
    preliminary_diagnosis = Column(Text, default="")
    examination_plan = Column(Text, default="")
    investigation_plan = Column(Text, default="")
    final_diagnosis = Column(Text, default="")
    management_plan = Column(Text, default="")
    case_report = Column(JSON, nullable=True)

    is_visible = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="cases")
    sessions = relationship("CaseSession", back_populates="case", cascade="all, delete-orphan")
    messages = relationship("CaseMessage", back_populates="case", cascade="all, delete-orphan")
    results = relationship("CaseResult", back_populates="case", cascade="all, delete-orphan")
    feedback = relationship("CaseFeedback", back_populates="case", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_cases_user_id", "user_id"),
        Index("ix_cases_created_at", "created_at"),
        Index("ix_cases_department", "department"),
    )


class CaseSession(Base):
    """Server-side session used to validate case resumption"""
    __tablename__ = "case_sessions"

    id = Column(String, primary_key=True, default=generate_uuid)
    case_id = Column(String, ForeignKey("cases.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)

    case = relationship("Case", back_populates="sessions")

    __table_args__ = (
        Index("ix_case_sessions_case_id", "case_id"),
    )


class CaseMessage(Base):
    """Transcript entry; ``position`` preserves conversation order"""
    __tablename__ = "case_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String, ForeignKey("cases.id"), nullable=False)
    position = Column(Integer, nullable=False)
    sender = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    speaker_label = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True))

    case = relationship("Case", back_populates="messages")

    __table_args__ = (
        Index("ix_case_messages_case_id_position", "case_id", "position"),
    )


class CaseResult(Base):
    """Examination or investigation result"""
    __tablename__ = "case_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String, ForeignKey("cases.id"), nullable=False)
    kind = Column(String, nullable=False)  # examination | investigation
    position = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)

    case = relationship("Case", back_populates="results")

    __table_args__ = (
        Index("ix_case_results_case_id_kind", "case_id", "kind"),
    )


class CaseFeedback(Base):
    """Feedback of one kind (simple, detailed, comprehensive, osce) per case"""
    __tablename__ = "case_feedback"

    id = Column(String, primary_key=True, default=generate_uuid)
    case_id = Column(String, ForeignKey("cases.id"), nullable=False)
    kind = Column(String, nullable=False, default="simple")
    content = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    case = relationship("Case", back_populates="feedback")

    __table_args__ = (
        Index("ix_case_feedback_case_id", "case_id"),
    )
