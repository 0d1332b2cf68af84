"""
Service layer for the remote case persistence store
"""
from typing import Any, Dict, List, Optional, Protocol, Sequence
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from pydantic import BaseModel
import logging

from ..config import SESSION_TTL_HOURS
from ..errors import CaseValidationError
from ..models import CaseIdentity, CaseState, Message, SessionValidation
from .database import get_session_factory
from .db_models import Case, CaseFeedback, CaseMessage, CaseResult, CaseSession, User

logger = logging.getLogger(__name__)

RESULT_KINDS = ("examination", "investigation")
FEEDBACK_KINDS = ("simple", "detailed", "comprehensive", "osce")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _minutes_between(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None:
        return 0
    return max(round((_aware(end) - _aware(start)).total_seconds() / 60), 0)


def _dump(item: Any) -> Dict[str, Any]:
    return item.model_dump(mode="json") if isinstance(item, BaseModel) else dict(item)


class CaseStoreProtocol(Protocol):
    async def open_case(self, user_email: str, user_country: Optional[str], state: CaseState) -> CaseIdentity: ...

    async def save_conversation(self, user_email: str, case_id: str, messages: Sequence[Message]): ...

    async def save_case_state(self, user_email: str, case_id: str, fields: Dict[str, Any]): ...

    async def save_results(self, user_email: str, case_id: str, examination_results: Sequence[Any],
                           investigation_results: Sequence[Any]): ...

    async def save_feedback(self, user_email: str, case_id: str, feedback: Any, kind: str = "simple"): ...

    async def complete_case(self, user_email: str, case_id: str, final_diagnosis: str,
                            management_plan: str, is_visible: bool = False): ...

    async def save_case_report(self, case_id: str, report: Any): ...

    async def validate_session(self, case_id: str) -> SessionValidation: ...

    async def invalidate_session(self, case_id: str): ...


class CaseStore:
    """Async SQLAlchemy implementation of the remote persistence store"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None,
                 session_ttl_hours: int = SESSION_TTL_HOURS):
        self._session_factory = session_factory
        self.session_ttl = timedelta(hours=session_ttl_hours)

    def _session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()

    async def _get_user(self, db: AsyncSession, email: str) -> Optional[User]:
        result = await db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def _owned_case(self, db: AsyncSession, user_email: str, case_id: str) -> Case:
        result = await db.execute(
            select(Case).join(User).where(Case.id == case_id, User.email == user_email)
        )
        case = result.scalar_one_or_none()
        if case is None:
            raise CaseValidationError(f"Case {case_id} not found for {user_email}")
        return case

    async def create_or_get_user(self, email: str, country: Optional[str] = None) -> str:
        """Return the user id for ``email``, creating the user if needed"""
        async with self._session() as db:
            user = await self._get_user(db, email)
            if user is None:
                user = User(email=email, country=country)
                db.add(user)
                logger.info(f"Created user {email}")
            elif country and user.country != country:
                user.country = country
            await db.commit()
            return user.id

    async def open_case(self, user_email: str, user_country: Optional[str], state: CaseState) -> CaseIdentity:
        """Create the case row and an active session; ids are assigned here"""
        user_id = await self.create_or_get_user(user_email, user_country)
        async with self._session() as db:
            case = Case(
                user_id=user_id,
                case_type=state.case_type.value,
                department=state.department,
                difficulty=state.difficulty.value,
                diagnosis=state.case.diagnosis if state.case else None,
                case_details=state.case.model_dump(mode="json") if state.case else None,
            )
            db.add(case)
            await db.flush()
            session = CaseSession(
                case_id=case.id,
                expires_at=datetime.now(timezone.utc) + self.session_ttl,
            )
            db.add(session)
            await db.commit()
            logger.info(f"Opened case {case.id} (session {session.id}) for {user_email}")
            return CaseIdentity(case_id=case.id, session_id=session.id)

    async def save_conversation(self, user_email: str, case_id: str, messages: Sequence[Any]):
        """Replace the stored transcript with ``messages``"""
        async with self._session() as db:
            await self._owned_case(db, user_email, case_id)
            await db.execute(delete(CaseMessage).where(CaseMessage.case_id == case_id))
            for position, raw in enumerate(messages):
                message = raw if isinstance(raw, Message) else Message.model_validate(raw)
                db.add(CaseMessage(
                    case_id=case_id,
                    position=position,
                    sender=message.sender.value,
                    text=message.text,
                    speaker_label=message.speaker_label,
                    timestamp=message.timestamp,
                ))
            await db.commit()
            logger.info(f"Saved {len(messages)} messages for case {case_id}")

    async def save_case_state(self, user_email: str, case_id: str, fields: Dict[str, Any]):
        allowed = {"preliminary_diagnosis", "examination_plan", "investigation_plan",
                   "final_diagnosis", "management_plan"}
        values = {key: value for key, value in fields.items() if key in allowed and value is not None}
        async with self._session() as db:
            case = await self._owned_case(db, user_email, case_id)
            for key, value in values.items():
                setattr(case, key, value)
            await db.commit()
            logger.info(f"Saved case state for {case_id}: {sorted(values)}")

    async def save_results(self, user_email: str, case_id: str, examination_results: Sequence[Any],
                           investigation_results: Sequence[Any]):
        """Replace stored results of each kind"""
        async with self._session() as db:
            await self._owned_case(db, user_email, case_id)
            await db.execute(delete(CaseResult).where(CaseResult.case_id == case_id))
            for kind, items in zip(RESULT_KINDS, (examination_results, investigation_results)):
                for position, item in enumerate(items):
                    db.add(CaseResult(case_id=case_id, kind=kind, position=position, payload=_dump(item)))
            await db.commit()
            logger.info(
                f"Saved results for case {case_id}: "
                f"{len(examination_results)} examination, {len(investigation_results)} investigation"
            )

    async def save_feedback(self, user_email: str, case_id: str, feedback: Any, kind: str = "simple"):
        if kind not in FEEDBACK_KINDS:
            raise CaseValidationError(f"Unknown feedback kind: {kind}")
        async with self._session() as db:
            await self._owned_case(db, user_email, case_id)
            await db.execute(
                delete(CaseFeedback).where(CaseFeedback.case_id == case_id, CaseFeedback.kind == kind)
            )
            db.add(CaseFeedback(case_id=case_id, kind=kind, content=_dump(feedback)))
            await db.commit()
            logger.info(f"Saved {kind} feedback for case {case_id}")

    async def complete_case(self, user_email: str, case_id: str, final_diagnosis: str,
                            management_plan: str, is_visible: bool = False):
        async with self._session() as db:
            case = await self._owned_case(db, user_email, case_id)
            case.final_diagnosis = final_diagnosis
            case.management_plan = management_plan
            case.is_visible = is_visible
            case.completed_at = datetime.now(timezone.utc)
            await db.execute(
                update(CaseSession).where(CaseSession.case_id == case_id).values(is_active=False)
            )
            await db.commit()
            logger.info(f"Completed case {case_id}")

    async def save_case_report(self, case_id: str, report: Any):
        async with self._session() as db:
            case = await db.get(Case, case_id)
            if case is None:
                raise CaseValidationError(f"Case {case_id} not found")
            case.case_report = _dump(report)
            await db.commit()
            logger.info(f"Saved case report for {case_id}")

    async def update_visibility(self, user_email: str, case_id: str, is_visible: bool):
        async with self._session() as db:
            case = await self._owned_case(db, user_email, case_id)
            case.is_visible = is_visible
            await db.commit()

    async def validate_session(self, case_id: str) -> SessionValidation:
        """A session is valid while active and unexpired"""
        async with self._session() as db:
            result = await db.execute(
                select(CaseSession)
                .where(CaseSession.case_id == case_id, CaseSession.is_active.is_(True))
                .order_by(CaseSession.expires_at.desc())
            )
            session = result.scalars().first()
            if session is None:
                return SessionValidation(is_valid=False)
            if _aware(session.expires_at) <= datetime.now(timezone.utc):
                session.is_active = False
                await db.commit()
                logger.info(f"Session {session.id} for case {case_id} expired")
                return SessionValidation(is_valid=False)
            return SessionValidation(is_valid=True, session_id=session.id)

    async def invalidate_session(self, case_id: str):
        async with self._session() as db:
            await db.execute(
                update(CaseSession).where(CaseSession.case_id == case_id).values(is_active=False)
            )
            await db.commit()
            logger.info(f"Invalidated sessions for case {case_id}")

    async def list_completed_cases(self, user_email: str) -> List[Dict[str, Any]]:
        """Visible completed cases of a user, most recently completed first"""
        async with self._session() as db:
            user = await self._get_user(db, user_email)
            if user is None:
                raise CaseValidationError(f"User {user_email} not found")
            result = await db.execute(
                select(Case)
                .where(Case.user_id == user.id, Case.completed_at.is_not(None), Case.is_visible.is_(True))
                .order_by(Case.completed_at.desc())
            )
            return [
                {
                    "case_id": case.id,
                    "case_type": case.case_type,
                    "department": case.department,
                    "diagnosis": case.diagnosis,
                    "completed_at": case.completed_at,
                }
                for case in result.scalars().all()
            ]

    async def get_case(self, user_email: str, case_id: str) -> Dict[str, Any]:
        """Full saved case, including transcript, results and feedback"""
        async with self._session() as db:
            case = await self._owned_case(db, user_email, case_id)
            messages = (await db.execute(
                select(CaseMessage).where(CaseMessage.case_id == case_id).order_by(CaseMessage.position)
            )).scalars().all()
            results = (await db.execute(
                select(CaseResult).where(CaseResult.case_id == case_id).order_by(CaseResult.position)
            )).scalars().all()
            feedback = (await db.execute(
                select(CaseFeedback).where(CaseFeedback.case_id == case_id)
            )).scalars().all()

            return {
                "case_id": case.id,
                "case_type": case.case_type,
                "department": case.department,
                "difficulty": case.difficulty,
                "diagnosis": case.diagnosis,
                "case_details": case.case_details,
                "preliminary_diagnosis": case.preliminary_diagnosis,
                "examination_plan": case.examination_plan,
                "investigation_plan": case.investigation_plan,
                "final_diagnosis": case.final_diagnosis,
                "management_plan": case.management_plan,
                "case_report": case.case_report,
                "is_visible": case.is_visible,
                "completed_at": case.completed_at,
                "time_spent_minutes": _minutes_between(case.created_at, case.completed_at),
                "messages": [
                    {"sender": m.sender, "text": m.text, "speaker_label": m.speaker_label,
                     "timestamp": m.timestamp}
                    for m in messages
                ],
                "examination_results": [r.payload for r in results if r.kind == "examination"],
                "investigation_results": [r.payload for r in results if r.kind == "investigation"],
                "feedback": {f.kind: f.content for f in feedback},
            }
