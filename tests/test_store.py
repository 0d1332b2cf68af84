"""
Tests for the SQLAlchemy case store against in-memory SQLite
"""
import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clerksim.backend.database import init_db
from clerksim.backend.services import CaseStore
from clerksim.errors import CaseValidationError
from clerksim.models import CaseState, ComprehensiveFeedback, Message, ResultSet, Sender

from conftest import descriptive, make_case, quantitative

EMAIL = "student@example.com"


def run_with_store(scenario, session_ttl_hours=24):
    async def main():
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        await init_db(engine)
        store = CaseStore(async_sessionmaker(engine, expire_on_commit=False), session_ttl_hours=session_ttl_hours)
        try:
            return await scenario(store)
        finally:
            await engine.dispose()

    return asyncio.run(main())


def new_state():
    return CaseState(department="Cardiology", case=make_case())


def test_open_case_creates_a_valid_session():
    async def scenario(store):
        identity = await store.open_case(EMAIL, "GB", new_state())
        return identity, await store.validate_session(identity.case_id)

    identity, validation = run_with_store(scenario)

    assert validation.is_valid
    assert validation.session_id == identity.session_id


def test_completion_invalidates_the_session():
    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        await store.complete_case(EMAIL, identity.case_id, "Anterior STEMI", "Primary PCI", is_visible=True)
        return await store.validate_session(identity.case_id), await store.get_case(EMAIL, identity.case_id)

    validation, case = run_with_store(scenario)

    assert not validation.is_valid
    assert case["final_diagnosis"] == "Anterior STEMI"
    assert case["is_visible"] is True
    assert case["completed_at"] is not None


def test_expired_session_is_invalid():
    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        return await store.validate_session(identity.case_id)

    assert not run_with_store(scenario, session_ttl_hours=0).is_valid


def test_conversation_save_replaces_previous_transcript():
    first = [Message.system("Opening"), Message.student("Any chest pain?")]
    second = first + [Message(sender=Sender.PARENT, text="Yes, since this morning", speaker_label="Wife")]

    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        await store.save_conversation(EMAIL, identity.case_id, first)
        await store.save_conversation(EMAIL, identity.case_id, second)
        return await store.get_case(EMAIL, identity.case_id)

    case = run_with_store(scenario)

    assert [m["text"] for m in case["messages"]] == [m.text for m in second]
    assert case["messages"][2]["speaker_label"] == "Wife"


def test_results_state_and_feedback_are_stored():
    results = ResultSet.model_validate({"results": [quantitative(), descriptive()]}).results

    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        case_id = identity.case_id
        await store.save_case_state(EMAIL, case_id, {"examination_plan": "cardiovascular examination",
                                                     "unknown_field": "ignored"})
        await store.save_results(EMAIL, case_id, results[1:], results[:1])
        await store.save_results(EMAIL, case_id, results[1:], [])
        await store.save_feedback(EMAIL, case_id, ComprehensiveFeedback(
            diagnosis="ACS", key_learning_point="Time is muscle"), kind="comprehensive")
        await store.save_case_report(case_id, {"assessment": "Anterior STEMI"})
        return await store.get_case(EMAIL, case_id)

    case = run_with_store(scenario)

    assert case["examination_plan"] == "cardiovascular examination"
    assert case["examination_results"][0]["name"] == "ECG"
    assert case["investigation_results"] == []
    assert case["feedback"]["comprehensive"]["key_learning_point"] == "Time is muscle"
    assert case["case_report"] == {"assessment": "Anterior STEMI"}


def test_cases_are_scoped_to_their_owner():
    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        await store.save_conversation("someone@else.com", identity.case_id, [])

    with pytest.raises(CaseValidationError):
        run_with_store(scenario)


def test_users_are_reused_by_email():
    async def scenario(store):
        first = await store.create_or_get_user(EMAIL, "GB")
        second = await store.create_or_get_user(EMAIL)
        return first, second

    first, second = run_with_store(scenario)

    assert first == second


def test_saved_case_is_only_readable_by_its_owner():
    async def scenario(store):
        identity = await store.open_case(EMAIL, None, new_state())
        await store.complete_case(EMAIL, identity.case_id, "Anterior STEMI", "Primary PCI")
        case = await store.get_case(EMAIL, identity.case_id)
        with pytest.raises(CaseValidationError):
            await store.get_case("someone@else.com", identity.case_id)
        return case

    case = run_with_store(scenario)

    assert case["diagnosis"] == "Acute coronary syndrome"
    assert case["time_spent_minutes"] == 0


def test_completed_listing_only_includes_visible_completed_cases():
    async def scenario(store):
        shared = await store.open_case(EMAIL, None, new_state())
        hidden = await store.open_case(EMAIL, None, new_state())
        await store.open_case(EMAIL, None, new_state())
        await store.complete_case(EMAIL, shared.case_id, "Anterior STEMI", "Primary PCI", is_visible=True)
        await store.complete_case(EMAIL, hidden.case_id, "Anterior STEMI", "Primary PCI")
        return shared, await store.list_completed_cases(EMAIL)

    shared, cases = run_with_store(scenario)

    assert [case["case_id"] for case in cases] == [shared.case_id]
    assert cases[0]["department"] == "Cardiology"


def test_completed_listing_for_unknown_user():
    async def scenario(store):
        await store.list_completed_cases("nobody@example.com")

    with pytest.raises(CaseValidationError):
        run_with_store(scenario)
