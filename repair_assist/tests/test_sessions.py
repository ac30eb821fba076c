"""Tests for diagnosis session persistence."""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from repair_assist.fallbacks import guaranteed_fallback
from repair_assist.models import DiagnosisResult, SessionInputs, SessionStatus
from repair_assist.sessions import SessionStore


def _inputs(description="Kettle will not heat", category="device"):
    return SessionInputs(description=description, device_category=category)


class TestSessionStore:

    def test_create_starts_pending(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())

        assert session.status == SessionStatus.PENDING.value
        assert store.get(session.id).description == "Kettle will not heat"

    def test_mark_analyzing(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())

        assert store.mark_analyzing(session.id)
        assert store.get(session.id).status == "analyzing"

    def test_mark_unknown_session(self, session_factory):
        assert not SessionStore(session_factory).mark_analyzing("missing")

    def test_commit_writes_result_and_source(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())

        assert store.commit(session.id, guaranteed_fallback("device"), "guaranteed_fallback")

        stored = store.get(session.id)
        assert stored.status == "completed"
        assert stored.source == "guaranteed_fallback"
        assert stored.result["repairSteps"]

    def test_second_commit_overwrites_first(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())
        later = DiagnosisResult(
            problem="Later", explanation="Second write", repair_steps=["Retry"], tools_needed=[],
        )

        assert store.commit(session.id, guaranteed_fallback("device"), "guaranteed_fallback")
        assert store.commit(session.id, later, "direct_ai")

        stored = store.get(session.id)
        assert stored.result["problem"] == "Later"
        assert stored.source == "direct_ai"

    def test_commit_upserts_unknown_session(self, session_factory):
        store = SessionStore(session_factory)

        assert store.commit("client-id-1", guaranteed_fallback("pcb"), "guaranteed_fallback",
                            user_id="user-1", inputs=_inputs(category="pcb"))

        stored = store.get("client-id-1")
        assert stored.user_id == "user-1"
        assert stored.device_category == "pcb"

    def test_commit_failure_is_logged_not_raised(self):
        broken_factory = MagicMock(side_effect=OperationalError("UPDATE", {}, Exception("disk I/O error")))
        store = SessionStore(broken_factory)

        assert store.commit("any", guaranteed_fallback(), "guaranteed_fallback") is False

    def test_save_analysis(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())
        analysis = {"problems": [{"label": "Blown fuse"}], "clarifyingQuestions": ["Any smell?"]}

        assert store.save_analysis(session.id, "image_analysis", analysis)

        stored = store.get(session.id)
        assert stored.image_analysis == analysis
        assert stored.description_analysis is None

    def test_save_analysis_unknown_kind(self, session_factory):
        store = SessionStore(session_factory)
        session = store.create("user-1", _inputs())

        with pytest.raises(ValueError):
            store.save_analysis(session.id, "status", {})

    def test_save_analysis_unknown_session(self, session_factory):
        assert SessionStore(session_factory).save_analysis("missing", "description_analysis", {}) is False

    def test_create_failure_raises(self):
        broken_factory = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))

        with pytest.raises(OperationalError):
            SessionStore(broken_factory).create("user-1", _inputs())
