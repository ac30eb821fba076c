"""
API tests through FastAPI's TestClient against an in-memory database.
Identity is injected with dependency_overrides; no provider is configured
unless a test supplies one.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from repair_assist import main
from repair_assist.config import Settings
from repair_assist.main import ClientDisconnected, create_app, current_user, run_until_disconnect
from repair_assist.orchestrator import Providers
from repair_assist.rate_limiter import ENDPOINT_LIMITS, USER_LIMITS

BLACK_SCREEN = {"description": "screen is black, device won't turn on", "deviceCategory": "device"}


class ExplodingBackend:
    async def generate(self, prompt, system_prompt=None, images=None, **kwargs):
        raise KeyError("unexpected provider shape")


@pytest.fixture
def make_client(session_factory):
    clients = []

    def _make(providers=None, user_id="user-1"):
        settings = Settings(log_json=False)
        app = create_app(
            settings=settings,
            session_factory=session_factory,
            providers=providers or Providers(settings),
        )
        if user_id is not None:
            app.dependency_overrides[current_user] = lambda: user_id
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


class TestHealth:

    def test_reports_unconfigured_stages(self, make_client):
        response = make_client().get("/health")

        assert response.status_code == 200
        stages = response.json()["stages"]
        assert stages["guaranteed_fallback"] is True
        assert stages["direct_ai"] is False
        assert stages["web_search_ai"] is False

    def test_request_id_echoed(self, make_client):
        response = make_client().get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


class TestDiagnose:

    def test_black_screen_gets_guaranteed_fallback(self, make_client, add_profile):
        add_profile(remaining=2)
        client = make_client()

        response = client.post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["source"] == "guaranteed_fallback"
        assert body["diagnosis"]["repairSteps"]
        assert "Multimeter" in body["diagnosis"]["toolsNeeded"]

        session = client.get(f"/sessions/{body['sessionId']}").json()
        assert session["status"] == "completed"
        assert session["source"] == "guaranteed_fallback"
        assert session["diagnosis"]["problem"] == body["diagnosis"]["problem"]

    def test_quota_consumed_per_attempt(self, make_client, add_profile):
        add_profile(remaining=2)
        client = make_client()

        client.post("/diagnose", json=BLACK_SCREEN)

        assert client.get("/entitlement").json()["remainingQuota"] == 1

    def test_exhausted_free_user_gets_403(self, make_client, add_profile):
        add_profile(remaining=0)
        response = make_client().post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 403
        assert response.json() == {"success": False, "error": "quota_exceeded"}

    def test_missing_profile(self, make_client):
        response = make_client().post("/diagnose", json=BLACK_SCREEN)
        assert response.status_code == 404
        assert response.json()["error"] == "profile_not_found"

    def test_unauthenticated(self, make_client, add_profile):
        add_profile()
        response = make_client(user_id=None).post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "auth_required"}

    def test_empty_description_rejected(self, make_client, add_profile):
        add_profile()
        response = make_client().post("/diagnose", json={"description": "   "})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_variant_rejected(self, make_client, add_profile):
        add_profile()
        response = make_client().post("/diagnose", json={**BLACK_SCREEN, "variant": "turbo"})
        assert response.status_code == 400

    def test_bad_image_ref_rejected(self, make_client, add_profile):
        add_profile()
        response = make_client().post("/diagnose", json={**BLACK_SCREEN, "imageRefs": ["ftp://x/y.png"]})
        assert response.status_code == 400

    def test_pcb_category_uses_pcb_table(self, make_client, add_profile):
        add_profile()
        response = make_client().post("/diagnose", json={"description": "no power", "deviceCategory": "PCBs"})
        assert "Continuity tester" in response.json()["diagnosis"]["toolsNeeded"]

    def test_fatal_error_serves_emergency_fallback(self, make_client, add_profile):
        add_profile()
        settings = Settings()
        client = make_client(providers=Providers(settings, primary_ai=ExplodingBackend()))

        response = client.post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "emergency_fallback"
        assert body["diagnosis"]["repairSteps"]

    def test_existing_session_reused(self, make_client, add_profile):
        add_profile()
        client = make_client()
        created = client.post("/sessions", json=BLACK_SCREEN)
        assert created.status_code == 201
        session_id = created.json()["sessionId"]

        body = client.post("/diagnose", json={**BLACK_SCREEN, "sessionId": session_id}).json()

        assert body["sessionId"] == session_id
        assert client.get(f"/sessions/{session_id}").json()["status"] == "completed"

    def test_other_users_session_hidden(self, make_client, add_profile):
        add_profile(user_id="user-1")
        add_profile(user_id="user-2")
        session_id = make_client(user_id="user-1").post("/sessions", json=BLACK_SCREEN).json()["sessionId"]
        intruder = make_client(user_id="user-2")

        assert intruder.get(f"/sessions/{session_id}").status_code == 404
        response = intruder.post("/diagnose", json={**BLACK_SCREEN, "sessionId": session_id})
        assert response.status_code == 404
        # the intruder's quota was not touched
        assert intruder.get("/entitlement").json()["remainingQuota"] == 2

    def test_rate_limited_per_user(self, make_client, add_profile):
        add_profile(is_premium=True)
        client = make_client()
        limit = USER_LIMITS["diagnose"].max_requests

        statuses = [client.post("/diagnose", json=BLACK_SCREEN).status_code for _ in range(limit + 1)]

        assert statuses[:limit] == [200] * limit
        assert statuses[-1] == 429

    def test_pcb_emergency_fallback_keeps_category(self, make_client, add_profile):
        add_profile()
        client = make_client(providers=Providers(Settings(), primary_ai=ExplodingBackend()))

        body = client.post("/diagnose", json={"description": "no power", "deviceCategory": "pcb"}).json()

        assert body["source"] == "emergency_fallback"
        assert "Continuity tester" in body["diagnosis"]["toolsNeeded"]


class TestDiagnoseStorageFailures:

    def test_create_failure_still_diagnoses(self, make_client, add_profile, monkeypatch):
        add_profile(remaining=2)
        client = make_client()
        monkeypatch.setattr(
            client.app.state.sessions, "create",
            MagicMock(side_effect=OperationalError("INSERT", {}, Exception("database is locked"))),
        )

        response = client.post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "guaranteed_fallback"
        assert client.get("/entitlement").json()["remainingQuota"] == 1
        # the final commit writes the session the failed create could not
        session = client.get(f"/sessions/{body['sessionId']}").json()
        assert session["status"] == "completed"
        assert session["description"] == BLACK_SCREEN["description"]

    def test_lookup_failure_before_gate_keeps_quota(self, make_client, add_profile, monkeypatch):
        add_profile(remaining=2)
        client = make_client()
        monkeypatch.setattr(
            client.app.state.sessions, "get",
            MagicMock(side_effect=OperationalError("SELECT", {}, Exception("database is locked"))),
        )

        response = client.post("/diagnose", json=BLACK_SCREEN)

        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "storage_unavailable"}
        assert client.get("/entitlement").json()["remainingQuota"] == 2


class TestCancellation:

    def test_run_until_disconnect_cancels_work(self):
        cancelled = asyncio.Event()
        request = MagicMock()
        request.is_disconnected = AsyncMock(side_effect=[False, True])

        async def slow_pipeline():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def run():
            with pytest.raises(ClientDisconnected):
                await run_until_disconnect(slow_pipeline(), request, poll_interval=0.01)
            return cancelled.is_set()

        assert asyncio.run(run()) is True
        assert request.is_disconnected.await_count == 2

    def test_run_until_disconnect_returns_result(self):
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)

        async def quick():
            return "diagnosis"

        assert asyncio.run(run_until_disconnect(quick(), request, poll_interval=0.01)) == "diagnosis"

    def test_disconnect_marks_session_failed(self, make_client, add_profile, monkeypatch):
        add_profile()
        client = make_client()
        session_id = client.post("/sessions", json=BLACK_SCREEN).json()["sessionId"]

        async def disconnected(coro, request, poll_interval=main.DISCONNECT_POLL_SECONDS):
            coro.close()
            raise ClientDisconnected()

        monkeypatch.setattr(main, "run_until_disconnect", disconnected)

        response = client.post("/diagnose", json={**BLACK_SCREEN, "sessionId": session_id})

        assert response.status_code == main.CLIENT_CLOSED_REQUEST
        session = client.get(f"/sessions/{session_id}").json()
        assert session["status"] == "failed"
        assert session["diagnosis"] is None


class TestRateLimits:

    def test_rotating_forwarded_for_is_ignored(self, make_client):
        client = make_client()
        limit = ENDPOINT_LIMITS["sessions"].max_requests

        statuses = [
            client.post("/sessions", json=BLACK_SCREEN, headers={"X-Forwarded-For": f"198.51.100.{i}"}).status_code
            for i in range(limit + 1)
        ]

        assert statuses[:limit] == [201] * limit
        assert statuses[-1] == 429

    def test_limits_are_per_app(self, make_client):
        first = make_client()
        second = make_client()
        assert first.app.state.rate_limits is not second.app.state.rate_limits


class TestAnalysisEndpoints:

    def test_image_analysis_without_images(self, make_client):
        client = make_client()
        session_id = client.post("/sessions", json=BLACK_SCREEN).json()["sessionId"]

        response = client.post(f"/sessions/{session_id}/image-analysis")

        assert response.status_code == 400
        assert response.json()["error"] == "no_images"

    def test_image_analysis_unconfigured_uses_fallback(self, make_client):
        client = make_client()
        created = client.post("/sessions", json={**BLACK_SCREEN, "imageRefs": ["https://cdn.example.com/a.png"]})
        session_id = created.json()["sessionId"]

        body = client.post(f"/sessions/{session_id}/image-analysis").json()

        assert body["success"] is True
        assert body["usedFallback"] is True
        assert len(body["analysis"]["clarifyingQuestions"]) == 5
        stored = client.get(f"/sessions/{session_id}").json()
        assert stored["imageAnalysis"] == body["analysis"]

    def test_description_analysis_stored(self, make_client):
        client = make_client()
        session_id = client.post("/sessions", json=BLACK_SCREEN).json()["sessionId"]

        body = client.post(f"/sessions/{session_id}/description-analysis").json()

        assert body["usedFallback"] is True
        assert body["analysis"]["refinedProblems"][0]["label"] == "Issue based on description"
        stored = client.get(f"/sessions/{session_id}").json()
        assert stored["descriptionAnalysis"] == body["analysis"]

    def test_unexpected_error_serves_fallback(self, make_client):
        client = make_client(providers=Providers(Settings(), primary_ai=ExplodingBackend()))
        session_id = client.post("/sessions", json=BLACK_SCREEN).json()["sessionId"]

        response = client.post(f"/sessions/{session_id}/description-analysis")

        assert response.status_code == 200
        assert response.json()["usedFallback"] is True

    def test_other_users_session_hidden(self, make_client):
        session_id = make_client(user_id="user-1").post("/sessions", json=BLACK_SCREEN).json()["sessionId"]
        intruder = make_client(user_id="user-2")

        assert intruder.post(f"/sessions/{session_id}/description-analysis").status_code == 404
        assert intruder.post(f"/sessions/{session_id}/image-analysis").status_code == 404


class TestEntitlementEndpoint:

    def test_reports_lazy_reset(self, make_client, add_profile, yesterday):
        add_profile(remaining=0, reset_on=yesterday)
        body = make_client().get("/entitlement").json()
        assert body == {"isPremium": False, "remainingQuota": 2, "dailyLimit": 2}

    def test_missing_profile(self, make_client):
        assert make_client().get("/entitlement").status_code == 404
