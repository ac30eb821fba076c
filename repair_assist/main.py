"""
Repair Assist - FastAPI service for device repair diagnosis.

Guided flow:
  POST /sessions -> POST /sessions/{id}/image-analysis
  -> POST /sessions/{id}/description-analysis -> POST /diagnose

Request path for POST /diagnose:
  IP rate limit -> verified identity -> user rate limit -> entitlement gate
  -> fallback orchestrator -> session commit -> response

The diagnose endpoint never answers 5xx for an admitted request: fatal
errors are logged and answered with the emergency fallback, and session
writes after the gate are best-effort.
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .adapters import DiagnosisContext
from .analysis import (
    DESCRIPTION_ANALYSIS,
    IMAGE_ANALYSIS,
    AnalysisOutcome,
    analyze_description,
    analyze_images,
    fallback_description_analysis,
    fallback_image_analysis,
)
from .auth import SupabaseAuth, bearer_token
from .config import Settings
from .database import init_db, make_engine, make_session_factory
from .entitlements import PROFILE_NOT_FOUND, EntitlementGate
from .errors import AuthenticationError
from .fallbacks import guaranteed_fallback
from .input_sanitization import sanitize_answer, sanitize_description
from .models import (
    AnalysisResponse,
    CreateSessionRequest,
    DiagnoseRequest,
    DiagnoseResponse,
    DiagnosisSource,
    EntitlementResponse,
    QAPair,
    SessionInputs,
    SessionResponse,
    SessionStatus,
)
from .orchestrator import FLOW_VARIANTS, Providers, build_orchestrator
from .rate_limiter import RateLimitManager
from .sessions import SessionStore
from .structured_logging import StructuredLogger, bind_context, log_request, set_request_id, setup_logging

logger = StructuredLogger("repair_assist.api")

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


async def run_until_disconnect(coro, request: Request, poll_interval: float = DISCONNECT_POLL_SECONDS):
    """Await `coro`, cancelling it if the HTTP client goes away first."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def _error(message: str, status_code: int, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code, headers=headers)


def rate_limited(endpoint: str):
    async def dependency(request: Request) -> dict:
        return request.app.state.rate_limits.check_ip(endpoint, request)
    return dependency


async def current_user(request: Request) -> str:
    """Verified caller id. Raises AuthenticationError, answered as 401."""
    token = bearer_token(request.headers.get("Authorization"))
    auth: Optional[SupabaseAuth] = request.app.state.auth
    if auth is None:
        raise AuthenticationError("Identity verification is not configured")
    return await auth.verify(token)


async def diagnose_caller(request: Request, user_id: str = Depends(current_user)) -> str:
    """Verified caller, counted against the per-user diagnose limit."""
    request.app.state.rate_limits.check_user("diagnose", user_id)
    return user_id


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    providers: Optional[Providers] = None,
    auth: Optional[SupabaseAuth] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(level=settings.log_level, use_json=settings.log_json)

    db_engine = None
    if session_factory is None:
        db_engine = make_engine(settings.database_url)
        session_factory = make_session_factory(db_engine)
    if providers is None:
        providers = Providers.from_settings(settings, session_factory)
    if auth is None and settings.auth_configured:
        auth = SupabaseAuth(settings.supabase_url, settings.supabase_anon_key)

    store = SessionStore(session_factory)
    gate = EntitlementGate(session_factory, daily_limit=settings.daily_scan_limit)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Repair Assist service", stages=providers.active_stages())
        if db_engine is not None:
            await asyncio.to_thread(init_db, db_engine)
        yield
        logger.info("Shutting down...")
        await providers.close()
        if auth is not None:
            await auth.close()

    app = FastAPI(
        title="Repair Assist",
        description="Fallback-chain diagnosis API for malfunctioning electronics",
        version="0.3.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.auth = auth
    app.state.providers = providers
    app.state.sessions = store
    app.state.gate = gate
    app.state.rate_limits = RateLimitManager(trust_forwarded_for=settings.trust_proxy_headers)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError):
        logger.info("authentication failed", reason=str(exc))
        return _error("auth_required", 401)

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("storage unavailable", path=request.url.path, error=str(exc))
        return _error("storage_unavailable", 503)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Request ID tracking and access logging."""
        start_time = time.time()
        request_id = set_request_id(request.headers.get("X-Request-ID"))

        response = await call_next(request)

        if request.url.path not in ["/health", "/docs", "/openapi.json"]:
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.time() - start_time) * 1000,
                client_ip=request.client.host if request.client else None,
            )

        response.headers["X-Request-ID"] = request_id
        return response

    async def owned_session(session_id: str, user_id: str):
        """The session if it exists and belongs to the caller."""
        session = await asyncio.to_thread(store.get, session_id)
        if session is None or session.user_id != user_id:
            return None
        bind_context(session_id=session_id, user_id=user_id)
        return session

    async def run_analysis(kind: str, work, fallback) -> AnalysisOutcome:
        try:
            return await work
        except Exception as e:
            logger.exception(f"{kind} fatal error, serving fallback analysis", error=str(e))
            return AnalysisOutcome(fallback(), used_fallback=True)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "stages": providers.active_stages(),
            "variants": list(FLOW_VARIANTS),
            "analysis": providers.primary_ai is not None,
            "auth": auth is not None,
        }

    @app.post("/sessions", status_code=201)
    async def create_session(
        request: dict,
        rate_limit_headers: dict = Depends(rate_limited("sessions")),
        user_id: str = Depends(current_user),
    ):
        try:
            request_model = CreateSessionRequest.model_validate(request)
        except ValidationError as e:
            return _error(str(e.errors()[0].get("msg", "Invalid request")), 400, rate_limit_headers)

        description = sanitize_description(request_model.description)
        if not description:
            return _error("description is required", 400, rate_limit_headers)
        inputs = request_model.model_copy(update={"description": description})

        session = await asyncio.to_thread(store.create, user_id, inputs)
        return JSONResponse(
            {"sessionId": session.id, "status": session.status},
            status_code=201,
            headers=rate_limit_headers,
        )

    @app.get("/sessions/{session_id}")
    async def get_session(
        session_id: str,
        rate_limit_headers: dict = Depends(rate_limited("session-read")),
        user_id: str = Depends(current_user),
    ):
        session = await owned_session(session_id, user_id)
        if session is None:
            return _error("session_not_found", 404, rate_limit_headers)

        response_data = SessionResponse(
            session_id=session.id,
            status=session.status,
            description=session.description,
            device_category=session.device_category,
            image_refs=session.image_refs or [],
            diagnosis=session.result,
            source=session.source,
            image_analysis=session.image_analysis,
            description_analysis=session.description_analysis,
        )
        return JSONResponse(response_data.model_dump(by_alias=True, mode="json"), headers=rate_limit_headers)

    @app.post("/sessions/{session_id}/image-analysis")
    async def analyze_session_images(
        session_id: str,
        rate_limit_headers: dict = Depends(rate_limited("analysis")),
        user_id: str = Depends(current_user),
    ):
        session = await owned_session(session_id, user_id)
        if session is None:
            return _error("session_not_found", 404, rate_limit_headers)
        if not session.image_refs:
            return _error("no_images", 400, rate_limit_headers)

        category = session.device_category
        outcome = await run_analysis(
            IMAGE_ANALYSIS,
            analyze_images(
                providers.primary_ai,
                session.image_refs,
                category,
                timeout=settings.timeout_for("image_analysis"),
            ),
            lambda: fallback_image_analysis(category),
        )
        analysis = outcome.to_wire()
        await asyncio.to_thread(store.save_analysis, session_id, IMAGE_ANALYSIS, analysis)

        response_data = AnalysisResponse(session_id=session_id, analysis=analysis, used_fallback=outcome.used_fallback)
        return JSONResponse(response_data.model_dump(by_alias=True), headers=rate_limit_headers)

    @app.post("/sessions/{session_id}/description-analysis")
    async def analyze_session_description(
        session_id: str,
        rate_limit_headers: dict = Depends(rate_limited("analysis")),
        user_id: str = Depends(current_user),
    ):
        session = await owned_session(session_id, user_id)
        if session is None:
            return _error("session_not_found", 404, rate_limit_headers)

        outcome = await run_analysis(
            DESCRIPTION_ANALYSIS,
            analyze_description(
                providers.primary_ai,
                session.description,
                session.device_category,
                image_analysis=session.image_analysis,
                timeout=settings.timeout_for("description_analysis"),
            ),
            fallback_description_analysis,
        )
        analysis = outcome.to_wire()
        await asyncio.to_thread(store.save_analysis, session_id, DESCRIPTION_ANALYSIS, analysis)

        response_data = AnalysisResponse(session_id=session_id, analysis=analysis, used_fallback=outcome.used_fallback)
        return JSONResponse(response_data.model_dump(by_alias=True), headers=rate_limit_headers)

    @app.get("/entitlement")
    async def entitlement(
        rate_limit_headers: dict = Depends(rate_limited("entitlement")),
        user_id: str = Depends(current_user),
    ):
        status = await asyncio.to_thread(gate.status, user_id)
        if status is None:
            return _error(PROFILE_NOT_FOUND, 404, rate_limit_headers)
        response_data = EntitlementResponse(
            is_premium=status.is_premium,
            remaining_quota=status.remaining_quota,
            daily_limit=status.daily_limit,
        )
        return JSONResponse(response_data.model_dump(by_alias=True), headers=rate_limit_headers)

    @app.post("/diagnose")
    async def diagnose(
        request: dict,
        req: Request,
        rate_limit_headers: dict = Depends(rate_limited("diagnose")),
        user_id: str = Depends(diagnose_caller),
    ):
        start_time = time.time()

        try:
            request_model = DiagnoseRequest.model_validate(request)
        except ValidationError as e:
            return _error(str(e.errors()[0].get("msg", "Invalid request")), 400, rate_limit_headers)

        if request_model.variant not in FLOW_VARIANTS:
            return _error(f"Unknown variant: {request_model.variant}", 400, rate_limit_headers)

        description = sanitize_description(request_model.description)
        if not description:
            return _error("description is required", 400, rate_limit_headers)
        answers = [
            QAPair(question=sanitize_answer(qa.question), answer=sanitize_answer(qa.answer))
            for qa in request_model.clarifying_answers
        ]
        inputs = SessionInputs(
            description=description,
            device_category=request_model.device_category,
            image_refs=request_model.image_refs,
        )

        session_id = request_model.session_id or str(uuid.uuid4())
        bind_context(session_id=session_id, user_id=user_id)
        existing = await asyncio.to_thread(store.get, session_id)
        if existing is not None and existing.user_id not in (None, user_id):
            return _error("session_not_found", 404, rate_limit_headers)

        decision = await asyncio.to_thread(gate.check_and_consume, user_id)
        if not decision.allowed:
            status_code = 404 if decision.reason == PROFILE_NOT_FOUND else 403
            logger.info("diagnose denied", reason=decision.reason)
            return _error(decision.reason, status_code, rate_limit_headers)

        # Quota is spent; storage errors past this point are logged, not raised
        try:
            if existing is None:
                await asyncio.to_thread(store.create, user_id, inputs, session_id)
            await asyncio.to_thread(store.mark_analyzing, session_id)
        except SQLAlchemyError as e:
            logger.error("session open failed, continuing without it", error=str(e))

        context = DiagnosisContext(
            description=description,
            category=inputs.device_category,
            image_refs=inputs.image_refs,
            answers=answers,
            image_analysis=request_model.image_analysis or (existing.image_analysis if existing else None),
            description_analysis=existing.description_analysis if existing else None,
            session_id=session_id,
        )

        try:
            orchestrator = build_orchestrator(providers, request_model.variant)
            outcome = await run_until_disconnect(orchestrator.run(context), req)
            diagnosis, source = outcome.diagnosis, outcome.source
            attempts = [asdict(a) for a in outcome.attempts]
        except ClientDisconnected:
            logger.warning("client disconnected, pipeline cancelled")
            await asyncio.to_thread(store.mark_failed, session_id)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except Exception as e:
            logger.exception("diagnose fatal error, serving emergency fallback", error=str(e))
            diagnosis = guaranteed_fallback(inputs.device_category)
            source = DiagnosisSource.EMERGENCY_FALLBACK.value
            attempts = []

        committed = await asyncio.to_thread(
            store.commit, session_id, diagnosis, source, SessionStatus.COMPLETED, user_id, inputs
        )

        logger.info(
            "diagnose completed",
            duration_ms=round((time.time() - start_time) * 1000, 2),
            source=source,
            attempts=attempts,
            persisted=committed,
        )
        response_data = DiagnoseResponse(session_id=session_id, diagnosis=diagnosis, source=source)
        return JSONResponse(response_data.model_dump(by_alias=True, mode="json"), headers=rate_limit_headers)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
