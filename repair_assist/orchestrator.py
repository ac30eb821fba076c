"""
Fallback Orchestrator - runs diagnosis stages strictly in order and stops at
the first validated result.

Flow variants:
  - final:         direct_ai -> database -> web_search_ai -> web_search_secondary_ai -> guaranteed_fallback
  - comprehensive: database -> web_search_ai -> web_search_secondary_ai -> guaranteed_fallback
  - web_search:    web_search_ai -> web_search_secondary_ai -> guaranteed_fallback
  - direct:        direct_ai -> guaranteed_fallback

Stage failures (AdapterFailure, ValidationFailure, timeouts) advance the
pipeline. Any other exception propagates to the caller.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from .adapters import DatabaseMatchAdapter, DiagnosisContext, DirectAIAdapter, SearchSummaryAdapter
from .ai_clients import GeminiClient, OpenAIChatClient
from .config import Settings
from .errors import AdapterFailure, ValidationFailure
from .fallbacks import guaranteed_fallback
from .models import DiagnosisResult, DiagnosisSource
from .structured_logging import StructuredLogger, log_context
from .web_search import WebSearchClient

logger = StructuredLogger(__name__)

DIRECT_AI = DiagnosisSource.DIRECT_AI.value
DATABASE = DiagnosisSource.DATABASE.value
WEB_SEARCH_AI = DiagnosisSource.WEB_SEARCH_AI.value
WEB_SEARCH_SECONDARY_AI = DiagnosisSource.WEB_SEARCH_SECONDARY_AI.value
GUARANTEED_FALLBACK = DiagnosisSource.GUARANTEED_FALLBACK.value

FLOW_VARIANTS: dict[str, tuple[str, ...]] = {
    "final": (DIRECT_AI, DATABASE, WEB_SEARCH_AI, WEB_SEARCH_SECONDARY_AI, GUARANTEED_FALLBACK),
    "comprehensive": (DATABASE, WEB_SEARCH_AI, WEB_SEARCH_SECONDARY_AI, GUARANTEED_FALLBACK),
    "web_search": (WEB_SEARCH_AI, WEB_SEARCH_SECONDARY_AI, GUARANTEED_FALLBACK),
    "direct": (DIRECT_AI, GUARANTEED_FALLBACK),
}
DEFAULT_VARIANT = "final"


class PipelineState(str, Enum):
    NOT_STARTED = "not_started"
    TRYING_STAGE = "trying_stage"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class Stage:
    name: str
    attempt: Callable[[DiagnosisContext], Awaitable[DiagnosisResult]]
    timeout: Optional[float] = None
    precondition: Optional[Callable[[DiagnosisContext], bool]] = None
    skip_reason: str = "not configured"


@dataclass
class StageAttempt:
    stage: str
    outcome: str  # accepted | failed | timeout | skipped
    duration_ms: float = 0.0
    detail: str = ""


@dataclass
class PipelineResult:
    diagnosis: DiagnosisResult
    source: str
    state: PipelineState
    attempts: list[StageAttempt] = field(default_factory=list)


async def _guaranteed(context: DiagnosisContext) -> DiagnosisResult:
    return guaranteed_fallback(context.category)


def guaranteed_stage() -> Stage:
    return Stage(name=GUARANTEED_FALLBACK, attempt=_guaranteed)


class FallbackOrchestrator:
    """Ordered, sequential stage runner with a guaranteed terminal stage."""

    def __init__(self, stages: list[Stage]):
        stages = [s for s in stages if s.name != GUARANTEED_FALLBACK]
        stages.append(guaranteed_stage())
        self.stages = stages
        self.state = PipelineState.NOT_STARTED
        self.current_stage: Optional[int] = None

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    async def run(self, context: DiagnosisContext) -> PipelineResult:
        attempts: list[StageAttempt] = []

        for index, stage in enumerate(self.stages):
            if stage.precondition is not None and not stage.precondition(context):
                logger.debug("stage skipped", stage=stage.name, reason=stage.skip_reason)
                attempts.append(StageAttempt(stage.name, "skipped", detail=stage.skip_reason))
                continue

            self.state = PipelineState.TRYING_STAGE
            self.current_stage = index
            start_time = time.time()
            try:
                with log_context(stage=stage.name):
                    if stage.timeout:
                        result = await asyncio.wait_for(stage.attempt(context), timeout=stage.timeout)
                    else:
                        result = await stage.attempt(context)
            except asyncio.TimeoutError:
                duration_ms = round((time.time() - start_time) * 1000, 2)
                logger.warning("stage timed out", stage=stage.name, timeout_s=stage.timeout, duration_ms=duration_ms)
                attempts.append(StageAttempt(stage.name, "timeout", duration_ms, f"exceeded {stage.timeout}s"))
                continue
            except (AdapterFailure, httpx.HTTPError) as e:
                duration_ms = round((time.time() - start_time) * 1000, 2)
                kind = "validation" if isinstance(e, ValidationFailure) else "adapter"
                logger.warning("stage failed", stage=stage.name, failure=kind, error=str(e), duration_ms=duration_ms)
                attempts.append(StageAttempt(stage.name, "failed", duration_ms, str(e)))
                continue

            duration_ms = round((time.time() - start_time) * 1000, 2)
            attempts.append(StageAttempt(stage.name, "accepted", duration_ms))
            self.state = (
                PipelineState.EXHAUSTED if stage.name == GUARANTEED_FALLBACK else PipelineState.SUCCEEDED
            )
            logger.info(
                "diagnosis produced",
                source=stage.name,
                state=self.state.value,
                stages_tried=sum(1 for a in attempts if a.outcome != "skipped"),
                duration_ms=duration_ms,
            )
            return PipelineResult(result, stage.name, self.state, attempts)

        # The guaranteed stage always returns, so this is a programming error
        raise RuntimeError("Fallback pipeline ended without a result")


@dataclass
class Providers:
    """Provider clients available to the pipeline; None means not configured."""
    settings: Settings
    primary_ai: Optional[GeminiClient] = None
    secondary_ai: Optional[OpenAIChatClient] = None
    searcher: Optional[WebSearchClient] = None
    session_factory: Optional[sessionmaker] = None

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: Optional[sessionmaker] = None) -> "Providers":
        primary_ai = None
        if settings.gemini_configured:
            primary_ai = GeminiClient(
                settings.gemini_api_key,
                settings.gemini_model,
                timeout=max(settings.timeout_for("direct_ai"), settings.timeout_for("search_summary")),
            )
        secondary_ai = None
        if settings.openai_configured:
            secondary_ai = OpenAIChatClient(
                settings.openai_api_key,
                settings.openai_model,
                base_url=settings.openai_base_url,
                timeout=settings.timeout_for("search_summary"),
            )
        searcher = None
        if settings.search_configured:
            searcher = WebSearchClient(
                settings.search_api_key,
                settings.search_engine_id,
                timeout=settings.timeout_for("web_search"),
            )
        return cls(settings, primary_ai, secondary_ai, searcher, session_factory)

    def active_stages(self) -> dict[str, bool]:
        return {
            DIRECT_AI: self.primary_ai is not None,
            DATABASE: self.session_factory is not None,
            WEB_SEARCH_AI: self.searcher is not None and self.primary_ai is not None,
            WEB_SEARCH_SECONDARY_AI: self.searcher is not None and self.secondary_ai is not None,
            GUARANTEED_FALLBACK: True,
        }

    async def close(self):
        if self.secondary_ai is not None:
            await self.secondary_ai.close()
        if self.searcher is not None:
            await self.searcher.close()


def _build_stage(name: str, providers: Providers) -> Stage:
    settings = providers.settings
    active = providers.active_stages()

    def configured(_: DiagnosisContext) -> bool:
        return active[name]

    if name == DIRECT_AI:
        adapter = DirectAIAdapter(providers.primary_ai) if active[name] else None
        return Stage(
            name,
            attempt=lambda ctx: adapter.attempt(ctx),
            timeout=settings.timeout_for("direct_ai"),
            precondition=configured,
        )
    if name == DATABASE:
        adapter = DatabaseMatchAdapter(providers.session_factory) if active[name] else None
        return Stage(
            name,
            attempt=lambda ctx: adapter.attempt(ctx),
            timeout=settings.timeout_for("database"),
            precondition=configured,
        )
    if name in (WEB_SEARCH_AI, WEB_SEARCH_SECONDARY_AI):
        backend = providers.primary_ai if name == WEB_SEARCH_AI else providers.secondary_ai
        adapter = (
            SearchSummaryAdapter(name, providers.searcher, backend, settings.timeout_for("web_search"))
            if active[name] else None
        )

        def searchable(ctx: DiagnosisContext) -> bool:
            return active[name] and not ctx.search_exhausted

        return Stage(
            name,
            attempt=lambda ctx: adapter.attempt(ctx),
            # search and summary share one stage budget
            timeout=settings.timeout_for("web_search") + settings.timeout_for("search_summary"),
            precondition=searchable,
            skip_reason="not configured" if not active[name] else "no search snippets",
        )
    if name == GUARANTEED_FALLBACK:
        return guaranteed_stage()
    raise ValueError(f"Unknown stage: {name}")


def build_orchestrator(providers: Providers, variant: str = DEFAULT_VARIANT) -> FallbackOrchestrator:
    if variant not in FLOW_VARIANTS:
        raise ValueError(f"Unknown flow variant: {variant}")
    return FallbackOrchestrator([_build_stage(name, providers) for name in FLOW_VARIANTS[variant]])
