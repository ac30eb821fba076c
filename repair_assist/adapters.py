"""
Provider adapters. Each exposes `async attempt(context) -> DiagnosisResult`
and raises AdapterFailure (or ValidationFailure) when it cannot produce a
validated diagnosis.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import AdapterFailure, ValidationFailure
from .formatters import (
    analysis_terms,
    format_answers,
    format_description_analysis,
    format_image_analysis,
    format_search_results,
)
from .images import load_images
from .models import DiagnosisResult
from .prompts import DIRECT_DIAGNOSIS_PROMPT, SEARCH_SUMMARY_PROMPT, SYSTEM_PROMPT
from .repair_knowledge import find_best_record, record_to_payload
from .validation import Accepted, MissingFields, ValidationOutcome, validate_diagnosis, validate_payload
from .web_search import WebSearchClient, build_query

logger = logging.getLogger(__name__)


class TextBackend(Protocol):
    async def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str: ...


@dataclass
class DiagnosisContext:
    """Inputs for one diagnosis request, plus per-request memoized search hits."""
    description: str
    category: str = "device"
    image_refs: list[str] = field(default_factory=list)
    answers: list = field(default_factory=list)
    image_analysis: Optional[dict] = None
    description_analysis: Optional[dict] = None
    session_id: Optional[str] = None
    search_results: Optional[list[dict]] = None
    search_attempted: bool = False

    @property
    def search_exhausted(self) -> bool:
        """True once a search ran and produced nothing to summarize."""
        return self.search_attempted and not self.search_results

    async def get_search_results(self, searcher: WebSearchClient, timeout: float) -> list[dict]:
        """Run the web search at most once per request."""
        if not self.search_attempted:
            self.search_attempted = True
            query = build_query(self.category, self.description)
            try:
                self.search_results = await asyncio.wait_for(searcher.search(query), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise AdapterFailure(f"Web search timed out after {timeout}s") from e
        if not self.search_results:
            raise AdapterFailure("No search snippets to summarize")
        return self.search_results


def accept_or_raise(outcome: ValidationOutcome, stage: str) -> BaseModel:
    if isinstance(outcome, Accepted):
        return outcome.result
    if isinstance(outcome, MissingFields):
        raise ValidationFailure(
            f"Missing required fields: {', '.join(outcome.fields)}",
            stage=stage,
            missing=outcome.fields,
        )
    raise ValidationFailure(f"Unparseable response: {outcome.reason}", stage=stage)


class DirectAIAdapter:
    """Multimodal diagnosis straight from description, photos and prior answers."""

    def __init__(self, backend, http_client: Optional[httpx.AsyncClient] = None):
        self.backend = backend
        self.http_client = http_client

    async def attempt(self, context: DiagnosisContext) -> DiagnosisResult:
        images = await load_images(context.image_refs, self.http_client)
        if images:
            image_note = f"{len(images)} photo(s) of the {context.category} are attached. Use them."
        elif context.image_refs:
            image_note = "Photos were provided but could not be loaded; rely on the description."
        else:
            image_note = "No photos were provided."

        prompt = DIRECT_DIAGNOSIS_PROMPT.format(
            category=context.category,
            description=context.description,
            formatted_answers=format_answers(context.answers),
            formatted_image_analysis=format_image_analysis(context.image_analysis),
            formatted_description_analysis=format_description_analysis(context.description_analysis),
            image_note=image_note,
        )
        raw = await self.backend.generate(
            prompt,
            system_prompt=SYSTEM_PROMPT.format(category=context.category),
            images=images,
        )
        return accept_or_raise(validate_diagnosis(raw), "direct_ai")


class DatabaseMatchAdapter:
    """Keyword match against the repair knowledge base."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def attempt(self, context: DiagnosisContext) -> DiagnosisResult:
        try:
            record, score = await asyncio.to_thread(
                find_best_record,
                self.session_factory,
                context.category,
                context.description,
                analysis_terms(context.image_analysis, context.description_analysis),
            )
        except SQLAlchemyError as e:
            raise AdapterFailure(f"Knowledge base lookup failed: {e}", stage="database") from e

        if record is None:
            raise AdapterFailure("No matching knowledge base record", stage="database")

        logger.info(f"Knowledge base match: {record.title} (score {score})")
        return accept_or_raise(validate_payload(record_to_payload(record)), "database")


class SearchSummaryAdapter:
    """Web search hits summarized into a diagnosis by an AI backend."""

    def __init__(self, name: str, searcher: WebSearchClient, backend: TextBackend, search_timeout: float = 10.0):
        self.name = name
        self.searcher = searcher
        self.backend = backend
        self.search_timeout = search_timeout

    async def attempt(self, context: DiagnosisContext) -> DiagnosisResult:
        results = await context.get_search_results(self.searcher, self.search_timeout)
        prompt = SEARCH_SUMMARY_PROMPT.format(
            category=context.category,
            description=context.description,
            formatted_answers=format_answers(context.answers),
            formatted_results=format_search_results(results),
        )
        raw = await self.backend.generate(
            prompt,
            system_prompt=SYSTEM_PROMPT.format(category=context.category),
        )
        return accept_or_raise(validate_diagnosis(raw), self.name)
