"""
Guided-flow analysis that runs before /diagnose.

Photo analysis proposes candidate problems and five clarifying questions.
Description analysis refines those problems against the user's own words and
asks follow-ups. Neither step can fail the flow: when the model is not
configured, times out, or returns something unusable, a canned analysis is
returned with used_fallback set. Incomplete model output is topped up with
the same canned defaults.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from .adapters import accept_or_raise
from .errors import AdapterFailure
from .formatters import format_image_analysis
from .images import load_images
from .models import DescriptionAnalysis, ImageAnalysis, ProblemHypothesis
from .prompts import DESCRIPTION_ANALYSIS_PROMPT, IMAGE_ANALYSIS_PROMPT, SYSTEM_PROMPT
from .validation import validate_model

logger = logging.getLogger(__name__)

IMAGE_ANALYSIS = "image_analysis"
DESCRIPTION_ANALYSIS = "description_analysis"

MIN_CLARIFYING_QUESTIONS = 5

DEFAULT_CLARIFYING_QUESTIONS = [
    "What specific symptoms are you seeing?",
    "When did the problem first start?",
    "Does the device power on at all?",
    "Are there any unusual sounds or smells?",
    "What have you already tried?",
]

DEFAULT_ADDITIONAL_QUESTIONS = [
    "Can you describe the exact symptoms in more detail?",
    "Does the problem happen every time, or only sometimes?",
    "Did anything change just before it started (a drop, a spill, a power cut)?",
]


@dataclass
class AnalysisOutcome:
    analysis: Union[ImageAnalysis, DescriptionAnalysis]
    used_fallback: bool = False

    def to_wire(self) -> dict:
        return self.analysis.model_dump(by_alias=True)


def fallback_image_analysis(category: str = "device") -> ImageAnalysis:
    return ImageAnalysis(
        problems=[ProblemHypothesis(
            label="Hardware malfunction",
            reasoning="The photos could not be analyzed, so the diagnosis will rely on your answers",
            confidence="low",
        )],
        visual_observations=f"The photos of your {category} could not be analyzed, but diagnosis can continue.",
        clarifying_questions=list(DEFAULT_CLARIFYING_QUESTIONS),
    )


def fallback_description_analysis() -> DescriptionAnalysis:
    return DescriptionAnalysis(
        refined_problems=[ProblemHypothesis(
            label="Issue based on description",
            reasoning="The description could not be analyzed in detail",
            confidence="low",
        )],
        additional_questions=list(DEFAULT_ADDITIONAL_QUESTIONS),
        key_symptoms=["user reported problem"],
        analysis_notes="Fallback analysis; more detail in your answers will help.",
    )


def complete_image_analysis(analysis: ImageAnalysis, category: str) -> ImageAnalysis:
    """Fill whatever the model left out."""
    updates = {}
    if not analysis.problems:
        updates["problems"] = [ProblemHypothesis(
            label="Hardware component issue",
            reasoning="The photos suggest a hardware-related problem",
            confidence="medium",
        )]
    if len(analysis.clarifying_questions) < MIN_CLARIFYING_QUESTIONS:
        updates["clarifying_questions"] = list(DEFAULT_CLARIFYING_QUESTIONS)
    if not analysis.visual_observations:
        updates["visual_observations"] = f"Photos of your {category} were provided."
    return analysis.model_copy(update=updates) if updates else analysis


def complete_description_analysis(analysis: DescriptionAnalysis) -> DescriptionAnalysis:
    updates = {}
    if not analysis.refined_problems:
        updates["refined_problems"] = [ProblemHypothesis(
            label="Problem based on description",
            reasoning="Derived from the description of the issue",
            confidence="medium",
        )]
    if not analysis.additional_questions:
        updates["additional_questions"] = list(DEFAULT_ADDITIONAL_QUESTIONS)
    if not analysis.key_symptoms:
        updates["key_symptoms"] = ["user reported issue"]
    if not analysis.analysis_notes:
        updates["analysis_notes"] = "Analysis based on the description."
    return analysis.model_copy(update=updates) if updates else analysis


async def _run_guarded(kind: str, work, timeout: float) -> Optional[AnalysisOutcome]:
    """Await one analysis; expected failures are logged and yield None."""
    try:
        return await asyncio.wait_for(work, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{kind} timed out after {timeout}s, using fallback")
    except (AdapterFailure, httpx.HTTPError) as e:
        logger.warning(f"{kind} failed, using fallback: {e}")
    return None


async def _analyze_images(backend, image_refs: list[str], category: str, http_client) -> AnalysisOutcome:
    images = await load_images(image_refs, http_client)
    if not images:
        raise AdapterFailure("No usable images to analyze", stage=IMAGE_ANALYSIS)
    raw = await backend.generate(
        IMAGE_ANALYSIS_PROMPT.format(category=category),
        system_prompt=SYSTEM_PROMPT.format(category=category),
        images=images,
        temperature=0.1,
        max_output_tokens=1024,
    )
    analysis = accept_or_raise(validate_model(raw, ImageAnalysis), IMAGE_ANALYSIS)
    return AnalysisOutcome(complete_image_analysis(analysis, category))


async def analyze_images(
    backend,
    image_refs: list[str],
    category: str = "device",
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> AnalysisOutcome:
    """Candidate problems and clarifying questions from the session photos."""
    if backend is None:
        logger.info("image analysis not configured, using fallback")
    else:
        outcome = await _run_guarded(
            IMAGE_ANALYSIS, _analyze_images(backend, image_refs, category, http_client), timeout
        )
        if outcome is not None:
            return outcome
    return AnalysisOutcome(fallback_image_analysis(category), used_fallback=True)


async def _analyze_description(backend, description: str, category: str, image_analysis) -> AnalysisOutcome:
    prompt = DESCRIPTION_ANALYSIS_PROMPT.format(
        category=category,
        description=description,
        formatted_image_analysis=format_image_analysis(image_analysis),
    )
    raw = await backend.generate(
        prompt,
        system_prompt=SYSTEM_PROMPT.format(category=category),
        temperature=0.1,
        max_output_tokens=1024,
    )
    analysis = accept_or_raise(validate_model(raw, DescriptionAnalysis), DESCRIPTION_ANALYSIS)
    return AnalysisOutcome(complete_description_analysis(analysis))


async def analyze_description(
    backend,
    description: str,
    category: str = "device",
    image_analysis: Optional[dict] = None,
    timeout: float = 20.0,
) -> AnalysisOutcome:
    """Refined problems and follow-up questions from the description and earlier photo analysis."""
    if backend is None:
        logger.info("description analysis not configured, using fallback")
    else:
        outcome = await _run_guarded(
            DESCRIPTION_ANALYSIS, _analyze_description(backend, description, category, image_analysis), timeout
        )
        if outcome is not None:
            return outcome
    return AnalysisOutcome(fallback_description_analysis(), used_fallback=True)
