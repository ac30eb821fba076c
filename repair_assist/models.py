"""
Pydantic request/response models for the Repair Assist API.

Wire format is camelCase (the mobile client's shape); attributes are snake_case.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .input_sanitization import (
    MAX_IMAGE_REFS,
    normalize_category,
    validate_image_ref,
)


class SessionStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class DiagnosisSource(str, Enum):
    DIRECT_AI = "direct_ai"
    DATABASE = "database"
    WEB_SEARCH_AI = "web_search_ai"
    WEB_SEARCH_SECONDARY_AI = "web_search_secondary_ai"
    GUARANTEED_FALLBACK = "guaranteed_fallback"
    EMERGENCY_FALLBACK = "emergency_fallback"


# --- Diagnosis ---

class DiagnosisResult(BaseModel):
    """A fully populated diagnosis. Partial results never get this far."""
    model_config = ConfigDict(populate_by_name=True)

    problem: str
    explanation: str
    repair_steps: list[str] = Field(alias="repairSteps")
    tools_needed: list[str] = Field(alias="toolsNeeded")
    estimated_cost: str = Field(default="varies", alias="estimatedCost")
    difficulty: str = "unknown"
    success_rate: str = Field(default="unknown", alias="successRate")
    time_required: str = Field(default="varies", alias="timeRequired")
    safety_warnings: list[str] = Field(default_factory=list, alias="safetyWarnings")

    @field_validator("problem", "explanation")
    @classmethod
    def text_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("repair_steps")
    @classmethod
    def steps_not_empty(cls, v: list[str]) -> list[str]:
        steps = [s.strip() for s in v if s and s.strip()]
        if not steps:
            raise ValueError("at least one repair step is required")
        return steps

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# --- Guided-flow analysis ---

CONFIDENCE_LEVELS = ("high", "medium", "low")


def _text_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _problem_list(value) -> list:
    """Accept bare strings and drop entries without a usable label."""
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    problems = []
    for item in value:
        if isinstance(item, str):
            item = {"label": item}
        if isinstance(item, dict) and str(item.get("label") or "").strip():
            problems.append(item)
    return problems


class ProblemHypothesis(BaseModel):
    label: str
    reasoning: str = ""
    confidence: str = "medium"

    @field_validator("label")
    @classmethod
    def label_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("label must not be empty")
        return v.strip()

    @field_validator("reasoning", mode="before")
    @classmethod
    def reasoning_text(cls, v) -> str:
        return str(v or "").strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def known_confidence(cls, v) -> str:
        value = str(v or "").strip().lower()
        return value if value in CONFIDENCE_LEVELS else "medium"


class ImageAnalysis(BaseModel):
    """Candidate problems seen in the photos, plus questions for the user."""
    model_config = ConfigDict(populate_by_name=True)

    problems: list[ProblemHypothesis] = Field(default_factory=list)
    visual_observations: str = Field(default="", alias="visualObservations")
    clarifying_questions: list[str] = Field(default_factory=list, alias="clarifyingQuestions")

    @field_validator("problems", mode="before")
    @classmethod
    def coerce_problems(cls, v) -> list:
        return _problem_list(v)

    @field_validator("visual_observations", mode="before")
    @classmethod
    def observation_text(cls, v) -> str:
        return str(v or "").strip()

    @field_validator("clarifying_questions", mode="before")
    @classmethod
    def coerce_questions(cls, v) -> list[str]:
        return _text_list(v)


class DescriptionAnalysis(BaseModel):
    """Problems refined against the user's description, plus follow-up questions."""
    model_config = ConfigDict(populate_by_name=True)

    refined_problems: list[ProblemHypothesis] = Field(default_factory=list, alias="refinedProblems")
    additional_questions: list[str] = Field(default_factory=list, alias="additionalQuestions")
    key_symptoms: list[str] = Field(default_factory=list, alias="keySymptoms")
    analysis_notes: str = Field(default="", alias="analysisNotes")

    @field_validator("refined_problems", mode="before")
    @classmethod
    def coerce_problems(cls, v) -> list:
        return _problem_list(v)

    @field_validator("additional_questions", "key_symptoms", mode="before")
    @classmethod
    def coerce_lists(cls, v) -> list[str]:
        return _text_list(v)

    @field_validator("analysis_notes", mode="before")
    @classmethod
    def notes_text(cls, v) -> str:
        return str(v or "").strip()


# --- Requests ---

class QAPair(BaseModel):
    question: str
    answer: str


class SessionInputs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str
    device_category: str = Field(default="device", alias="deviceCategory")
    image_refs: list[str] = Field(default_factory=list, alias="imageRefs")

    @field_validator("description")
    @classmethod
    def description_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Description cannot be empty")
        return v.strip()

    @field_validator("device_category", mode="before")
    @classmethod
    def known_category(cls, v: Optional[str]) -> str:
        return normalize_category(v)

    @field_validator("image_refs")
    @classmethod
    def valid_image_refs(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_IMAGE_REFS:
            raise ValueError(f"At most {MAX_IMAGE_REFS} images are allowed")
        for ref in v:
            if not validate_image_ref(ref):
                raise ValueError("Images must be https URLs or base64 image data URIs")
        return v


class CreateSessionRequest(SessionInputs):
    pass


class DiagnoseRequest(SessionInputs):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    clarifying_answers: list[QAPair] = Field(default_factory=list, alias="clarifyingAnswers")
    image_analysis: Optional[dict] = Field(default=None, alias="imageAnalysis")
    variant: str = "final"


# --- Responses ---

class DiagnoseResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    diagnosis: DiagnosisResult
    source: DiagnosisSource


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    status: SessionStatus
    description: str
    device_category: str = Field(alias="deviceCategory")
    image_refs: list[str] = Field(default_factory=list, alias="imageRefs")
    diagnosis: Optional[DiagnosisResult] = None
    source: Optional[DiagnosisSource] = None
    image_analysis: Optional[dict] = Field(default=None, alias="imageAnalysis")
    description_analysis: Optional[dict] = Field(default=None, alias="descriptionAnalysis")


class EntitlementResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_premium: bool = Field(alias="isPremium")
    remaining_quota: int = Field(alias="remainingQuota")
    daily_limit: int = Field(alias="dailyLimit")


class AnalysisResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session_id: str = Field(alias="sessionId")
    analysis: dict
    used_fallback: bool = Field(default=False, alias="usedFallback")
