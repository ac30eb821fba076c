"""
Result validator: raw provider text -> Accepted | ParseError | MissingFields.

validate_diagnosis never raises. Adapters decide what a rejection means.
"""
import re
from dataclasses import dataclass, field
from typing import Union

from pydantic import BaseModel, ValidationError

from .errors import JSONExtractionError
from .json_utils import extract_json
from .models import DiagnosisResult

REQUIRED_FIELDS = ("problem", "explanation", "repairSteps", "toolsNeeded")

# Alternate keys providers use for the same field
FIELD_ALIASES = {
    "problem": ("problem", "diagnosis", "issue", "title"),
    "explanation": ("explanation", "description", "reason", "cause"),
    "repairSteps": ("repairSteps", "repair_steps", "steps", "fixSteps", "fix_steps", "solution"),
    "toolsNeeded": ("toolsNeeded", "tools_needed", "tools"),
    "estimatedCost": ("estimatedCost", "estimated_cost", "cost"),
    "difficulty": ("difficulty",),
    "successRate": ("successRate", "success_rate"),
    "timeRequired": ("timeRequired", "time_required", "estimatedTime", "time"),
    "safetyWarnings": ("safetyWarnings", "safety_warnings", "warnings"),
}

LIST_FIELDS = {"repairSteps", "toolsNeeded", "safetyWarnings"}


@dataclass
class Accepted:
    result: BaseModel
    ok: bool = field(default=True, init=False)


@dataclass
class ParseError:
    reason: str
    ok: bool = field(default=False, init=False)


@dataclass
class MissingFields:
    fields: list[str]
    ok: bool = field(default=False, init=False)


ValidationOutcome = Union[Accepted, ParseError, MissingFields]


def _missing_from_error(error: ValidationError) -> MissingFields:
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in error.errors()]
    return MissingFields([f for f in fields if f] or ["unknown"])


def _split_list(value: str, list_field: str) -> list[str]:
    if list_field == "toolsNeeded":
        parts = re.split(r'[,\n]', value)
    else:
        parts = value.split("\n")
    return [p.strip(" \t-•*") for p in parts if p.strip(" \t-•*")]


def _coerce_list(value, list_field: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _split_list(value, list_field)
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, dict):
                # {"step": 1, "description": "..."} style entries
                text = item.get("description") or item.get("text") or item.get("step")
                item = text if text is not None else ""
            text = str(item).strip()
            if text:
                items.append(text)
        return items
    return [str(value)]


def normalize_fields(data: dict) -> dict:
    """Map provider keys onto the canonical camelCase shape.

    Absent keys stay absent so the required-field check can see them.
    """
    normalized = {}
    for canonical, aliases in FIELD_ALIASES.items():
        for key in aliases:
            if key in data and data[key] is not None:
                value = data[key]
                if canonical in LIST_FIELDS:
                    value = _coerce_list(value, canonical)
                elif not isinstance(value, str):
                    value = str(value)
                normalized[canonical] = value
                break
    return normalized


def _missing(data: dict) -> list[str]:
    missing = []
    for name in REQUIRED_FIELDS:
        if name not in data:
            missing.append(name)
        elif name == "toolsNeeded":
            continue  # present but possibly empty is fine
        elif isinstance(data[name], list):
            if not data[name]:
                missing.append(name)
        elif not str(data[name]).strip():
            missing.append(name)
    return missing


def validate_payload(data: dict) -> ValidationOutcome:
    """Validate an already-parsed object."""
    if not isinstance(data, dict):
        return ParseError(f"expected object, got {type(data).__name__}")

    normalized = normalize_fields(data)
    missing = _missing(normalized)
    if missing:
        return MissingFields(missing)

    for sentinel_field, sentinel in (
        ("estimatedCost", "varies"),
        ("timeRequired", "varies"),
        ("difficulty", "unknown"),
        ("successRate", "unknown"),
    ):
        if not str(normalized.get(sentinel_field, "")).strip():
            normalized[sentinel_field] = sentinel
    normalized.setdefault("safetyWarnings", [])

    try:
        return Accepted(DiagnosisResult.model_validate(normalized))
    except ValidationError as e:
        return _missing_from_error(e)


def validate_diagnosis(raw_text: str) -> ValidationOutcome:
    """Locate, parse and validate a diagnosis in raw provider text."""
    try:
        data = extract_json(raw_text or "")
    except JSONExtractionError as e:
        return ParseError(str(e))
    return validate_payload(data)


def validate_model(raw_text: str, model: type[BaseModel]) -> ValidationOutcome:
    """Locate and parse any response model in raw provider text. Never raises."""
    try:
        data = extract_json(raw_text or "")
    except JSONExtractionError as e:
        return ParseError(str(e))
    try:
        return Accepted(model.model_validate(data))
    except ValidationError as e:
        return _missing_from_error(e)
