"""
Error types for the diagnosis service.

AdapterFailure and ValidationFailure are absorbed by the orchestrator and
advance the pipeline. The rest reach the HTTP layer or are only logged.
"""
from typing import Optional


class AdapterFailure(Exception):
    """An external stage failed: network, timeout, non-2xx or bad payload."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ValidationFailure(AdapterFailure):
    """Provider output could not be parsed or was missing required fields."""

    def __init__(self, message: str, stage: Optional[str] = None, missing: Optional[list[str]] = None):
        super().__init__(message, stage)
        self.missing = missing or []


class JSONExtractionError(ValueError):
    """No JSON object could be recovered from model output."""


class AuthenticationError(Exception):
    """Bearer token missing or rejected by the identity provider."""