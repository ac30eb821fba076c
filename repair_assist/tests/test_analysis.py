"""
Tests for the guided-flow analysis steps: photo analysis and description
analysis, including the canned fallbacks and default top-ups.
"""
import asyncio
import base64
import io
import json

from PIL import Image

from repair_assist.analysis import (
    DEFAULT_CLARIFYING_QUESTIONS,
    MIN_CLARIFYING_QUESTIONS,
    analyze_description,
    analyze_images,
)
from repair_assist.errors import AdapterFailure

IMAGE_ANALYSIS = json.dumps({
    "problems": [
        {"label": "Swollen capacitor", "reasoning": "Domed top near the PSU", "confidence": "High"},
        "Cold solder joint",
    ],
    "visualObservations": "Bulging capacitor beside the power jack",
    "clarifyingQuestions": [
        "Does it click when plugged in?",
        "Any burning smell?",
        "Was it dropped?",
        "How old is the power supply?",
        "Does the LED blink?",
    ],
})


def _png_ref():
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), color=(10, 20, 30)).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class FakeBackend:
    def __init__(self, response=None, delay=0):
        self.response = response
        self.delay = delay
        self.prompts = []
        self.images = None

    async def generate(self, prompt, system_prompt=None, images=None, temperature=0.3, max_output_tokens=2048):
        self.prompts.append(prompt)
        self.images = images
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class TestImageAnalysis:

    def test_model_output_used(self):
        backend = FakeBackend(f"```json\n{IMAGE_ANALYSIS}\n```")

        outcome = asyncio.run(analyze_images(backend, [_png_ref()], "pcb"))

        assert outcome.used_fallback is False
        wire = outcome.to_wire()
        assert [p["label"] for p in wire["problems"]] == ["Swollen capacitor", "Cold solder joint"]
        assert wire["problems"][0]["confidence"] == "high"
        assert len(wire["clarifyingQuestions"]) == 5
        assert len(backend.images) == 1
        assert "pcb" in backend.prompts[0]

    def test_incomplete_output_topped_up(self):
        backend = FakeBackend(json.dumps({"problems": [], "clarifyingQuestions": ["Any smell?"]}))

        wire = asyncio.run(analyze_images(backend, [_png_ref()], "device")).to_wire()

        assert wire["problems"][0]["label"] == "Hardware component issue"
        assert wire["clarifyingQuestions"] == DEFAULT_CLARIFYING_QUESTIONS
        assert wire["visualObservations"]

    def test_not_configured(self):
        outcome = asyncio.run(analyze_images(None, [_png_ref()], "instrument"))

        assert outcome.used_fallback is True
        assert outcome.analysis.problems[0].label == "Hardware malfunction"
        assert outcome.analysis.problems[0].confidence == "low"
        assert "instrument" in outcome.analysis.visual_observations

    def test_provider_failure_falls_back(self):
        backend = FakeBackend(AdapterFailure("quota exhausted", stage="image_analysis"))
        outcome = asyncio.run(analyze_images(backend, [_png_ref()]))

        assert outcome.used_fallback is True
        assert len(outcome.analysis.clarifying_questions) >= MIN_CLARIFYING_QUESTIONS

    def test_unparseable_output_falls_back(self):
        outcome = asyncio.run(analyze_images(FakeBackend("I can't see anything useful"), [_png_ref()]))
        assert outcome.used_fallback is True

    def test_timeout_falls_back(self):
        backend = FakeBackend(IMAGE_ANALYSIS, delay=1)
        outcome = asyncio.run(analyze_images(backend, [_png_ref()], timeout=0.01))
        assert outcome.used_fallback is True

    def test_no_usable_images_skips_provider(self):
        backend = FakeBackend(IMAGE_ANALYSIS)
        bad = "data:image/png;base64," + base64.b64encode(b"not an image").decode()

        outcome = asyncio.run(analyze_images(backend, [bad]))

        assert outcome.used_fallback is True
        assert backend.prompts == []


class TestDescriptionAnalysis:

    def test_refines_with_photo_analysis(self):
        backend = FakeBackend(json.dumps({
            "refinedProblems": [{"label": "Failed PSU capacitor", "confidence": "high"}],
            "additionalQuestions": ["Does it hum?"],
            "keySymptoms": ["clicking", "no power"],
            "analysisNotes": "Consistent with the bulging capacitor in the photo",
        }))
        photo = json.loads(IMAGE_ANALYSIS)

        outcome = asyncio.run(analyze_description(backend, "It clicks & won't start", "device", photo))

        assert outcome.used_fallback is False
        assert outcome.analysis.refined_problems[0].label == "Failed PSU capacitor"
        assert outcome.analysis.key_symptoms == ["clicking", "no power"]
        prompt = backend.prompts[0]
        assert "It clicks & won't start" in prompt
        assert "Swollen capacitor" in prompt

    def test_incomplete_output_topped_up(self):
        backend = FakeBackend(json.dumps({"refinedProblems": [{"label": "Dead battery"}]}))

        analysis = asyncio.run(analyze_description(backend, "Won't charge")).analysis

        assert analysis.additional_questions
        assert analysis.key_symptoms == ["user reported issue"]
        assert analysis.analysis_notes

    def test_not_configured(self):
        outcome = asyncio.run(analyze_description(None, "Won't charge"))

        assert outcome.used_fallback is True
        assert outcome.to_wire()["refinedProblems"][0]["label"] == "Issue based on description"

    def test_timeout_falls_back(self):
        backend = FakeBackend("{}", delay=1)
        outcome = asyncio.run(analyze_description(backend, "Won't charge", timeout=0.01))
        assert outcome.used_fallback is True
