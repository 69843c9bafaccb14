"""
Two-stage classify/draw call against Gemini.

Stage 1 (chat requests only) asks a text model whether the user wants a
drawing or just an answer. Stage 2 asks an image model for an overlay.
The result is a tagged outcome so the pipeline never inspects raw
responses.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Union

from codraw.core.exceptions import GenerationError
from codraw.prompts.loader import render_prompt
from codraw.services.vertex_gemini import GeminiClient, GeminiError, InlineImage

logger = logging.getLogger(__name__)

Source = Literal["auto", "voice", "chat"]


@dataclass(frozen=True)
class RespondOutcome:
    text: str
    kind: Literal["respond"] = "respond"


@dataclass(frozen=True)
class DrawOutcome:
    text: str
    image: bytes | None = None
    mime_type: str = "image/png"
    target_layer: str | None = None
    kind: Literal["draw"] = "draw"


GenerationOutcome = Union[RespondOutcome, DrawOutcome]


@dataclass(frozen=True)
class IntentDecision:
    intent: Literal["draw", "respond"] = "draw"
    message: str = ""
    target_layer: str | None = None


@dataclass
class CanvasRequest:
    source: Source
    prompt: str | None = None
    snapshot: bytes | None = None
    snapshot_mime_type: str = "image/jpeg"
    reference_images: list[InlineImage] = field(default_factory=list)
    layer_names: list[str] = field(default_factory=list)


def _strip_markdown_fences(text: str) -> str:
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL | re.IGNORECASE)
    return match.group(1).strip() if match else text.strip()


def _extract_json_object(text: str) -> str | None:
    """Outermost JSON object via bracket matching."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(text[start:], start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_intent(text: str) -> IntentDecision:
    """Parse classifier output; raises ValueError when no JSON object is present."""
    candidate = _extract_json_object(_strip_markdown_fences(text))
    if candidate is None:
        raise ValueError("classifier returned no JSON object")
    data = json.loads(candidate)
    if not isinstance(data, dict):
        raise ValueError("classifier JSON is not an object")

    intent = str(data.get("intent") or "draw").strip().lower()
    target = str(data.get("target_layer") or data.get("targetLayer") or "").strip()
    return IntentDecision(
        intent="respond" if intent == "respond" else "draw",
        message=str(data.get("message") or ""),
        target_layer=target or None,
    )


class CanvasAIService:
    def __init__(self, gemini: GeminiClient, classifier_model: str | None = None):
        self.gemini = gemini
        self.classifier_model = classifier_model

    def classify(self, request: CanvasRequest) -> IntentDecision:
        prompt = render_prompt(
            "canvas_classifier",
            user_input=request.prompt or "",
            layer_names=request.layer_names,
        )
        text = self.gemini.generate_text(
            prompt,
            model=self.classifier_model,
            response_mime_type="application/json",
        )
        return parse_intent(text)

    def solve(self, request: CanvasRequest) -> GenerationOutcome:
        """Blocking; run it off the event loop.

        Raises:
            GenerationError: when the artist call fails
        """
        decision = IntentDecision()
        if request.source == "chat" and request.prompt:
            try:
                decision = self.classify(request)
            except (GeminiError, RuntimeError, ValueError) as exc:
                logger.warning("canvas_ai.classify_failed_defaulting_to_draw", extra={"error": str(exc)})
            if decision.intent == "respond":
                return RespondOutcome(text=decision.message)

        images: list[InlineImage] = []
        if request.snapshot:
            images.append((request.snapshot, request.snapshot_mime_type))
        images.extend(request.reference_images)

        prompt = render_prompt("canvas_artist", user_input=request.prompt or "")
        try:
            generation = self.gemini.generate_image(prompt, images=images)
        except (GeminiError, RuntimeError) as exc:
            raise GenerationError("Failed to generate drawing", detail=str(exc)) from exc

        logger.info(
            "canvas_ai.generated",
            extra={"has_image": generation.image_bytes is not None, "source": request.source},
        )
        return DrawOutcome(
            # classifier text reaches the user first, so it wins
            text=decision.message or generation.text,
            image=generation.image_bytes,
            mime_type=generation.mime_type,
            target_layer=decision.target_layer,
        )
