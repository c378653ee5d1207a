from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import CapabilityError, MalformedExtractionError
from .models import KnowledgeUnitType

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """You are an expert at reading handwritten notebook pages and extracting structured information.

Analyze the provided image of a handwritten notebook page and return structured data.

Instructions:
1. rawOcrText: Transcribe ALL visible handwritten text exactly as written, preserving line breaks. Include crossed-out text in [brackets]. Include any doodles or diagrams as [diagram: brief description].
2. cleanText: Clean up the raw text: fix obvious spelling errors, normalize formatting, remove artifacts. Keep the meaning intact.
3. knowledgeUnits: Extract discrete units of knowledge. Each should be ONE of:
   - "task": An actionable to-do item (e.g., "Buy groceries", "Email John about project")
   - "idea": A creative thought, concept, or brainstorm (e.g., "App for tracking habits")
   - "note": Factual information, observation, or reference (e.g., "Meeting at 3pm")
   - "question": Something the writer wants to answer or research (e.g., "How does pgvector work?")
   - "action_item": A specific next step or follow-up (e.g., "Follow up with client by Friday")
4. suggestedTags: Suggest 2-6 relevant tags for the overall page content (e.g., "work", "project-alpha", "meeting-notes", "personal").

Be thorough and extract every meaningful piece of content. If the image is unclear or empty, return empty arrays and a note in cleanText."""

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "rawOcrText": {"type": "string", "description": "Raw transcription of all handwritten text"},
        "cleanText": {"type": "string", "description": "Cleaned and normalized text"},
        "knowledgeUnits": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "format": "enum", "enum": [t.value for t in KnowledgeUnitType]},
                    "content": {"type": "string", "description": "The extracted content"},
                },
                "required": ["type", "content"],
            },
        },
        "suggestedTags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["rawOcrText", "cleanText", "knowledgeUnits", "suggestedTags"],
}


@dataclass
class KnowledgeUnitDraft:
    type: KnowledgeUnitType
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    raw_ocr_text: str
    clean_text: str
    knowledge_units: List[KnowledgeUnitDraft] = field(default_factory=list)
    suggested_tags: List[str] = field(default_factory=list)


class _KnowledgeUnitPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: KnowledgeUnitType
    content: str
    metadata: Optional[Dict[str, Any]] = None


class _ExtractionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    raw_ocr_text: str = Field(alias="rawOcrText")
    clean_text: str = Field(alias="cleanText")
    knowledge_units: List[_KnowledgeUnitPayload] = Field(alias="knowledgeUnits")
    suggested_tags: List[str] = Field(alias="suggestedTags")


@dataclass
class ValidationOutcome:
    """Either a validated result or the reason the payload was rejected."""

    result: Optional[ExtractionResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def validate_extraction(payload: Union[str, bytes, Dict[str, Any]]) -> ValidationOutcome:
    """
    Check a raw model answer (JSON text or an already decoded mapping)
    against the expected extraction shape.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except (TypeError, ValueError) as exc:
            return ValidationOutcome(error=f"Extraction response is not valid JSON: {exc}")
    if not isinstance(payload, dict):
        return ValidationOutcome(error=f"Extraction response must be an object, got {type(payload).__name__}")
    try:
        parsed = _ExtractionPayload.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
        )
        return ValidationOutcome(error=f"Extraction response failed validation: {problems}")
    return ValidationOutcome(
        result=ExtractionResult(
            raw_ocr_text=parsed.raw_ocr_text,
            clean_text=parsed.clean_text,
            knowledge_units=[
                KnowledgeUnitDraft(type=unit.type, content=unit.content, metadata=dict(unit.metadata or {}))
                for unit in parsed.knowledge_units
            ],
            suggested_tags=list(parsed.suggested_tags),
        )
    )


def parse_extraction(payload: Union[str, bytes, Dict[str, Any]]) -> ExtractionResult:
    outcome = validate_extraction(payload)
    if not outcome.ok:
        raise MalformedExtractionError(outcome.error)
    return outcome.result


class ExtractionEngine:
    """
    Abstract extraction capability. Implementations turn image bytes into a
    validated ExtractionResult or raise CapabilityError.
    """

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        raise NotImplementedError


class GeminiExtractionEngine(ExtractionEngine):
    """
    Google Gemini vision model in JSON response mode.

    Requires the `google-generativeai` package and an API key. Both are
    checked on the first `extract` call, so a misconfigured worker fails
    each page with a recorded error instead of refusing to start.
    """

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", timeout: float = 120.0):
        self.api_key = api_key
        self.model_name = model
        self.timeout = timeout
        self._model = None

    def _get_model(self):
        if not self.api_key:
            raise CapabilityError(
                "GEMINI_API_KEY is not set. Get a key at https://aistudio.google.com and add it to the environment."
            )
        if self._model is None:
            try:
                import google.generativeai as genai
            except ImportError as exc:  # pragma: no cover - dependency guard
                raise RuntimeError("google-generativeai is required. Please install 'google-generativeai'.") from exc

            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config={
                    "response_mime_type": "application/json",
                    "response_schema": RESPONSE_SCHEMA,
                },
            )
        return self._model

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        model = self._get_model()
        try:
            response = model.generate_content(
                [EXTRACTION_PROMPT, {"mime_type": mime_type, "data": image_bytes}],
                request_options={"timeout": self.timeout},
            )
            text = (response.text or "").strip()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Gemini request failed (%s): %s", self.model_name, exc)
            raise CapabilityError(f"Extraction service error: {exc}") from exc
        return parse_extraction(text)
