"""
Generation provider and consistency analyzer clients backed by the Google Gemini API.

The abstract interfaces are what the pipeline stages depend on; the Gemini
implementations translate requests into prompts and multimodal parts and map
API failures onto retryable or permanent errors.
"""

import asyncio
import base64
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config_manager import AppConfig
from data_models import (
    BookSettings,
    CharacterRole,
    CharacterSpec,
    ConsistencyAnalysis,
    PageSpec,
    QualityTier,
    StyleGuide,
)
from prompting import (
    ResponseFormatError,
    build_character_prompt,
    build_consistency_prompt,
    build_page_prompt,
    build_plan_prompt,
    create_style_guide,
    extract_json_object,
    parse_consistency_response,
    parse_plan_response,
)
from retry_utils import is_retryable_error

logger = logging.getLogger(__name__)

MAX_PREVIOUS_PAGES = 2

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class ServiceError(Exception):
    """Base exception for external generation services"""

    def __init__(self, message: str, retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class ProviderError(ServiceError):
    """Raised when the generation provider fails a request"""
    pass


class AnalyzerError(ServiceError):
    """Raised when the consistency analyzer fails a request"""
    pass


# Request / response contracts

@dataclass
class PlanRequest:
    source_text: str
    target_age: int
    page_count: int
    intensity: int
    style: str
    notes: str = ""
    language: str = "en"
    quality_tier: QualityTier = QualityTier.STANDARD_FLASH


@dataclass
class PlanResponse:
    page_specs: List[PageSpec]
    character_specs: List[CharacterSpec]
    theme: str
    style_guide: StyleGuide
    title: str = ""
    story_arc: List[str] = field(default_factory=list)


@dataclass
class CharacterImageRequest:
    name: str
    description: str
    role: CharacterRole
    style_guide: StyleGuide
    feedback: Optional[str] = None


@dataclass
class CharacterImageResponse:
    image_ref: str


@dataclass
class CharacterReference:
    name: str
    image_ref: str


@dataclass
class PageImageRequest:
    brief: str
    camera_angle: str
    style_guide: StyleGuide
    character_refs: List[CharacterReference] = field(default_factory=list)
    previous_page_refs: List[str] = field(default_factory=list)
    fix_instruction: Optional[str] = None
    aspect_ratio: str = "1:1"

    def __post_init__(self):
        if len(self.previous_page_refs) > MAX_PREVIOUS_PAGES:
            raise ValueError(
                f"At most {MAX_PREVIOUS_PAGES} previous pages may be sent, got {len(self.previous_page_refs)}"
            )


@dataclass
class PageImageResponse:
    image_ref: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class PageImage:
    index: int
    image_ref: str


@dataclass
class AnalysisRequest:
    character_descriptions: List[str]
    page_images: List[PageImage]
    style_guide: Optional[StyleGuide] = None
    character_refs: List[CharacterReference] = field(default_factory=list)


class GenerationProvider(ABC):
    """Uniform interface to the external generative capability"""

    @abstractmethod
    async def generate_plan(self, request: PlanRequest) -> PlanResponse:
        ...

    @abstractmethod
    async def generate_character_image(self, request: CharacterImageRequest) -> CharacterImageResponse:
        ...

    @abstractmethod
    async def generate_page_image(self, request: PageImageRequest) -> PageImageResponse:
        ...


class ConsistencyAnalyzer(ABC):
    """Uniform interface to the external consistency analysis capability"""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> ConsistencyAnalysis:
        ...


# Gemini helpers

def classify_error(error: Exception, error_cls: Type[ServiceError]) -> ServiceError:
    """Map an API or transport failure onto a retryable or permanent service error"""
    if isinstance(error, ServiceError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return error_cls("Request timed out", retryable=True)
    if isinstance(error, (google_exceptions.ResourceExhausted,
                          google_exceptions.TooManyRequests,
                          google_exceptions.ServiceUnavailable,
                          google_exceptions.DeadlineExceeded)):
        return error_cls(str(error), retryable=True, status=getattr(error, "code", None))
    if isinstance(error, google_exceptions.GoogleAPICallError):
        return error_cls(str(error), retryable=False, status=getattr(error, "code", None))
    return error_cls(str(error), retryable=is_retryable_error(error))


def image_part(image_ref: str) -> Dict[str, Any]:
    """Convert a data URL or bare base64 string into an inline image part"""
    mime_type = "image/png"
    data = image_ref
    if image_ref.startswith("data:"):
        header, _, data = image_ref.partition(",")
        mime_type = header[5:].split(";")[0] or mime_type
    return {"mime_type": mime_type, "data": base64.b64decode(data)}


def extract_image_ref(response: Any) -> str:
    """Return the first inline image of a response as a data URL"""
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            mime_type = getattr(inline, "mime_type", "") or ""
            if inline is not None and mime_type.startswith("image/"):
                data = inline.data
                if isinstance(data, bytes):
                    data = base64.b64encode(data).decode("ascii")
                return f"data:{mime_type};base64,{data}"
    raise ProviderError("No image generated in response", retryable=False)


def extract_safety_warnings(response: Any) -> List[str]:
    warnings = []
    feedback = getattr(response, "prompt_feedback", None)
    for rating in getattr(feedback, "safety_ratings", None) or []:
        probability = getattr(rating.probability, "name", str(rating.probability))
        if probability not in ("NEGLIGIBLE", "HARM_PROBABILITY_UNSPECIFIED"):
            category = getattr(rating.category, "name", str(rating.category))
            warnings.append(f"Safety concern: {category}")
    return warnings


def check_blocked(response: Any, error_cls: Type[ServiceError]) -> None:
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None)
    if block_reason:
        reason = getattr(block_reason, "name", str(block_reason))
        raise error_cls(f"Request blocked by safety filter: {reason}", retryable=False)


class _GeminiClient:
    """Shared model access, timeout handling and statistics"""

    error_cls: Type[ServiceError] = ServiceError

    def __init__(self, api_key: str, config: AppConfig):
        self.config = config
        self._api_config = config.api
        self._stats = {
            "total_requests": 0,
            "errors": 0,
            "total_generation_time": 0.0,
        }
        try:
            genai.configure(api_key=api_key)
        except Exception as e:
            raise self.error_cls(f"Failed to initialize Gemini API: {e}") from e

    def _model(self, name: str, **kwargs) -> Any:
        return genai.GenerativeModel(name, **kwargs)

    async def _generate(self, model: Any, parts: Sequence[Any], label: str) -> Any:
        """Make one API request; cancellation of the awaiting task aborts the request"""
        timeout = self._api_config.timeout
        generation_config = genai.types.GenerationConfig(temperature=self._api_config.temperature)
        self._stats["total_requests"] += 1
        start_time = time.time()
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(list(parts), generation_config=generation_config),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._stats["errors"] += 1
            raise self.error_cls(f"{label} timed out after {timeout} seconds", retryable=True)
        except Exception as e:
            self._stats["errors"] += 1
            raise classify_error(e, self.error_cls) from e

        elapsed = time.time() - start_time
        self._stats["total_generation_time"] += elapsed
        logger.debug(f"{label} completed in {elapsed:.2f}s")
        check_blocked(response, self.error_cls)
        return response

    @staticmethod
    def _response_text(response: Any, error_cls: Type[ServiceError]) -> str:
        try:
            return response.text
        except ValueError as e:
            raise error_cls(f"Response contained no text: {e}", retryable=False) from e

    def get_statistics(self) -> Dict[str, Any]:
        total = self._stats["total_requests"]
        return {
            **self._stats,
            "average_generation_time": self._stats["total_generation_time"] / total if total else 0,
            "error_rate": self._stats["errors"] / total if total else 0,
        }


class GeminiGenerationProvider(_GeminiClient, GenerationProvider):
    """Gemini-backed planner, character portrait and page illustration generator"""

    error_cls = ProviderError

    def __init__(self, api_key: str, config: AppConfig):
        super().__init__(api_key, config)
        self._planning_model = self._model(self._api_config.planning_model)
        self._image_model = self._model(self._api_config.image_model, safety_settings=SAFETY_SETTINGS)
        logger.info(
            f"Initialized Gemini provider (planning={self._api_config.planning_model}, "
            f"image={self._api_config.image_model})"
        )

    async def generate_plan(self, request: PlanRequest) -> PlanResponse:
        """Request a structured plan, re-asking when the response cannot be parsed"""
        settings = BookSettings(
            target_age=request.target_age,
            page_count=request.page_count,
            intensity=request.intensity,
            style=request.style,
            notes=request.notes,
            language=request.language,
            quality_tier=request.quality_tier,
        )
        prompt = build_plan_prompt(
            request.source_text, settings, self.config.pipeline.max_source_chars
        )

        attempts = self._api_config.plan_parse_attempts
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            response = await self._generate(self._planning_model, [prompt], "Plan request")
            try:
                parsed = parse_plan_response(
                    extract_json_object(self._response_text(response, ProviderError))
                )
            except ResponseFormatError as e:
                last_error = e
                logger.warning(f"Unparseable plan (attempt {attempt + 1}/{attempts}): {e}")
                continue

            style_guide = create_style_guide(request.style, request.target_age, request.quality_tier)
            return PlanResponse(
                page_specs=parsed["page_specs"],
                character_specs=parsed["character_specs"],
                theme=parsed["theme"],
                style_guide=style_guide,
                title=parsed["title"],
                story_arc=parsed["story_arc"],
            )

        raise ProviderError(f"Could not parse plan after {attempts} attempts: {last_error}")

    async def generate_character_image(self, request: CharacterImageRequest) -> CharacterImageResponse:
        prompt = build_character_prompt(
            request.name, request.description, request.role, request.style_guide, request.feedback
        )
        response = await self._generate(self._image_model, [prompt], f"Character '{request.name}'")
        return CharacterImageResponse(image_ref=extract_image_ref(response))

    async def generate_page_image(self, request: PageImageRequest) -> PageImageResponse:
        prompt = build_page_prompt(
            request.brief,
            request.camera_angle,
            request.style_guide,
            [ref.name for ref in request.character_refs],
            len(request.previous_page_refs),
            request.fix_instruction,
        )
        prompt += f"\nASPECT RATIO: {request.aspect_ratio}"

        parts: List[Any] = [prompt]
        for ref in request.character_refs:
            parts.append(f"[CHARACTER REFERENCE: {ref.name}]")
            parts.append(image_part(ref.image_ref))
        for position, page_ref in enumerate(request.previous_page_refs, start=1):
            parts.append(f"[PREVIOUS PAGE {position}]")
            parts.append(image_part(page_ref))

        response = await self._generate(self._image_model, parts, "Page illustration")
        return PageImageResponse(
            image_ref=extract_image_ref(response),
            warnings=extract_safety_warnings(response),
        )


class GeminiConsistencyAnalyzer(_GeminiClient, ConsistencyAnalyzer):
    """Gemini-backed visual consistency reviewer"""

    error_cls = AnalyzerError

    def __init__(self, api_key: str, config: AppConfig):
        super().__init__(api_key, config)
        self._analysis_model = self._model(self._api_config.analysis_model)
        logger.info(f"Initialized Gemini analyzer (model={self._api_config.analysis_model})")

    async def analyze(self, request: AnalysisRequest) -> ConsistencyAnalysis:
        if not request.page_images:
            return ConsistencyAnalysis()

        prompt = build_consistency_prompt(
            request.character_descriptions, len(request.page_images), request.style_guide
        )
        parts: List[Any] = [prompt]
        for ref in request.character_refs:
            parts.append(f"[CHARACTER REFERENCE: {ref.name}]")
            parts.append(image_part(ref.image_ref))
        for page in request.page_images:
            parts.append(f"[PAGE {page.index + 1}]")
            parts.append(image_part(page.image_ref))

        response = await self._generate(self._analysis_model, parts, "Consistency analysis")
        try:
            data = extract_json_object(self._response_text(response, AnalyzerError))
        except ResponseFormatError as e:
            raise AnalyzerError(f"Unparseable consistency analysis: {e}", retryable=False) from e

        parsed = parse_consistency_response(data, [page.index + 1 for page in request.page_images])
        logger.info(
            f"Consistency analysis complete: {len(parsed['issues'])} issues, "
            f"{len(parsed['pages_needing_regeneration'])} pages to regenerate"
        )
        return ConsistencyAnalysis(
            issues=parsed["issues"],
            pages_needing_regeneration=parsed["pages_needing_regeneration"],
        )
