"""
Prompt construction and response parsing for the Gemini-backed clients.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from data_models import (
    CAMERA_ANGLES,
    BookSettings,
    CharacterRole,
    CharacterSpec,
    ConsistencyIssue,
    IssueKind,
    PageSpec,
    QualityTier,
    StyleGuide,
)
from localization import get_caption_instruction

logger = logging.getLogger(__name__)

CONTEXT_SIZE = 4000
OMISSION_MARKER = "\n\n[... middle sections omitted for length ...]\n\n"

DEFAULT_DO_NOTS = (
    "scary elements",
    "violent imagery",
    "adult themes",
    "photorealistic people (use stylized illustrations)",
    "any text, captions, titles, or typography within the image",
    "speech bubbles or word balloons",
)

RESOLUTION_NOTES = {
    QualityTier.STANDARD_FLASH: "Standard 1K quality suitable for digital viewing",
    QualityTier.PREMIUM_2K: "High resolution 2K quality suitable for digital and standard print",
    QualityTier.PREMIUM_4K: "Ultra-high resolution 4K quality suitable for professional print publication",
}

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ResponseFormatError(ValueError):
    """Raised when a model response does not contain the expected JSON"""


# Style guide

def _pick(style: str, table: Sequence[tuple], default: str) -> str:
    for keywords, value in table:
        if any(keyword in style for keyword in keywords):
            return value
    return default


def create_style_guide(style: str, target_age: Optional[int] = None,
                       quality_tier: QualityTier = QualityTier.STANDARD_FLASH) -> StyleGuide:
    """Derive a style guide from the free-text aesthetic"""
    lowered = style.lower()

    palette = _pick(lowered, [
        (("pastel", "soft"), "soft pastel tones with gentle contrast"),
        (("vibrant", "bright", "bold"), "saturated primary colors with clean contrast"),
        (("autumn", "warm"), "warm ambers, ochres and russet reds"),
        (("night", "moon", "dark"), "deep blues and violets with warm highlights"),
    ], "harmonious, child-friendly palette kept identical on every page")

    lighting = _pick(lowered, [
        (("golden hour", "sunset"), "warm golden hour light with long soft shadows"),
        (("morning", "dawn"), "fresh, cool morning light"),
        (("magical", "fantasy"), "ethereal light with subtle glows"),
        (("soft", "gentle"), "soft diffused light with gentle shadows"),
    ], "bright, even lighting")

    composition = "child-friendly perspective, clear focal point, full-bleed illustration"
    if target_age is not None and target_age <= 5:
        composition += ", simple uncluttered backgrounds"
    elif target_age is not None and target_age >= 9:
        composition += ", rich detailed backgrounds"

    return StyleGuide(
        art_style=style.strip(),
        color_palette=palette,
        lighting=lighting,
        composition=composition,
        do_nots=DEFAULT_DO_NOTS,
        resolution_quality=RESOLUTION_NOTES.get(quality_tier, ""),
    )


# Planning

def condense_source_text(text: str, max_chars: int = 15000) -> str:
    """Keep the beginning and ending of overly long source text"""
    if len(text) <= max_chars:
        return text
    if len(text) > CONTEXT_SIZE * 2:
        return text[:CONTEXT_SIZE] + OMISSION_MARKER + text[-CONTEXT_SIZE:]
    return text[:max_chars]


def _age_guidelines(age: int) -> str:
    if age <= 5:
        return "Very simple language, gentle themes, no scary elements, bright and cheerful imagery"
    if age <= 8:
        return "Simple sentences, adventure themes, mild challenges, positive outcomes"
    if age <= 12:
        return "More complex plots, character development, moral lessons, age-appropriate conflict"
    return "Advanced narratives, nuanced themes, emotional depth, mature conflict resolution"


def build_plan_prompt(source_text: str, settings: BookSettings, max_source_chars: int = 15000) -> str:
    story = condense_source_text(source_text, max_source_chars)
    angles = " | ".join(CAMERA_ANGLES)
    return f"""You are an expert children's book author and visual storyteller.
Transform the story below into a {settings.page_count}-page picture book for a {settings.target_age}-year-old reader.

CRITICAL REQUIREMENT: create exactly {settings.page_count} pages.

STORY TEXT:
{story}

CONTENT GUIDELINES:
- Age appropriateness: {_age_guidelines(settings.target_age)}
- Intensity level: {settings.effective_intensity}/10
- Visual style: {settings.style}
- Additional direction: {settings.notes or "none"}
- {get_caption_instruction(settings.language)}

VARIETY RULES:
- Never use the same camera angle on consecutive pages
- Every scene shows characters mid-action with visible emotion

Return ONLY valid JSON:
{{
  "title": "2-6 word title",
  "theme": "central theme",
  "storyArcSummary": ["Setup", "Rising Action", "Midpoint", "Climax", "Resolution"],
  "pages": [
    {{"pageNumber": 1, "caption": "story text read aloud", "prompt": "full-page illustration brief", "cameraAngle": "{angles}"}}
  ],
  "characters": [
    {{"name": "", "visualDescription": "precise visual details", "displayDescription": "story role", "approximateAge": "", "role": "main | supporting | background"}}
  ]
}}"""


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the outermost JSON object out of a model response"""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ResponseFormatError("No JSON object found in model response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ResponseFormatError(f"Malformed JSON in model response: {e}") from e
    if not isinstance(data, dict):
        raise ResponseFormatError("Model response JSON is not an object")
    return data


def _first_sentence(caption: str, max_words: int = 20) -> str:
    match = re.match(r"^[^.!?]*[.!?]", caption)
    sentence = (match.group(0) if match else caption).strip()
    words = sentence.split()
    if len(words) > max_words:
        return " ".join(words[:max_words]) + "..."
    return sentence


def _valid_story_arc(beats: Any) -> bool:
    if not isinstance(beats, list) or len(beats) != 5:
        return False
    return all(isinstance(b, str) and 10 <= len(b.split()) <= 30 for b in beats)


def fallback_story_arc(captions: Sequence[str]) -> List[str]:
    """Five beats taken from captions at 0%, 25%, 50%, 75% and the last page"""
    if not captions:
        return []
    total = len(captions)
    positions = [0, int(total * 0.25), int(total * 0.5), int(total * 0.75), total - 1]
    return [_first_sentence(captions[i]) for i in positions]


def parse_plan_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize raw planning JSON into page and character specs"""
    raw_pages = data.get("pages")
    if not isinstance(raw_pages, list) or not raw_pages:
        raise ResponseFormatError("Plan response has no pages")

    page_specs = []
    for position, entry in enumerate(raw_pages, start=1):
        if not isinstance(entry, dict):
            raise ResponseFormatError(f"Invalid page entry: {entry!r}")
        caption = str(entry.get("caption", "")).strip()
        brief = str(entry.get("prompt") or entry.get("illustrationBrief") or "").strip()
        if not caption and not brief:
            raise ResponseFormatError(f"Page {position} has neither caption nor prompt")
        angle = str(entry.get("cameraAngle") or "medium shot").strip().lower()
        page_specs.append(PageSpec(
            ordinal=position,
            caption=caption,
            illustration_brief=brief or caption,
            camera_angle=angle if angle in CAMERA_ANGLES else "medium shot",
        ))

    character_specs = []
    for position, entry in enumerate(data.get("characters") or []):
        if not isinstance(entry, dict) or not entry.get("name"):
            logger.warning(f"Skipping malformed character entry: {entry!r}")
            continue
        character_specs.append(CharacterSpec(
            name=str(entry["name"]).strip(),
            description=str(entry.get("visualDescription") or entry.get("description") or "").strip(),
            role=CharacterRole.parse(entry.get("role"), position),
            display_description=str(entry.get("displayDescription") or "").strip(),
            approximate_age=str(entry.get("approximateAge") or "").strip(),
        ))

    story_arc = data.get("storyArcSummary")
    if not _valid_story_arc(story_arc):
        story_arc = fallback_story_arc([spec.caption for spec in page_specs])

    return {
        "page_specs": page_specs,
        "character_specs": character_specs,
        "theme": str(data.get("theme") or "").strip(),
        "title": str(data.get("title") or "").strip(),
        "story_arc": list(story_arc),
        "style_guide": data.get("styleGuide"),
    }


# Characters and pages

def build_character_prompt(name: str, description: str, role: CharacterRole,
                           style_guide: StyleGuide, feedback: Optional[str] = None) -> str:
    prompt = f"""Create a character reference portrait for a children's book illustration.

CHARACTER: {name} ({role.value} character)
DESCRIPTION: {description}

STYLE GUIDE:
{style_guide.to_prompt()}

REQUIREMENTS:
- Front-facing portrait, full figure visible, plain light background
- Clear, consistent lighting suitable as a design sheet
- Child-friendly appearance
"""
    if feedback:
        prompt += f"\nREVISION FEEDBACK (apply to this version):\n{feedback.strip()}\n"
    return prompt


def build_page_prompt(brief: str, camera_angle: str, style_guide: StyleGuide,
                      character_names: Sequence[str], previous_page_count: int,
                      fix_instruction: Optional[str] = None) -> str:
    prompt = f"""Illustrate one full page of a children's picture book.

SCENE: {brief}
CAMERA ANGLE: {camera_angle}

STYLE GUIDE:
{style_guide.to_prompt()}
"""
    if character_names:
        prompt += (
            "\nCHARACTER REFERENCES: the attached portraits show "
            + ", ".join(character_names)
            + ". Match faces, hair color, clothing and proportions exactly.\n"
        )
    if previous_page_count:
        prompt += (
            f"\nCONTINUITY: the last {previous_page_count} attached page(s) precede this one. "
            "Keep character designs, palette and art style identical to them.\n"
        )
    if fix_instruction:
        prompt += f"\nCORRECTION REQUIRED:\n{fix_instruction.strip()}\n"
    prompt += "\nDo not render any text, captions or speech bubbles in the image."
    return prompt


# Consistency analysis

def build_consistency_prompt(character_descriptions: Sequence[str], page_count: int,
                             style_guide: Optional[StyleGuide]) -> str:
    characters = "\n".join(
        f"{position}. {description}" for position, description in enumerate(character_descriptions, start=1)
    ) or "(no character references)"
    style = f"\nSTYLE GUIDE:\n{style_guide.to_prompt()}\n" if style_guide else ""
    kinds = " | ".join(kind.value for kind in IssueKind)
    return f"""You are a professional children's book editor analyzing a {page_count}-page picture book for visual consistency.

CHARACTER REFERENCES:
{characters}
{style}
PAGE 1 IS THE VISUAL BASELINE. Every later page must match Page 1's depiction of each character.

CHECK FOR: character appearance (hair color above all), timeline logic, style drift,
object continuity and proportional consistency of all figures within a scene.

Return ONLY valid JSON:
{{
  "issues": [
    {{"pageNumber": 7, "type": "{kinds}", "description": "", "characterInvolved": "", "fixPrompt": "specific regeneration instruction"}}
  ],
  "pagesNeedingRegeneration": [7]
}}
If everything is consistent return {{"issues": [], "pagesNeedingRegeneration": []}}"""


def parse_consistency_response(data: Dict[str, Any], page_numbers: Sequence[int]) -> Dict[str, Any]:
    """
    Convert 1-based page numbers from the model into 0-based page indexes.

    Only pages that were actually shown to the analyzer are kept; duplicates are
    dropped while preserving the order the model flagged them in.
    """
    allowed = set(page_numbers)

    issues = []
    for entry in data.get("issues") or []:
        if not isinstance(entry, dict):
            continue
        try:
            number = int(entry.get("pageNumber"))
        except (TypeError, ValueError):
            continue
        if number not in allowed:
            continue
        issues.append(ConsistencyIssue(
            page_index=number - 1,
            kind=IssueKind.parse(entry.get("type")),
            description=str(entry.get("description", "")),
            fix_instruction=str(
                entry.get("fixPrompt") or "Ensure visual consistency with character references"
            ),
            character=str(entry["characterInvolved"]) if entry.get("characterInvolved") else None,
        ))

    flagged: List[int] = []
    for raw in data.get("pagesNeedingRegeneration") or []:
        try:
            number = int(raw)
        except (TypeError, ValueError):
            continue
        if number in allowed and number - 1 not in flagged:
            flagged.append(number - 1)

    return {"issues": issues, "pages_needing_regeneration": flagged}
