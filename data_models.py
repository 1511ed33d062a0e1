"""
Data models for the Storybook Pipeline.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunPhase(Enum):
    """Phases of a storybook generation run"""
    IDLE = "idle"
    PLANNING = "planning"
    CHARACTERS_GENERATING = "characters_generating"
    PAGES_GENERATING = "pages_generating"
    CONSISTENCY_CHECKING = "consistency_checking"
    COMPLETE = "complete"
    ERROR = "error"


class UnitStatus(Enum):
    """Status of a single character or page"""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class CharacterRole(Enum):
    MAIN = "main"
    SUPPORTING = "supporting"
    BACKGROUND = "background"

    @classmethod
    def parse(cls, value: Any, position: int = 0) -> "CharacterRole":
        """Parse a role string, falling back on roster position"""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if position < 2:
                return cls.MAIN
            if position < 5:
                return cls.SUPPORTING
            return cls.BACKGROUND


class IssueKind(Enum):
    CHARACTER_MISMATCH = "character_appearance"
    TIMELINE = "timeline_logic"
    STYLE_DRIFT = "style_drift"
    OBJECT_CONTINUITY = "object_continuity"
    INTRA_SCENE = "intra_scene_consistency"

    @classmethod
    def parse(cls, value: Any) -> "IssueKind":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CHARACTER_MISMATCH


class QualityTier(Enum):
    STANDARD_FLASH = "standard-flash"
    PREMIUM_2K = "premium-2k"
    PREMIUM_4K = "premium-4k"


CAMERA_ANGLES = (
    "wide shot", "medium shot", "close-up", "aerial",
    "worm's eye", "dutch angle", "over shoulder", "point of view",
)

ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")


@dataclass
class BookSettings:
    """User-chosen settings for one storybook run"""
    target_age: int = 6
    page_count: int = 10
    intensity: int = 5
    style: str = "whimsical watercolor"
    notes: str = ""
    quality_tier: QualityTier = QualityTier.STANDARD_FLASH
    aspect_ratio: str = "1:1"
    language: str = "en"
    character_consistency: bool = True
    consistency_check: bool = True
    consistency_max_retries: int = 3

    def __post_init__(self):
        """Validate settings values"""
        if isinstance(self.quality_tier, str):
            self.quality_tier = QualityTier(self.quality_tier)
        if not 3 <= self.target_age <= 18:
            raise ValueError(f"target_age must be between 3 and 18, got {self.target_age}")
        if self.page_count < 1:
            raise ValueError(f"page_count must be positive, got {self.page_count}")
        if not 0 <= self.intensity <= 10:
            raise ValueError(f"intensity must be between 0 and 10, got {self.intensity}")
        if not self.style.strip():
            raise ValueError("style cannot be empty")
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {ASPECT_RATIOS}, got {self.aspect_ratio}")
        if self.consistency_max_retries < 1:
            raise ValueError(
                f"consistency_max_retries must be at least 1, got {self.consistency_max_retries}"
            )

    @property
    def effective_intensity(self) -> int:
        """Intensity capped for younger readers"""
        if self.target_age <= 5:
            return min(self.intensity, 5)
        if self.target_age <= 8:
            return min(self.intensity, 7)
        return self.intensity

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["quality_tier"] = self.quality_tier.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookSettings":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class StyleGuide:
    """Visual ruleset applied to every generation request"""
    art_style: str
    color_palette: str = ""
    lighting: str = ""
    composition: str = ""
    do_nots: tuple = ()
    resolution_quality: str = ""

    def to_prompt(self) -> str:
        lines = [f"Art style: {self.art_style}"]
        if self.color_palette:
            lines.append(f"Color palette: {self.color_palette}")
        if self.lighting:
            lines.append(f"Lighting: {self.lighting}")
        if self.composition:
            lines.append(f"Composition: {self.composition}")
        if self.resolution_quality:
            lines.append(f"Quality: {self.resolution_quality}")
        if self.do_nots:
            lines.append("Avoid: " + ", ".join(self.do_nots))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["do_nots"] = list(self.do_nots)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StyleGuide":
        return cls(
            art_style=str(data.get("art_style", "")),
            color_palette=str(data.get("color_palette", "")),
            lighting=str(data.get("lighting", "")),
            composition=str(data.get("composition", "")),
            do_nots=tuple(data.get("do_nots", ())),
            resolution_quality=str(data.get("resolution_quality", "")),
        )


@dataclass(frozen=True)
class PageSpec:
    """Planned content of one page"""
    ordinal: int
    caption: str
    illustration_brief: str
    camera_angle: str = "medium shot"


@dataclass(frozen=True)
class CharacterSpec:
    """Planned character"""
    name: str
    description: str
    role: CharacterRole = CharacterRole.SUPPORTING
    display_description: str = ""
    approximate_age: str = ""


@dataclass(frozen=True)
class Plan:
    """Structured page/character breakdown; immutable once produced"""
    page_specs: tuple
    character_specs: tuple
    theme: str
    style_guide: StyleGuide
    title: str = ""
    story_arc: tuple = ()
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "title": self.title,
            "theme": self.theme,
            "story_arc": list(self.story_arc),
            "style_guide": self.style_guide.to_dict(),
            "page_specs": [asdict(spec) for spec in self.page_specs],
            "character_specs": [
                {**asdict(spec), "role": spec.role.value} for spec in self.character_specs
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            plan_id=data.get("plan_id") or uuid.uuid4().hex,
            title=data.get("title", ""),
            theme=data.get("theme", ""),
            story_arc=tuple(data.get("story_arc", ())),
            style_guide=StyleGuide.from_dict(data.get("style_guide", {})),
            page_specs=tuple(PageSpec(**spec) for spec in data.get("page_specs", [])),
            character_specs=tuple(
                CharacterSpec(**{**spec, "role": CharacterRole(spec.get("role", "supporting"))})
                for spec in data.get("character_specs", [])
            ),
        )


@dataclass
class Character:
    """A character and its reference image"""
    id: str
    name: str
    description: str
    role: CharacterRole = CharacterRole.SUPPORTING
    display_description: str = ""
    reference_image: Optional[str] = None
    status: UnitStatus = UnitStatus.PENDING
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: CharacterSpec, character_id: Optional[str] = None) -> "Character":
        return cls(
            id=character_id or uuid.uuid4().hex,
            name=spec.name,
            description=spec.description,
            role=spec.role,
            display_description=spec.display_description,
        )

    @property
    def is_ready(self) -> bool:
        return self.status == UnitStatus.READY and self.reference_image is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            role=CharacterRole(data.get("role", "supporting")),
            display_description=data.get("display_description", ""),
            reference_image=data.get("reference_image"),
            status=UnitStatus(data.get("status", "pending")),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class Page:
    """One page of the book; only image_ref, status and warnings change after creation"""
    index: int
    caption: str
    illustration_brief: str
    camera_angle: str = "medium shot"
    image_ref: Optional[str] = None
    status: UnitStatus = UnitStatus.PENDING
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_spec(cls, index: int, spec: PageSpec) -> "Page":
        return cls(
            index=index,
            caption=spec.caption,
            illustration_brief=spec.illustration_brief,
            camera_angle=spec.camera_angle,
        )

    @property
    def is_ready(self) -> bool:
        return self.status == UnitStatus.READY and self.image_ref is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Page":
        return cls(
            index=int(data["index"]),
            caption=data.get("caption", ""),
            illustration_brief=data.get("illustration_brief", ""),
            camera_angle=data.get("camera_angle", "medium shot"),
            image_ref=data.get("image_ref"),
            status=UnitStatus(data.get("status", "pending")),
            warnings=list(data.get("warnings", [])),
        )


@dataclass(frozen=True)
class ConsistencyIssue:
    """A detected deviation between a page and the established baseline"""
    page_index: int
    kind: IssueKind
    description: str
    fix_instruction: str
    character: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class ConsistencyAnalysis:
    """Analyzer verdict over a page set"""
    issues: List[ConsistencyIssue] = field(default_factory=list)
    pages_needing_regeneration: List[int] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.pages_needing_regeneration

    def fix_instruction_for(self, page_index: int) -> str:
        """Combined fix instructions for one page, in reported order"""
        instructions = [
            issue.fix_instruction for issue in self.issues
            if issue.page_index == page_index and issue.fix_instruction
        ]
        if not instructions:
            return "Ensure visual consistency with page 1 and the character references"
        return "\n".join(f"- {text}" for text in instructions)


@dataclass
class RunState:
    """Accumulated state of one storybook run; owned by the orchestrator"""
    story_id: str
    phase: RunPhase = RunPhase.IDLE
    source_text: str = ""
    settings: Optional[BookSettings] = None
    plan: Optional[Plan] = None
    characters: Dict[str, Character] = field(default_factory=dict)
    pages: Dict[int, Page] = field(default_factory=dict)
    issues: List[ConsistencyIssue] = field(default_factory=list)
    cancel_requested: bool = False
    progress: float = 0.0
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def character_list(self) -> List[Character]:
        return list(self.characters.values())

    @property
    def page_list(self) -> List[Page]:
        return [self.pages[index] for index in sorted(self.pages)]

    @property
    def ready_characters(self) -> List[Character]:
        return [c for c in self.characters.values() if c.is_ready]

    @property
    def duration(self) -> Optional[float]:
        """Run duration in seconds"""
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def count_pages(self, status: UnitStatus) -> int:
        return sum(1 for page in self.pages.values() if page.status == status)

    def count_characters(self, status: UnitStatus) -> int:
        return sum(1 for character in self.characters.values() if character.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "story_id": self.story_id,
            "phase": self.phase.value,
            "source_text": self.source_text,
            "settings": self.settings.to_dict() if self.settings else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "characters": [c.to_dict() for c in self.characters.values()],
            "pages": [p.to_dict() for p in self.page_list],
            "issues": [i.to_dict() for i in self.issues],
            "cancel_requested": self.cancel_requested,
            "progress": self.progress,
            "error": self.error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        state = cls(
            story_id=data["story_id"],
            phase=RunPhase(data.get("phase", "idle")),
            source_text=data.get("source_text", ""),
            settings=BookSettings.from_dict(data["settings"]) if data.get("settings") else None,
            plan=Plan.from_dict(data["plan"]) if data.get("plan") else None,
            cancel_requested=bool(data.get("cancel_requested", False)),
            progress=float(data.get("progress", 0.0)),
            error=data.get("error"),
        )
        for entry in data.get("characters", []):
            character = Character.from_dict(entry)
            state.characters[character.id] = character
        for entry in data.get("pages", []):
            page = Page.from_dict(entry)
            state.pages[page.index] = page
        for entry in data.get("issues", []):
            state.issues.append(ConsistencyIssue(
                page_index=int(entry["page_index"]),
                kind=IssueKind.parse(entry.get("kind")),
                description=entry.get("description", ""),
                fix_instruction=entry.get("fix_instruction", ""),
                character=entry.get("character"),
            ))
        if data.get("start_time"):
            state.start_time = datetime.fromisoformat(data["start_time"])
        if data.get("end_time"):
            state.end_time = datetime.fromisoformat(data["end_time"])
        return state
