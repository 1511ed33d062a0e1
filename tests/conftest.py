"""
Shared fixtures and in-process fakes for the pipeline tests.
"""

from typing import Awaitable, Callable, Dict, List, Optional

import pytest

from config_manager import ApiConfig, AppConfig, PipelineConfig, StorageConfig
from data_models import (
    BookSettings,
    CharacterRole,
    CharacterSpec,
    ConsistencyAnalysis,
    ConsistencyIssue,
    IssueKind,
    PageSpec,
    StyleGuide,
)
from gemini_service import (
    AnalysisRequest,
    CharacterImageRequest,
    CharacterImageResponse,
    ConsistencyAnalyzer,
    GenerationProvider,
    PageImageRequest,
    PageImageResponse,
    PlanRequest,
    PlanResponse,
)
from storage import InMemoryRunStore
from workflow_manager import SingleFlightGuard, StorybookOrchestrator

SOURCE_TEXT = (
    "Mila the mouse lived under the old mill. One morning she found a map "
    "drawn on a leaf and set off with her friend Oskar the fox to follow it."
)


def brief_for(index: int) -> str:
    return f"brief {index + 1}"


class FakeProvider(GenerationProvider):
    """Deterministic provider; failures and hooks are configured per test"""

    def __init__(self, page_count: int = 5, characters=("Mila", "Oskar")):
        self.page_count = page_count
        self.characters = list(characters)
        self.plan_calls: List[PlanRequest] = []
        self.character_calls: List[CharacterImageRequest] = []
        self.page_calls: List[PageImageRequest] = []
        self.plan_errors: List[Exception] = []
        self.character_errors: Dict[str, List[Exception]] = {}
        self.page_errors: Dict[str, List[Exception]] = {}
        self.on_plan: Optional[Callable[[PlanRequest], Awaitable[None]]] = None
        self.on_character: Optional[Callable[[CharacterImageRequest], Awaitable[None]]] = None
        self.on_page: Optional[Callable[[PageImageRequest], Awaitable[None]]] = None

    async def generate_plan(self, request: PlanRequest) -> PlanResponse:
        self.plan_calls.append(request)
        if self.on_plan:
            await self.on_plan(request)
        if self.plan_errors:
            raise self.plan_errors.pop(0)
        version = len(self.plan_calls)
        return PlanResponse(
            page_specs=[
                PageSpec(ordinal=i + 1, caption=f"Caption {i + 1}.", illustration_brief=brief_for(i))
                for i in range(self.page_count)
            ],
            character_specs=[
                CharacterSpec(name=name, description=f"{name}, plan v{version}", role=CharacterRole.MAIN)
                for name in self.characters
            ],
            theme="friendship",
            style_guide=StyleGuide(art_style=request.style),
            title=f"The Leaf Map v{version}",
            story_arc=["a", "b", "c", "d", "e"],
        )

    async def generate_character_image(self, request: CharacterImageRequest) -> CharacterImageResponse:
        self.character_calls.append(request)
        if self.on_character:
            await self.on_character(request)
        errors = self.character_errors.get(request.name)
        if errors:
            raise errors.pop(0)
        return CharacterImageResponse(image_ref=f"char:{request.name}:{len(self.character_calls)}")

    async def generate_page_image(self, request: PageImageRequest) -> PageImageResponse:
        self.page_calls.append(request)
        if self.on_page:
            await self.on_page(request)
        errors = self.page_errors.get(request.brief)
        if errors:
            raise errors.pop(0)
        return PageImageResponse(image_ref=f"page:{request.brief}:{len(self.page_calls)}")

    def page_call_briefs(self) -> List[str]:
        return [call.brief for call in self.page_calls]


class ScriptedAnalyzer(ConsistencyAnalyzer):
    """Returns queued analyses (or raises queued errors), then clean results"""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls: List[AnalysisRequest] = []

    async def analyze(self, request: AnalysisRequest) -> ConsistencyAnalysis:
        self.calls.append(request)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ConsistencyAnalysis()


def flagged(*indexes: int) -> ConsistencyAnalysis:
    """Analysis flagging the given 0-based page indexes"""
    return ConsistencyAnalysis(
        issues=[
            ConsistencyIssue(
                page_index=i,
                kind=IssueKind.CHARACTER_MISMATCH,
                description=f"Mila's scarf changed color on page {i + 1}",
                fix_instruction="Mila wears a red scarf",
                character="Mila",
            )
            for i in indexes
        ],
        pages_needing_regeneration=list(indexes),
    )


@pytest.fixture
def app_config():
    return AppConfig(
        api=ApiConfig(max_retries=3, retry_delay=0.0),
        pipeline=PipelineConfig(consistency_max_retries=3),
        storage=StorageConfig(backend="memory"),
    )


@pytest.fixture
def settings():
    return BookSettings(target_age=6, page_count=5, style="soft watercolor")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def analyzer():
    return ScriptedAnalyzer()


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def guard():
    return SingleFlightGuard()


@pytest.fixture
def orchestrator(provider, analyzer, store, app_config, guard):
    return StorybookOrchestrator(
        provider=provider,
        analyzer=analyzer,
        store=store,
        config=app_config,
        story_id="story-1",
        guard=guard,
    )
