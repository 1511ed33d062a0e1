"""
The four generation stages of a storybook run.

Stages read the run state they are handed but never mutate it directly: every
change is reported as a per-entity update through the ``apply`` callback owned
by the orchestrator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set

from config_manager import AppConfig
from data_models import (
    BookSettings,
    Character,
    ConsistencyIssue,
    Plan,
    RunState,
    StyleGuide,
    UnitStatus,
)
from gemini_service import (
    AnalysisRequest,
    CharacterImageRequest,
    CharacterReference,
    ConsistencyAnalyzer,
    GenerationProvider,
    PageImage,
    PageImageRequest,
    PlanRequest,
)
from retry_utils import retry_with_backoff

logger = logging.getLogger(__name__)

PAGE_FAILURE_WARNING = "Generation failed — click to retry"
CHARACTER_FAILURE_WARNING = "Reference image failed — reroll to try again"


class PlanningError(Exception):
    """Raised when no usable plan can be produced; fatal to the run"""
    pass


class GenerationCancelled(Exception):
    """Cooperative stop requested by the caller; not a failure"""
    retryable = False


class CancellationToken:
    """
    Two-level cancellation: a flag checked between units of work, and
    cancellation of whatever provider call is currently in flight.
    """

    def __init__(self):
        self._requested = False
        self._inflight: Set[asyncio.Future] = set()

    @property
    def requested(self) -> bool:
        return self._requested

    def cancel(self) -> None:
        self._requested = True
        for task in list(self._inflight):
            task.cancel()

    def reset(self) -> None:
        self._requested = False

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` so that ``cancel()`` aborts it mid-flight"""
        if self._requested:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise GenerationCancelled("Generation cancelled")

        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._requested and task.cancelled():
                raise GenerationCancelled("Generation cancelled") from None
            raise
        finally:
            self._inflight.discard(task)

    async def sleep(self, delay: float) -> None:
        await self.run(asyncio.sleep(delay))


@dataclass
class CharacterUpdate:
    """Delta for one character; ``None`` fields are left unchanged"""
    character_id: str
    status: Optional[UnitStatus] = None
    reference_image: Optional[str] = None
    warnings: Optional[List[str]] = None

    def apply_to(self, character: Character) -> None:
        if self.status is not None:
            character.status = self.status
        if self.reference_image is not None:
            character.reference_image = self.reference_image
        if self.warnings is not None:
            character.warnings = list(self.warnings)


@dataclass
class PageUpdate:
    """Delta for one page; ``None`` fields are left unchanged"""
    index: int
    status: Optional[UnitStatus] = None
    image_ref: Optional[str] = None
    warnings: Optional[List[str]] = None

    def apply_to(self, page) -> None:
        if self.status is not None:
            page.status = self.status
        if self.image_ref is not None:
            page.image_ref = self.image_ref
        if self.warnings is not None:
            page.warnings = list(self.warnings)


ApplyCharacter = Callable[[CharacterUpdate], Awaitable[None]]
ApplyPage = Callable[[PageUpdate], Awaitable[None]]
RecordIssues = Callable[[List[ConsistencyIssue]], Awaitable[None]]
UnitLock = Callable[[str], asyncio.Lock]


class _Stage:
    def __init__(self, config: AppConfig):
        self.config = config

    async def _call(self, fn: Callable[[], Awaitable[Any]], token: CancellationToken, label: str) -> Any:
        return await retry_with_backoff(
            lambda: token.run(fn()),
            self.config.api.max_retries,
            self.config.api.retry_delay,
            sleep=token.sleep,
            label=label,
        )


class PlanStage(_Stage):
    """Source text + settings -> page breakdown, character roster, style guide"""

    def __init__(self, provider: GenerationProvider, config: AppConfig):
        super().__init__(config)
        self.provider = provider

    async def run(self, source_text: str, settings: BookSettings, token: CancellationToken) -> Plan:
        request = PlanRequest(
            source_text=source_text,
            target_age=settings.target_age,
            page_count=settings.page_count,
            intensity=settings.effective_intensity,
            style=settings.style,
            notes=settings.notes,
            language=settings.language,
            quality_tier=settings.quality_tier,
        )
        logger.info(f"Planning {settings.page_count} pages ({len(source_text)} chars of source text)")

        try:
            response = await self._call(
                lambda: self.provider.generate_plan(request), token, "Plan request"
            )
        except GenerationCancelled:
            raise
        except Exception as e:
            logger.error(f"Planning failed: {e}")
            raise PlanningError(f"Could not produce a plan: {e}") from e

        if not response.page_specs:
            raise PlanningError("Plan contains no pages")

        if len(response.page_specs) != settings.page_count:
            logger.warning(
                f"Page count mismatch: requested {settings.page_count}, "
                f"planner returned {len(response.page_specs)}; continuing with returned pages"
            )

        return Plan(
            page_specs=tuple(response.page_specs),
            character_specs=tuple(response.character_specs),
            theme=response.theme,
            style_guide=response.style_guide,
            title=response.title,
            story_arc=tuple(response.story_arc),
        )


class CharacterStage(_Stage):
    """Sequentially generates one reference image per character"""

    def __init__(self, provider: GenerationProvider, config: AppConfig):
        super().__init__(config)
        self.provider = provider

    async def run(self, state: RunState, token: CancellationToken, apply: ApplyCharacter,
                  unit_lock: Optional[UnitLock] = None) -> None:
        """
        Generate every pending character in roster order.

        ``unit_lock`` maps a character id to the lock a concurrent reroll holds;
        each character is generated under it and skipped if a reroll already
        settled it.
        """
        unit_lock = unit_lock or (lambda character_id: asyncio.Lock())
        pending = [c for c in state.character_list if c.status == UnitStatus.PENDING]
        logger.info(f"Generating {len(pending)} character reference(s)")

        for character in pending:
            if token.requested:
                logger.info("Cancellation requested, stopping character generation")
                return
            async with unit_lock(character.id):
                if character.status != UnitStatus.PENDING:
                    logger.info(f"Character '{character.name}' already {character.status.value}, skipping")
                    continue
                try:
                    await self.generate_one(character, state.plan.style_guide, token, apply)
                except GenerationCancelled:
                    logger.info(f"Character '{character.name}' aborted by cancellation")
                    return

    async def generate_one(self, character: Character, style_guide: StyleGuide,
                           token: CancellationToken, apply: ApplyCharacter,
                           feedback: Optional[str] = None) -> UnitStatus:
        """Generate (or re-roll) one character; failures become a FAILED status"""
        await apply(CharacterUpdate(character.id, status=UnitStatus.PENDING, warnings=[]))

        request = CharacterImageRequest(
            name=character.name,
            description=character.description,
            role=character.role,
            style_guide=style_guide,
            feedback=feedback,
        )
        try:
            response = await self._call(
                lambda: self.provider.generate_character_image(request),
                token,
                f"Character '{character.name}'",
            )
        except GenerationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Character '{character.name}' failed: {e}")
            await apply(CharacterUpdate(
                character.id,
                status=UnitStatus.FAILED,
                warnings=[CHARACTER_FAILURE_WARNING, f"Reason: {e}"],
            ))
            return UnitStatus.FAILED

        await apply(CharacterUpdate(
            character.id, status=UnitStatus.READY, reference_image=response.image_ref
        ))
        logger.info(f"Character '{character.name}' ready")
        return UnitStatus.READY


def previous_page_refs(state: RunState, index: int, limit: int = 2) -> List[str]:
    """Images of the last ``limit`` successfully generated pages before ``index``"""
    if limit <= 0:
        return []
    earlier = [p for p in state.page_list if p.index < index and p.is_ready]
    return [p.image_ref for p in earlier[-limit:]]


class PageStage(_Stage):
    """Sequentially illustrates pages, each using its predecessors for continuity"""

    def __init__(self, provider: GenerationProvider, config: AppConfig):
        super().__init__(config)
        self.provider = provider

    def first_pending_index(self, state: RunState) -> Optional[int]:
        for page in state.page_list:
            if page.status == UnitStatus.PENDING:
                return page.index
        return None

    async def run(self, state: RunState, token: CancellationToken, apply: ApplyPage) -> bool:
        """Returns ``False`` if the loop was stopped by cancellation"""
        start = self.first_pending_index(state)
        if start is None:
            logger.info("All pages already generated")
            return not token.requested

        for page in state.page_list:
            if page.index < start:
                continue
            if token.requested:
                logger.info(f"Cancellation requested before page {page.index + 1}")
                return False
            if page.is_ready:
                continue
            try:
                await self.generate_one(state, page.index, token, apply)
            except GenerationCancelled:
                logger.info(f"Page {page.index + 1} aborted by cancellation")
                return False

        return True

    def build_request(self, state: RunState, index: int,
                      fix_instruction: Optional[str] = None) -> PageImageRequest:
        page = state.pages[index]
        settings = state.settings
        context = self.config.pipeline.previous_page_context
        if settings is not None and not settings.character_consistency:
            context = 0

        return PageImageRequest(
            brief=page.illustration_brief,
            camera_angle=page.camera_angle,
            style_guide=state.plan.style_guide,
            character_refs=[
                CharacterReference(name=c.name, image_ref=c.reference_image)
                for c in state.ready_characters
            ],
            previous_page_refs=previous_page_refs(state, index, context),
            fix_instruction=fix_instruction,
            aspect_ratio=settings.aspect_ratio if settings else "1:1",
        )

    async def generate_one(self, state: RunState, index: int, token: CancellationToken,
                           apply: ApplyPage, fix_instruction: Optional[str] = None,
                           repair: bool = False) -> bool:
        """
        Illustrate one page. Returns ``True`` on success.

        A failed repair (``repair=True``) keeps the page's existing image and only
        adds a warning; any other failure marks the page FAILED. Cancellation
        propagates as ``GenerationCancelled`` and leaves the page untouched.
        """
        page = state.pages[index]
        request = self.build_request(state, index, fix_instruction)
        try:
            response = await self._call(
                lambda: self.provider.generate_page_image(request),
                token,
                f"Page {index + 1}",
            )
        except GenerationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Page {index + 1} failed: {e}")
            if repair and page.is_ready:
                await apply(PageUpdate(
                    index, warnings=page.warnings + [f"Consistency fix failed ({e})"]
                ))
            else:
                await apply(PageUpdate(
                    index,
                    status=UnitStatus.FAILED,
                    warnings=[PAGE_FAILURE_WARNING, f"Reason: {e}"],
                ))
            return False

        await apply(PageUpdate(
            index,
            status=UnitStatus.READY,
            image_ref=response.image_ref,
            warnings=list(response.warnings),
        ))
        logger.info(f"Page {index + 1} ready{' (repaired)' if repair else ''}")
        return True


@dataclass
class ConsistencyOutcome:
    analyses: int = 0
    clean: bool = False
    abandoned: bool = False
    skipped: bool = False
    regenerated: List[int] = field(default_factory=list)


class ConsistencyStage(_Stage):
    """Bounded analyze -> repair loop over the generated pages"""

    def __init__(self, analyzer: ConsistencyAnalyzer, page_stage: PageStage, config: AppConfig):
        super().__init__(config)
        self.analyzer = analyzer
        self.page_stage = page_stage

    def build_request(self, state: RunState) -> AnalysisRequest:
        ready = state.ready_characters
        return AnalysisRequest(
            character_descriptions=[
                f"{c.name} ({c.role.value}): {c.description}" for c in state.character_list
            ],
            page_images=[
                PageImage(index=p.index, image_ref=p.image_ref)
                for p in state.page_list if p.is_ready
            ],
            style_guide=state.plan.style_guide if state.plan else None,
            character_refs=[CharacterReference(name=c.name, image_ref=c.reference_image) for c in ready],
        )

    async def run(self, state: RunState, token: CancellationToken, apply: ApplyPage,
                  record_issues: RecordIssues) -> ConsistencyOutcome:
        outcome = ConsistencyOutcome()
        settings = state.settings
        if not self.config.pipeline.consistency_check or (settings and not settings.consistency_check):
            logger.info("Consistency check disabled")
            outcome.skipped = True
            return outcome

        max_retries = settings.consistency_max_retries if settings else self.config.pipeline.consistency_max_retries

        async def analyze_once(request: AnalysisRequest):
            outcome.analyses += 1
            return await token.run(self.analyzer.analyze(request))

        while outcome.analyses < max_retries:
            if token.requested:
                return outcome

            # Rebuilt every pass so earlier fixes are visible to the analyzer
            request = self.build_request(state)
            if not request.page_images:
                logger.info("No illustrated pages to analyze")
                outcome.clean = True
                return outcome

            try:
                analysis = await retry_with_backoff(
                    lambda: analyze_once(request),
                    max_retries - outcome.analyses,
                    self.config.api.retry_delay,
                    sleep=token.sleep,
                    label="Consistency analysis",
                )
            except GenerationCancelled:
                return outcome
            except Exception as e:
                logger.warning(f"Consistency analysis abandoned: {e}")
                outcome.abandoned = True
                return outcome

            await record_issues(analysis.issues)

            if analysis.is_clean:
                logger.info(f"Consistency check clean after {outcome.analyses} analysis call(s)")
                outcome.clean = True
                return outcome

            logger.info(f"Regenerating flagged pages: {[i + 1 for i in analysis.pages_needing_regeneration]}")
            for index in analysis.pages_needing_regeneration:
                if index not in state.pages:
                    logger.warning(f"Analyzer flagged unknown page index {index}")
                    continue
                if token.requested:
                    return outcome
                try:
                    fixed = await self.page_stage.generate_one(
                        state, index, token, apply,
                        fix_instruction=analysis.fix_instruction_for(index),
                        repair=True,
                    )
                except GenerationCancelled:
                    return outcome
                if fixed:
                    outcome.regenerated.append(index)

        logger.info(f"Consistency loop reached its bound of {max_retries} analysis call(s)")
        return outcome
