"""
Run orchestration for the Storybook Pipeline.
Owns the run state, drives the stage sequence through an explicit phase machine,
and handles cancellation, plan regeneration and per-unit retries.
"""

import asyncio
import logging
import uuid
from copy import deepcopy
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from config_manager import AppConfig
from data_models import (
    BookSettings,
    Character,
    ConsistencyIssue,
    Page,
    Plan,
    RunPhase,
    RunState,
    UnitStatus,
)
from gemini_service import ConsistencyAnalyzer, GenerationProvider
from pipeline_stages import (
    CancellationToken,
    CharacterStage,
    CharacterUpdate,
    ConsistencyStage,
    GenerationCancelled,
    PageStage,
    PageUpdate,
    PlanningError,
    PlanStage,
)
from storage import InMemoryRunStore, RunStore

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base exception for orchestration errors"""
    pass


class InvalidTransitionError(WorkflowError):
    """Raised when an operation is not allowed in the current phase"""
    def __init__(self, phase: RunPhase, event: "PhaseEvent"):
        super().__init__(f"Cannot apply '{event.value}' while in phase '{phase.value}'")
        self.phase = phase
        self.event = event


class GenerationInProgressError(WorkflowError):
    """Raised when a second generation is started for a story that already has one"""
    pass


class PreconditionError(WorkflowError):
    """Raised when an operation's prerequisites are missing (e.g. no plan yet)"""
    pass


class PhaseEvent(Enum):
    START = "start"
    PLAN_READY = "plan_ready"
    PLAN_FAILED = "plan_failed"
    PLAN_CANCELLED = "plan_cancelled"
    CHARACTERS_DONE = "characters_done"
    PAGES_DONE = "pages_done"
    PAGES_CANCELLED = "pages_cancelled"
    CONSISTENCY_DONE = "consistency_done"
    REGENERATE_PLAN = "regenerate_plan"
    RESUME = "resume"
    CRASHED = "crashed"


TRANSITIONS: Dict[tuple, RunPhase] = {
    (RunPhase.IDLE, PhaseEvent.START): RunPhase.PLANNING,
    (RunPhase.ERROR, PhaseEvent.START): RunPhase.PLANNING,
    (RunPhase.PLANNING, PhaseEvent.PLAN_READY): RunPhase.CHARACTERS_GENERATING,
    (RunPhase.PLANNING, PhaseEvent.PLAN_FAILED): RunPhase.ERROR,
    (RunPhase.PLANNING, PhaseEvent.PLAN_CANCELLED): RunPhase.IDLE,
    (RunPhase.CHARACTERS_GENERATING, PhaseEvent.CHARACTERS_DONE): RunPhase.PAGES_GENERATING,
    (RunPhase.PAGES_GENERATING, PhaseEvent.PAGES_DONE): RunPhase.CONSISTENCY_CHECKING,
    (RunPhase.PAGES_GENERATING, PhaseEvent.PAGES_CANCELLED): RunPhase.COMPLETE,
    (RunPhase.CONSISTENCY_CHECKING, PhaseEvent.CONSISTENCY_DONE): RunPhase.COMPLETE,
    (RunPhase.CHARACTERS_GENERATING, PhaseEvent.REGENERATE_PLAN): RunPhase.PLANNING,
    (RunPhase.PAGES_GENERATING, PhaseEvent.REGENERATE_PLAN): RunPhase.PLANNING,
    (RunPhase.COMPLETE, PhaseEvent.REGENERATE_PLAN): RunPhase.PLANNING,
    (RunPhase.CHARACTERS_GENERATING, PhaseEvent.RESUME): RunPhase.CHARACTERS_GENERATING,
    (RunPhase.PAGES_GENERATING, PhaseEvent.RESUME): RunPhase.PAGES_GENERATING,
    (RunPhase.CONSISTENCY_CHECKING, PhaseEvent.RESUME): RunPhase.PAGES_GENERATING,
    (RunPhase.COMPLETE, PhaseEvent.RESUME): RunPhase.PAGES_GENERATING,
    (RunPhase.CHARACTERS_GENERATING, PhaseEvent.CRASHED): RunPhase.ERROR,
    (RunPhase.PAGES_GENERATING, PhaseEvent.CRASHED): RunPhase.ERROR,
    (RunPhase.CONSISTENCY_CHECKING, PhaseEvent.CRASHED): RunPhase.ERROR,
}

# Phases in which a plan and its units exist
UNIT_PHASES = (
    RunPhase.CHARACTERS_GENERATING,
    RunPhase.PAGES_GENERATING,
    RunPhase.CONSISTENCY_CHECKING,
    RunPhase.COMPLETE,
)


class SingleFlightGuard:
    """Tracks which story ids currently have a generation run in flight"""

    def __init__(self):
        self._active: Set[str] = set()

    def acquire(self, story_id: str) -> None:
        if story_id in self._active:
            raise GenerationInProgressError(f"Generation already in progress for story {story_id}")
        self._active.add(story_id)

    def release(self, story_id: str) -> None:
        self._active.discard(story_id)

    def is_active(self, story_id: str) -> bool:
        return story_id in self._active


default_guard = SingleFlightGuard()


class StorybookOrchestrator:
    """Drives one storybook run from source text to illustrated pages"""

    def __init__(self, provider: GenerationProvider, analyzer: Optional[ConsistencyAnalyzer] = None,
                 store: Optional[RunStore] = None, config: Optional[AppConfig] = None,
                 story_id: Optional[str] = None, guard: Optional[SingleFlightGuard] = None):
        self.config = config or AppConfig()
        self.store = store or InMemoryRunStore()
        self.state = RunState(story_id=story_id or uuid.uuid4().hex)

        self._plan_stage = PlanStage(provider, self.config)
        self._character_stage = CharacterStage(provider, self.config)
        self._page_stage = PageStage(provider, self.config)
        self._consistency_stage = (
            ConsistencyStage(analyzer, self._page_stage, self.config) if analyzer else None
        )

        self._guard = guard or default_guard
        self._token = CancellationToken()
        self._unit_tokens: Set[CancellationToken] = set()
        self._unit_locks: Dict[str, asyncio.Lock] = {}
        self._run_task: Optional[asyncio.Task] = None

        # Observers
        self._subscribers: List[asyncio.Queue] = []
        self._progress_callbacks: List[Callable] = []
        self._phase_callbacks: List[Callable] = []

    @property
    def story_id(self) -> str:
        return self.state.story_id

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    # Observers

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving a state snapshot after every unit of work and phase change"""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def add_progress_callback(self, callback: Callable[[RunState], Any]):
        """Add callback invoked after every state change"""
        self._progress_callbacks.append(callback)

    def add_phase_callback(self, callback: Callable[[RunPhase, RunPhase], Any]):
        """Add callback invoked with (old_phase, new_phase) on every transition"""
        self._phase_callbacks.append(callback)

    async def _call_async_or_sync(self, func: Callable, *args, **kwargs):
        """Call function whether it's async or sync"""
        if asyncio.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        else:
            return func(*args, **kwargs)

    def _broadcast(self) -> None:
        if not self._subscribers:
            return
        snapshot = deepcopy(self.state)
        for queue in self._subscribers:
            queue.put_nowait(snapshot)

    async def _publish(self) -> None:
        self._broadcast()
        for callback in self._progress_callbacks:
            try:
                await self._call_async_or_sync(callback, self.state)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # Phase machine

    def _next_phase(self, event: PhaseEvent) -> RunPhase:
        target = TRANSITIONS.get((self.state.phase, event))
        if target is None:
            raise InvalidTransitionError(self.state.phase, event)
        return target

    async def _transition(self, event: PhaseEvent) -> None:
        old_phase = self.state.phase
        self.state.phase = self._next_phase(event)
        logger.info(f"Phase {old_phase.value} -> {self.state.phase.value} ({event.value})")

        self._update_progress()
        await self._persist_story()

        for callback in self._phase_callbacks:
            try:
                await self._call_async_or_sync(callback, old_phase, self.state.phase)
            except Exception as e:
                logger.warning(f"Phase callback failed: {e}")
        await self._publish()

    def _update_progress(self) -> None:
        phase = self.state.phase
        if phase in (RunPhase.IDLE, RunPhase.PLANNING):
            self.state.progress = 0.0
        elif phase == RunPhase.CHARACTERS_GENERATING:
            self.state.progress = 5.0 + 35.0 * self._done_fraction(self.state.character_list)
        elif phase == RunPhase.PAGES_GENERATING:
            self.state.progress = 40.0 + 50.0 * self._done_fraction(self.state.page_list)
        elif phase == RunPhase.CONSISTENCY_CHECKING:
            self.state.progress = 90.0
        elif phase == RunPhase.COMPLETE:
            self.state.progress = 100.0

    @staticmethod
    def _done_fraction(units: List[Any]) -> float:
        if not units:
            return 1.0
        return sum(1 for u in units if u.status != UnitStatus.PENDING) / len(units)

    # Persistence; failures are logged and never abort the run

    async def _persist_story(self) -> None:
        fields = self.state.to_dict()
        fields.pop("characters")
        fields.pop("pages")
        try:
            await self.store.upsert_story(self.story_id, fields)
        except Exception as e:
            logger.warning(f"Failed to persist story {self.story_id}: {e}")

    async def _persist_character(self, character: Character) -> None:
        try:
            await self.store.upsert_character(self.story_id, character.id, character.to_dict())
        except Exception as e:
            logger.warning(f"Failed to persist character '{character.name}': {e}")

    async def _persist_page(self, page: Page) -> None:
        try:
            await self.store.upsert_page(self.story_id, page.index, page.to_dict())
        except Exception as e:
            logger.warning(f"Failed to persist page {page.index + 1}: {e}")

    # Per-entity updates reported by the stages

    async def _apply_character_update(self, update: CharacterUpdate) -> None:
        character = self.state.characters.get(update.character_id)
        if character is None:
            logger.warning(f"Dropping update for unknown character {update.character_id}")
            return
        update.apply_to(character)
        self._update_progress()
        await self._persist_character(character)
        await self._publish()

    async def _apply_page_update(self, update: PageUpdate) -> None:
        page = self.state.pages.get(update.index)
        if page is None:
            logger.warning(f"Dropping update for unknown page index {update.index}")
            return
        update.apply_to(page)
        self._update_progress()
        await self._persist_page(page)
        await self._publish()

    async def _record_issues(self, issues: List[ConsistencyIssue]) -> None:
        self.state.issues.extend(issues)
        await self._persist_story()
        await self._publish()

    async def _install_plan(self, plan: Plan) -> None:
        """Create one character and one page per plan entry, all pending"""
        self.state.plan = plan
        self.state.characters = {}
        for spec in plan.character_specs:
            character = Character.from_spec(spec)
            self.state.characters[character.id] = character
        self.state.pages = {
            position: Page.from_spec(position, spec)
            for position, spec in enumerate(plan.page_specs)
        }
        for character in self.state.character_list:
            await self._persist_character(character)
        for page in self.state.page_list:
            await self._persist_page(page)
        logger.info(
            f"Plan '{plan.title or plan.theme}': {len(self.state.pages)} pages, "
            f"{len(self.state.characters)} characters"
        )

    # Run lifecycle

    async def start(self, source_text: str, settings: BookSettings) -> RunState:
        """
        Start a full generation run and wait for it to finish.

        Raises GenerationInProgressError if this story already has a run in
        flight and PlanningError if no plan could be produced.
        """
        if not source_text or not source_text.strip():
            raise ValueError("source_text cannot be empty")
        pipeline = self.config.pipeline
        if not pipeline.page_count_min <= settings.page_count <= pipeline.page_count_max:
            raise ValueError(
                f"page_count must be between {pipeline.page_count_min} and "
                f"{pipeline.page_count_max}, got {settings.page_count}"
            )

        if self.is_running or self._guard.is_active(self.story_id):
            raise GenerationInProgressError(f"Generation already in progress for story {self.story_id}")
        self._next_phase(PhaseEvent.START)
        self._guard.acquire(self.story_id)

        self._token.reset()
        self.state.cancel_requested = False
        self.state.source_text = source_text
        self.state.settings = settings
        self.state.error = None
        self.state.issues = []
        self.state.start_time = datetime.now()
        self.state.end_time = None

        logger.info(f"Starting storybook run {self.story_id}")
        try:
            await self._transition(PhaseEvent.START)
        except Exception:
            self._guard.release(self.story_id)
            raise

        self._run_task = asyncio.ensure_future(self._run_from_planning())
        return await self._run_task

    async def restart(self) -> RunState:
        """Re-run a failed run from the top with its original inputs"""
        if self.state.phase != RunPhase.ERROR:
            raise InvalidTransitionError(self.state.phase, PhaseEvent.START)
        if self.state.settings is None:
            raise PreconditionError("Run has no settings to restart with")
        return await self.start(self.state.source_text, self.state.settings)

    async def _run_from_planning(self) -> RunState:
        try:
            try:
                plan = await self._plan_stage.run(self.state.source_text, self.state.settings, self._token)
            except GenerationCancelled:
                logger.info("Planning cancelled")
                self.state.end_time = datetime.now()
                await self._transition(PhaseEvent.PLAN_CANCELLED)
                return self.state
            except PlanningError as e:
                self.state.error = str(e)
                self.state.end_time = datetime.now()
                await self._transition(PhaseEvent.PLAN_FAILED)
                raise

            await self._install_plan(plan)
            await self._transition(PhaseEvent.PLAN_READY)
            await self._run_generation(with_characters=True)
            return self.state
        finally:
            self._guard.release(self.story_id)

    async def _run_generation(self, with_characters: bool) -> None:
        """Characters (optionally), then pages, then the consistency pass"""
        try:
            if with_characters:
                await self._character_stage.run(
                    self.state, self._token, self._apply_character_update, self._character_lock
                )
                await self._transition(PhaseEvent.CHARACTERS_DONE)

            completed = await self._page_stage.run(self.state, self._token, self._apply_page_update)
            if not completed:
                logger.info(
                    f"Run cancelled with {self.state.count_pages(UnitStatus.READY)}"
                    f"/{len(self.state.pages)} pages ready"
                )
                await self._transition(PhaseEvent.PAGES_CANCELLED)
            else:
                await self._transition(PhaseEvent.PAGES_DONE)
                if self._consistency_stage is not None:
                    outcome = await self._consistency_stage.run(
                        self.state, self._token, self._apply_page_update, self._record_issues
                    )
                    logger.info(
                        f"Consistency pass: {outcome.analyses} analysis call(s), "
                        f"regenerated pages {[i + 1 for i in outcome.regenerated]}"
                    )
                await self._transition(PhaseEvent.CONSISTENCY_DONE)

            self.state.end_time = datetime.now()
            await self._persist_story()
            logger.info(f"Run {self.story_id} finished: {self.get_run_summary()['pages']}")

        except Exception as e:
            logger.exception(f"Run {self.story_id} failed unexpectedly: {e}")
            self.state.error = str(e)
            self.state.end_time = datetime.now()
            if (self.state.phase, PhaseEvent.CRASHED) in TRANSITIONS:
                await self._transition(PhaseEvent.CRASHED)
            raise WorkflowError(f"Run execution failed: {e}") from e

    def cancel(self) -> None:
        """
        Request cooperative cancellation. The in-flight provider call is aborted,
        the current stage stops at its next unit boundary, and every completed
        unit is kept.
        """
        self.state.cancel_requested = True
        self._token.cancel()
        for token in list(self._unit_tokens):
            token.cancel()
        logger.info(f"Cancellation requested for run {self.story_id}")
        self._broadcast()

    async def regenerate_plan(self) -> RunState:
        """Discard characters and pages and restart from planning"""
        if self.state.settings is None or not self.state.source_text:
            raise PreconditionError("No previous run to regenerate a plan for")
        self._next_phase(PhaseEvent.REGENERATE_PLAN)

        if self.is_running:
            logger.info("Stopping active run before regenerating the plan")
            self.cancel()
            try:
                await self._run_task
            except Exception as e:
                logger.warning(f"Active run ended with error during plan regeneration: {e}")

        self._next_phase(PhaseEvent.REGENERATE_PLAN)
        self._guard.acquire(self.story_id)

        self._token.reset()
        self.state.cancel_requested = False
        self.state.plan = None
        self.state.characters = {}
        self.state.pages = {}
        self.state.issues = []
        self.state.error = None
        self.state.start_time = datetime.now()
        self.state.end_time = None
        try:
            await self.store.reset_units(self.story_id)
        except Exception as e:
            logger.warning(f"Failed to reset stored units for {self.story_id}: {e}")

        try:
            await self._transition(PhaseEvent.REGENERATE_PLAN)
        except Exception:
            self._guard.release(self.story_id)
            raise

        self._run_task = asyncio.ensure_future(self._run_from_planning())
        return await self._run_task

    async def resume(self, story_id: Optional[str] = None) -> RunState:
        """
        Continue a stored run. Pending characters are generated first if the run
        stopped during the character stage, then the page stage continues from
        the first page that has not been generated yet.
        """
        target_id = story_id or self.story_id
        busy = self.is_running or bool(self._unit_tokens) or self._guard.is_active(self.story_id)
        if busy or self._guard.is_active(target_id):
            raise GenerationInProgressError(f"Generation already in progress for story {target_id}")

        state = self.state
        if story_id is not None:
            snapshot = await self.store.get_run_snapshot(story_id)
            if snapshot is None:
                raise PreconditionError(f"No stored run for story {story_id}")
            state = RunState.from_dict(snapshot)
            logger.info(f"Loaded run {story_id} in phase {state.phase.value}")

        if state.plan is None:
            raise PreconditionError("Cannot resume a run without a plan")
        if (state.phase, PhaseEvent.RESUME) not in TRANSITIONS:
            raise InvalidTransitionError(state.phase, PhaseEvent.RESUME)
        with_characters = state.phase == RunPhase.CHARACTERS_GENERATING

        # raises if a run started while the snapshot was loading; state is untouched until then
        self._guard.acquire(target_id)
        self.state = state

        self._token.reset()
        self.state.cancel_requested = False
        self.state.error = None
        self.state.end_time = None

        async def run() -> RunState:
            try:
                await self._transition(PhaseEvent.RESUME)
                await self._run_generation(with_characters=with_characters)
                return self.state
            finally:
                self._guard.release(self.story_id)

        self._run_task = asyncio.ensure_future(run())
        return await self._run_task

    # Per-unit operations

    def _unit_lock(self, key: str) -> asyncio.Lock:
        if key not in self._unit_locks:
            self._unit_locks[key] = asyncio.Lock()
        return self._unit_locks[key]

    def _character_lock(self, character_id: str) -> asyncio.Lock:
        return self._unit_lock(f"character:{character_id}")

    def _require_plan(self) -> Plan:
        if self.state.plan is None or self.state.phase not in UNIT_PHASES:
            raise PreconditionError("No plan exists yet; start a run first")
        return self.state.plan

    async def reroll_character(self, character_id: str, feedback: Optional[str] = None) -> Character:
        """Regenerate one character's reference image, optionally steered by feedback"""
        plan = self._require_plan()
        character = self.state.characters.get(character_id)
        if character is None:
            raise PreconditionError(f"Unknown character {character_id}")

        lock = self._character_lock(character_id)
        if lock.locked():
            raise GenerationInProgressError(f"Character '{character.name}' is already being generated")

        async with lock:
            if not self.is_running:
                self.state.cancel_requested = False
            token = CancellationToken()
            self._unit_tokens.add(token)
            try:
                logger.info(f"Rerolling character '{character.name}'")
                await self._character_stage.generate_one(
                    character, plan.style_guide, token, self._apply_character_update, feedback
                )
            except GenerationCancelled:
                logger.info(f"Reroll of '{character.name}' cancelled")
            finally:
                self._unit_tokens.discard(token)
        return character

    async def retry_page(self, index: int) -> Page:
        """Regenerate a single page, typically one marked failed"""
        self._require_plan()
        if index not in self.state.pages:
            raise PreconditionError(f"Unknown page index {index}")

        self._guard.acquire(self.story_id)
        self.state.cancel_requested = False
        token = CancellationToken()
        self._unit_tokens.add(token)
        try:
            logger.info(f"Retrying page {index + 1}")
            await self._page_stage.generate_one(self.state, index, token, self._apply_page_update)
        except GenerationCancelled:
            logger.info(f"Retry of page {index + 1} cancelled")
        finally:
            self._unit_tokens.discard(token)
            self._guard.release(self.story_id)
        return self.state.pages[index]

    # Reporting

    def get_run_summary(self) -> Dict[str, Any]:
        """Get a summary of the run"""
        state = self.state
        return {
            "story_id": state.story_id,
            "phase": state.phase.value,
            "progress": state.progress,
            "title": state.plan.title if state.plan else None,
            "duration": state.duration,
            "characters": {
                "total": len(state.characters),
                "ready": state.count_characters(UnitStatus.READY),
                "failed": state.count_characters(UnitStatus.FAILED),
                "pending": state.count_characters(UnitStatus.PENDING),
            },
            "pages": {
                "total": len(state.pages),
                "ready": state.count_pages(UnitStatus.READY),
                "failed": state.count_pages(UnitStatus.FAILED),
                "pending": state.count_pages(UnitStatus.PENDING),
            },
            "issues": len(state.issues),
            "cancelled": state.cancel_requested,
            "error": state.error,
        }

    def export_state(self) -> Dict[str, Any]:
        """Export run state for persistence"""
        return self.state.to_dict()

    def import_state(self, state_data: Dict[str, Any]) -> None:
        """Import run state from persistence"""
        if self.is_running:
            raise GenerationInProgressError("Cannot import state while a run is active")
        try:
            self.state = RunState.from_dict(state_data)
            logger.info(f"Run state for {self.story_id} imported")
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Failed to import run state: {e}")
            raise WorkflowError(f"State import failed: {e}") from e
