"""
Unit tests for the individual pipeline stages and cancellation token.
"""

import asyncio
import logging

import pytest

from conftest import FakeProvider, ScriptedAnalyzer, flagged
from data_models import (
    BookSettings,
    Character,
    CharacterSpec,
    Page,
    PageSpec,
    Plan,
    RunState,
    StyleGuide,
    UnitStatus,
)
from gemini_service import ProviderError
from pipeline_stages import (
    CancellationToken,
    CharacterStage,
    ConsistencyStage,
    GenerationCancelled,
    PageStage,
    PlanningError,
    PlanStage,
    previous_page_refs,
)


def make_state(page_statuses, settings=None):
    """Run state with a plan and pages in the given statuses"""
    specs = tuple(
        PageSpec(ordinal=i + 1, caption=f"Caption {i + 1}.", illustration_brief=f"brief {i + 1}")
        for i in range(len(page_statuses))
    )
    plan = Plan(
        page_specs=specs,
        character_specs=(CharacterSpec(name="Mila", description="a small grey mouse"),),
        theme="courage",
        style_guide=StyleGuide(art_style="watercolor"),
    )
    state = RunState(story_id="s", settings=settings or BookSettings(page_count=len(specs)), plan=plan)
    state.characters["c1"] = Character(
        id="c1", name="Mila", description="a small grey mouse",
        reference_image="char:Mila", status=UnitStatus.READY,
    )
    for i, status in enumerate(page_statuses):
        page = Page.from_spec(i, specs[i])
        page.status = status
        if status == UnitStatus.READY:
            page.image_ref = f"img{i}"
        state.pages[i] = page
    return state


class Recorder:
    """Applies updates to the state the way the orchestrator does"""

    def __init__(self, state):
        self.state = state
        self.updates = []

    async def character(self, update):
        self.updates.append(update)
        update.apply_to(self.state.characters[update.character_id])

    async def page(self, update):
        self.updates.append(update)
        update.apply_to(self.state.pages[update.index])

    async def issues(self, issues):
        self.state.issues.extend(issues)


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_after_cancel_raises_without_starting(self):
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(1)

        with pytest.raises(GenerationCancelled):
            await token.run(work())
        assert started == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_call(self):
        token = CancellationToken()
        entered = asyncio.Event()

        async def slow():
            entered.set()
            await asyncio.sleep(3600)

        task = asyncio.ensure_future(token.run(slow()))
        await entered.wait()
        token.cancel()

        with pytest.raises(GenerationCancelled):
            await task

    @pytest.mark.asyncio
    async def test_sleep_is_abortable(self):
        token = CancellationToken()
        task = asyncio.ensure_future(token.sleep(3600))
        await asyncio.sleep(0)
        token.cancel()

        with pytest.raises(GenerationCancelled):
            await task

    def test_reset_clears_request(self):
        token = CancellationToken()
        token.cancel()
        token.reset()
        assert not token.requested


class TestPreviousPageRefs:

    def test_takes_last_two_ready_pages(self):
        state = make_state([UnitStatus.READY] * 5)
        assert previous_page_refs(state, 4) == ["img2", "img3"]
        assert previous_page_refs(state, 1) == ["img0"]
        assert previous_page_refs(state, 0) == []

    def test_skips_failed_pages(self):
        state = make_state([UnitStatus.READY, UnitStatus.READY, UnitStatus.FAILED, UnitStatus.PENDING])
        assert previous_page_refs(state, 3) == ["img0", "img1"]

    def test_zero_limit(self):
        state = make_state([UnitStatus.READY] * 3)
        assert previous_page_refs(state, 2, limit=0) == []


class TestPlanStage:

    @pytest.mark.asyncio
    async def test_builds_immutable_plan(self, app_config):
        stage = PlanStage(FakeProvider(page_count=5), app_config)

        plan = await stage.run("A story.", BookSettings(page_count=5), CancellationToken())

        assert isinstance(plan.page_specs, tuple)
        assert [spec.ordinal for spec in plan.page_specs] == [1, 2, 3, 4, 5]
        assert plan.title == "The Leaf Map v1"

    @pytest.mark.asyncio
    async def test_page_count_mismatch_is_logged(self, app_config, caplog):
        stage = PlanStage(FakeProvider(page_count=6), app_config)

        with caplog.at_level(logging.WARNING):
            plan = await stage.run("A story.", BookSettings(page_count=5), CancellationToken())

        assert len(plan.page_specs) == 6
        assert "Page count mismatch" in caplog.text

    @pytest.mark.asyncio
    async def test_passes_capped_intensity(self, app_config):
        provider = FakeProvider()
        stage = PlanStage(provider, app_config)

        await stage.run("A story.", BookSettings(target_age=4, intensity=9), CancellationToken())

        assert provider.plan_calls[0].intensity == 5

    @pytest.mark.asyncio
    async def test_empty_plan_is_fatal(self, app_config):
        provider = FakeProvider(page_count=0)
        stage = PlanStage(provider, app_config)

        with pytest.raises(PlanningError):
            await stage.run("A story.", BookSettings(), CancellationToken())

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_planning_error(self, app_config):
        provider = FakeProvider()
        provider.plan_errors = [ProviderError("503 unavailable", retryable=True)] * 3
        stage = PlanStage(provider, app_config)

        with pytest.raises(PlanningError) as exc_info:
            await stage.run("A story.", BookSettings(), CancellationToken())

        assert isinstance(exc_info.value.__cause__, ProviderError)
        assert len(provider.plan_calls) == 3


class TestCharacterStage:

    @pytest.mark.asyncio
    async def test_marks_pending_then_ready(self, app_config):
        state = make_state([UnitStatus.PENDING])
        state.characters["c1"].status = UnitStatus.PENDING
        state.characters["c1"].reference_image = None
        recorder = Recorder(state)

        await CharacterStage(FakeProvider(), app_config).run(state, CancellationToken(), recorder.character)

        assert [u.status for u in recorder.updates] == [UnitStatus.PENDING, UnitStatus.READY]
        assert state.characters["c1"].is_ready

    @pytest.mark.asyncio
    async def test_skips_characters_already_ready(self, app_config):
        state = make_state([UnitStatus.PENDING])
        provider = FakeProvider()

        await CharacterStage(provider, app_config).run(state, CancellationToken(), Recorder(state).character)

        assert provider.character_calls == []

    @pytest.mark.asyncio
    async def test_stops_when_cancelled(self, app_config):
        state = make_state([UnitStatus.PENDING])
        state.characters["c1"].status = UnitStatus.PENDING
        provider = FakeProvider()
        token = CancellationToken()
        token.cancel()

        await CharacterStage(provider, app_config).run(state, token, Recorder(state).character)

        assert provider.character_calls == []

    @pytest.mark.asyncio
    async def test_waits_for_unit_lock_and_skips_settled_character(self, app_config):
        state = make_state([UnitStatus.PENDING])
        mila = state.characters["c1"]
        mila.status = UnitStatus.PENDING
        provider = FakeProvider()
        lock = asyncio.Lock()
        await lock.acquire()

        stage_run = asyncio.ensure_future(
            CharacterStage(provider, app_config).run(
                state, CancellationToken(), Recorder(state).character, lambda character_id: lock
            )
        )
        await asyncio.sleep(0)
        assert not stage_run.done()

        mila.status = UnitStatus.READY
        lock.release()
        await stage_run

        assert provider.character_calls == []


class TestPageStage:

    @pytest.mark.asyncio
    async def test_starts_at_first_pending_page(self, app_config):
        state = make_state([UnitStatus.READY, UnitStatus.FAILED, UnitStatus.PENDING, UnitStatus.PENDING])
        provider = FakeProvider()

        completed = await PageStage(provider, app_config).run(state, CancellationToken(), Recorder(state).page)

        assert completed
        assert provider.page_call_briefs() == ["brief 3", "brief 4"]
        assert state.pages[1].status == UnitStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_pending_pages(self, app_config):
        state = make_state([UnitStatus.READY, UnitStatus.READY])
        provider = FakeProvider()

        assert await PageStage(provider, app_config).run(state, CancellationToken(), Recorder(state).page)
        assert provider.page_calls == []

    @pytest.mark.asyncio
    async def test_character_consistency_off_drops_page_context(self, app_config):
        settings = BookSettings(page_count=3, character_consistency=False)
        state = make_state([UnitStatus.READY, UnitStatus.READY, UnitStatus.PENDING], settings)
        provider = FakeProvider()

        await PageStage(provider, app_config).run(state, CancellationToken(), Recorder(state).page)

        assert provider.page_calls[0].previous_page_refs == []
        assert [ref.name for ref in provider.page_calls[0].character_refs] == ["Mila"]

    @pytest.mark.asyncio
    async def test_aspect_ratio_is_forwarded(self, app_config):
        settings = BookSettings(page_count=1, aspect_ratio="4:3")
        state = make_state([UnitStatus.PENDING], settings)
        provider = FakeProvider()

        await PageStage(provider, app_config).run(state, CancellationToken(), Recorder(state).page)

        assert provider.page_calls[0].aspect_ratio == "4:3"


class TestConsistencyStage:

    @pytest.mark.asyncio
    async def test_clean_analysis_stops_loop(self, app_config):
        state = make_state([UnitStatus.READY] * 3)
        analyzer = ScriptedAnalyzer()
        provider = FakeProvider()
        stage = ConsistencyStage(analyzer, PageStage(provider, app_config), app_config)
        recorder = Recorder(state)

        outcome = await stage.run(state, CancellationToken(), recorder.page, recorder.issues)

        assert outcome.clean
        assert outcome.analyses == 1
        assert provider.page_calls == []

    @pytest.mark.asyncio
    async def test_no_illustrated_pages_skips_analyzer(self, app_config):
        state = make_state([UnitStatus.FAILED, UnitStatus.FAILED])
        analyzer = ScriptedAnalyzer()
        stage = ConsistencyStage(analyzer, PageStage(FakeProvider(), app_config), app_config)
        recorder = Recorder(state)

        outcome = await stage.run(state, CancellationToken(), recorder.page, recorder.issues)

        assert outcome.clean
        assert analyzer.calls == []

    @pytest.mark.asyncio
    async def test_unknown_flagged_page_is_ignored(self, app_config):
        state = make_state([UnitStatus.READY] * 2)
        analyzer = ScriptedAnalyzer([flagged(7)])
        provider = FakeProvider()
        stage = ConsistencyStage(analyzer, PageStage(provider, app_config), app_config)
        recorder = Recorder(state)

        outcome = await stage.run(state, CancellationToken(), recorder.page, recorder.issues)

        assert provider.page_calls == []
        assert outcome.regenerated == []
        assert outcome.analyses == 2

    @pytest.mark.asyncio
    async def test_repair_request_uses_fix_instruction(self, app_config):
        state = make_state([UnitStatus.READY] * 4)
        analyzer = ScriptedAnalyzer([flagged(3)])
        provider = FakeProvider()
        stage = ConsistencyStage(analyzer, PageStage(provider, app_config), app_config)
        recorder = Recorder(state)

        outcome = await stage.run(state, CancellationToken(), recorder.page, recorder.issues)

        assert outcome.regenerated == [3]
        request = provider.page_calls[0]
        assert request.fix_instruction == "- Mila wears a red scarf"
        assert request.previous_page_refs == ["img1", "img2"]
