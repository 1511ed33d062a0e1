"""
Tests for the data models and prompt/response handling.
"""

import pytest

from data_models import (
    BookSettings,
    CharacterRole,
    ConsistencyAnalysis,
    ConsistencyIssue,
    IssueKind,
    Page,
    QualityTier,
    RunPhase,
    RunState,
    StyleGuide,
    UnitStatus,
)
from localization import get_caption_instruction, get_supported_languages, is_rtl
from prompting import (
    OMISSION_MARKER,
    ResponseFormatError,
    build_page_prompt,
    condense_source_text,
    create_style_guide,
    extract_json_object,
    fallback_story_arc,
    parse_plan_response,
)


class TestBookSettings:

    @pytest.mark.parametrize("kwargs", [
        {"target_age": 2},
        {"target_age": 19},
        {"page_count": 0},
        {"intensity": 11},
        {"style": "  "},
        {"aspect_ratio": "7:5"},
        {"consistency_max_retries": 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            BookSettings(**kwargs)

    @pytest.mark.parametrize("age,intensity,expected", [
        (4, 9, 5),
        (7, 9, 7),
        (12, 9, 9),
        (4, 3, 3),
    ])
    def test_effective_intensity(self, age, intensity, expected):
        assert BookSettings(target_age=age, intensity=intensity).effective_intensity == expected

    def test_quality_tier_from_string(self):
        settings = BookSettings(quality_tier="premium-4k")
        assert settings.quality_tier == QualityTier.PREMIUM_4K
        assert BookSettings.from_dict(settings.to_dict()) == settings


class TestRunState:

    def test_round_trip_keeps_units(self):
        state = RunState(story_id="s1", phase=RunPhase.PAGES_GENERATING, settings=BookSettings())
        state.pages[1] = Page(index=1, caption="b", illustration_brief="b", status=UnitStatus.FAILED,
                              warnings=["Generation failed"])
        state.pages[0] = Page(index=0, caption="a", illustration_brief="a", image_ref="img",
                              status=UnitStatus.READY)
        state.issues.append(ConsistencyIssue(page_index=0, kind=IssueKind.STYLE_DRIFT,
                                             description="palette shift", fix_instruction="warmer tones"))

        restored = RunState.from_dict(state.to_dict())

        assert [p.index for p in restored.page_list] == [0, 1]
        assert restored.pages[1].warnings == ["Generation failed"]
        assert restored.phase == RunPhase.PAGES_GENERATING
        assert restored.issues[0].kind == IssueKind.STYLE_DRIFT

    def test_counts(self):
        state = RunState(story_id="s1")
        state.pages[0] = Page(index=0, caption="", illustration_brief="", status=UnitStatus.READY, image_ref="x")
        state.pages[1] = Page(index=1, caption="", illustration_brief="")
        assert state.count_pages(UnitStatus.READY) == 1
        assert state.count_pages(UnitStatus.PENDING) == 1


class TestConsistencyAnalysis:

    def test_fix_instructions_are_combined_per_page(self):
        analysis = ConsistencyAnalysis(
            issues=[
                ConsistencyIssue(0, IssueKind.CHARACTER_MISMATCH, "hair", "Mila has grey fur"),
                ConsistencyIssue(1, IssueKind.OBJECT_CONTINUITY, "map", "The map is a leaf"),
                ConsistencyIssue(0, IssueKind.STYLE_DRIFT, "style", "Use watercolor texture"),
            ],
            pages_needing_regeneration=[0, 1],
        )

        assert analysis.fix_instruction_for(0) == "- Mila has grey fur\n- Use watercolor texture"
        assert "consistency" in analysis.fix_instruction_for(4)
        assert not analysis.is_clean

    def test_issue_kind_parse_defaults(self):
        assert IssueKind.parse("timeline_logic") == IssueKind.TIMELINE
        assert IssueKind.parse("something else") == IssueKind.CHARACTER_MISMATCH

    def test_role_parse_falls_back_on_position(self):
        assert CharacterRole.parse("Supporting") == CharacterRole.SUPPORTING
        assert CharacterRole.parse(None, 0) == CharacterRole.MAIN
        assert CharacterRole.parse("hero", 3) == CharacterRole.SUPPORTING
        assert CharacterRole.parse("", 7) == CharacterRole.BACKGROUND


class TestPrompting:

    def test_short_source_unchanged(self):
        assert condense_source_text("short story", 100) == "short story"

    def test_long_source_keeps_both_ends(self):
        text = "A" * 4000 + "B" * 10000 + "C" * 4000

        condensed = condense_source_text(text, 15000)

        assert condensed == "A" * 4000 + OMISSION_MARKER + "C" * 4000

    def test_extract_json_from_prose(self):
        assert extract_json_object('Sure! {"pages": []} Hope that helps') == {"pages": []}

    @pytest.mark.parametrize("text", ["no json", "{broken", "[1, 2]"])
    def test_extract_json_errors(self, text):
        with pytest.raises(ResponseFormatError):
            extract_json_object(text)

    def test_parse_plan_normalizes_pages(self):
        parsed = parse_plan_response({
            "pages": [
                {"caption": "Mila wakes up. She yawns.", "prompt": "Mila in bed", "cameraAngle": "Close-Up"},
                {"caption": "She runs outside.", "cameraAngle": "sideways"},
            ],
            "characters": [{"name": "Mila", "visualDescription": "grey mouse"}, {"description": "no name"}],
        })

        first, second = parsed["page_specs"]
        assert (first.ordinal, first.camera_angle) == (1, "close-up")
        assert second.illustration_brief == "She runs outside."
        assert second.camera_angle == "medium shot"
        assert [c.name for c in parsed["character_specs"]] == ["Mila"]
        assert parsed["story_arc"][0] == "Mila wakes up."

    def test_parse_plan_without_pages(self):
        with pytest.raises(ResponseFormatError):
            parse_plan_response({"pages": []})

    def test_fallback_story_arc_positions(self):
        captions = [f"Beat {i}." for i in range(8)]
        assert fallback_story_arc(captions) == ["Beat 0.", "Beat 2.", "Beat 4.", "Beat 6.", "Beat 7."]

    def test_style_guide_from_style_text(self):
        guide = create_style_guide("Soft pastel watercolor at golden hour", 4, QualityTier.PREMIUM_2K)

        assert guide.art_style == "Soft pastel watercolor at golden hour"
        assert "pastel" in guide.color_palette
        assert "golden hour" in guide.lighting
        assert "uncluttered" in guide.composition
        assert "2K" in guide.resolution_quality
        assert guide.do_nots

    def test_page_prompt_mentions_continuity_and_fix(self):
        prompt = build_page_prompt(
            "Mila crosses the bridge", "wide shot", StyleGuide(art_style="ink"), ["Mila"], 2,
            "- Mila wears a red scarf",
        )

        assert "last 2 attached page(s)" in prompt
        assert "Mila wears a red scarf" in prompt
        assert "Art style: ink" in prompt


class TestLocalization:

    def test_supported_languages(self):
        languages = get_supported_languages()
        assert languages["en"] == "English"
        assert "zh" in languages

    def test_caption_instruction(self):
        assert "English" in get_caption_instruction("en")
        assert "Spanish" in get_caption_instruction("es")
        assert "right-to-left" in get_caption_instruction("ar")
        assert is_rtl("ar") and not is_rtl("fr")
