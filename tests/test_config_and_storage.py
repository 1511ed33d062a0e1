"""
Tests for configuration loading and run persistence.
"""

import json

import pytest

from config_manager import ApiConfig, AppConfig, ConfigManager, PipelineConfig, StorageConfig
from storage import InMemoryRunStore, JsonFileRunStore, StorageError, create_store


class TestConfigManager:

    def test_defaults(self):
        config = AppConfig()
        assert config.api.max_retries == 3
        assert config.api.retry_delay == 1.0
        assert config.pipeline.consistency_max_retries == 3
        assert config.pipeline.previous_page_context == 2

    def test_invalid_temperature(self):
        with pytest.raises(ValueError):
            ApiConfig(temperature=3.0)

    def test_invalid_previous_page_context(self):
        with pytest.raises(ValueError):
            PipelineConfig(previous_page_context=3)

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            StorageConfig(backend="sqlite")

    def test_load_merges_partial_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api": {"max_retries": 5}, "storage": {"backend": "memory"}}))

        config = ConfigManager().load_config(path)

        assert config.api.max_retries == 5
        assert config.api.temperature == 0.7
        assert config.storage.backend == "memory"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager().load_config(tmp_path / "absent.json")
        assert config == AppConfig()

    def test_invalid_values_fall_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api": {"max_retries": 0}}))

        config = ConfigManager().load_config(path)

        assert config.api.max_retries == 3

    def test_load_is_cached(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{}")
        manager = ConfigManager()

        assert manager.load_config(path) is manager.load_config(path)

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "saved.json"
        manager = ConfigManager()
        config = AppConfig(api=ApiConfig(timeout=30))

        assert manager.save_config(config, path)
        manager.clear_cache()

        assert manager.load_config(path).api.timeout == 30

    def test_validate_config_reports_sections(self):
        errors = ConfigManager().validate_config({"api": {"temperature": -1}, "storage": {"backend": "x"}})

        assert len(errors) == 2
        assert errors[0].startswith("api config error")
        assert errors[1].startswith("storage config error")

    def test_watchers_are_notified(self, tmp_path):
        seen = []
        manager = ConfigManager()
        manager.watch_config(seen.append)

        manager.load_config(tmp_path / "absent.json")

        assert len(seen) == 1


@pytest.fixture(params=["memory", "json"])
def run_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(tmp_path / "stories")


class TestRunStores:

    @pytest.mark.asyncio
    async def test_unknown_story(self, run_store):
        assert await run_store.get_run_snapshot("missing") is None

    @pytest.mark.asyncio
    async def test_page_upserts_do_not_touch_siblings(self, run_store):
        await run_store.upsert_page("s1", 0, {"caption": "one", "status": "pending"})
        await run_store.upsert_page("s1", 1, {"caption": "two", "status": "pending"})

        await run_store.upsert_page("s1", 1, {"status": "ready", "image_ref": "img"})

        snapshot = await run_store.get_run_snapshot("s1")
        assert snapshot["pages"] == [
            {"caption": "one", "status": "pending", "index": 0},
            {"caption": "two", "status": "ready", "image_ref": "img", "index": 1},
        ]

    @pytest.mark.asyncio
    async def test_pages_sorted_by_index(self, run_store):
        for index in (10, 2, 0):
            await run_store.upsert_page("s1", index, {"caption": str(index)})

        snapshot = await run_store.get_run_snapshot("s1")

        assert [p["index"] for p in snapshot["pages"]] == [0, 2, 10]

    @pytest.mark.asyncio
    async def test_story_and_character_fields(self, run_store):
        await run_store.upsert_story("s1", {"phase": "planning", "progress": 0.0})
        await run_store.upsert_character("s1", "c1", {"name": "Mila", "status": "pending"})
        await run_store.upsert_character("s1", "c1", {"status": "ready"})
        await run_store.upsert_story("s1", {"phase": "complete"})

        snapshot = await run_store.get_run_snapshot("s1")

        assert snapshot["phase"] == "complete"
        assert snapshot["progress"] == 0.0
        assert snapshot["characters"] == [{"name": "Mila", "status": "ready", "id": "c1"}]

    @pytest.mark.asyncio
    async def test_reset_units(self, run_store):
        await run_store.upsert_story("s1", {"phase": "complete"})
        await run_store.upsert_page("s1", 0, {"caption": "one"})
        await run_store.upsert_character("s1", "c1", {"name": "Mila"})

        await run_store.reset_units("s1")

        snapshot = await run_store.get_run_snapshot("s1")
        assert snapshot["pages"] == []
        assert snapshot["characters"] == []
        assert snapshot["phase"] == "complete"

    @pytest.mark.asyncio
    async def test_list_stories(self, run_store):
        await run_store.upsert_story("b", {})
        await run_store.upsert_story("a", {})

        assert sorted(await run_store.list_stories()) == ["a", "b"]


class TestJsonFileRunStore:

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        await JsonFileRunStore(tmp_path).upsert_page("s1", 0, {"caption": "one"})

        snapshot = await JsonFileRunStore(tmp_path).get_run_snapshot("s1")

        assert snapshot["pages"][0]["caption"] == "one"
        assert (tmp_path / "s1.json").exists()
        assert not (tmp_path / "s1.tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_document(self, tmp_path):
        (tmp_path / "s1.json").write_text("{not json")

        with pytest.raises(StorageError):
            await JsonFileRunStore(tmp_path).get_run_snapshot("s1")


def test_create_store_from_config(tmp_path):
    assert isinstance(create_store(StorageConfig(backend="memory")), InMemoryRunStore)
    store = create_store(StorageConfig(backend="json", data_dir=str(tmp_path)))
    assert isinstance(store, JsonFileRunStore)
    assert store.data_dir == tmp_path
