"""
Persistence of run progress, keyed by story id.

Every store exposes per-entity upserts so that a single character's or page's
update never rewrites its siblings.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config_manager import StorageConfig

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a store cannot read or write a story"""
    pass


def _empty_record(story_id: str) -> Dict[str, Any]:
    return {"story_id": story_id, "characters": {}, "pages": {}}


def _merge(record: Dict[str, Any], section: str, key: str, fields: Dict[str, Any]) -> None:
    entry = record[section].setdefault(key, {})
    entry.update(deepcopy(fields))


def record_to_snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a stored record into the shape accepted by ``RunState.from_dict``"""
    snapshot = {k: deepcopy(v) for k, v in record.items() if k not in ("characters", "pages")}
    snapshot["characters"] = [deepcopy(c) for c in record["characters"].values()]
    snapshot["pages"] = sorted(
        (deepcopy(p) for p in record["pages"].values()), key=lambda p: int(p["index"])
    )
    return snapshot


class RunStore(ABC):
    """Persistence contract used by the orchestrator"""

    @abstractmethod
    async def upsert_story(self, story_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def upsert_character(self, story_id: str, character_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def upsert_page(self, story_id: str, index: int, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def reset_units(self, story_id: str) -> None:
        """Drop all characters and pages of a story (plan regeneration)"""

    @abstractmethod
    async def get_run_snapshot(self, story_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_stories(self) -> List[str]:
        ...


class InMemoryRunStore(RunStore):
    """Process-local store, used in tests and with ``storage.backend = "memory"``"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    def _record(self, story_id: str) -> Dict[str, Any]:
        return self._records.setdefault(story_id, _empty_record(story_id))

    async def upsert_story(self, story_id: str, fields: Dict[str, Any]) -> None:
        self._record(story_id).update(deepcopy(fields))

    async def upsert_character(self, story_id: str, character_id: str, fields: Dict[str, Any]) -> None:
        _merge(self._record(story_id), "characters", character_id, {**fields, "id": character_id})

    async def upsert_page(self, story_id: str, index: int, fields: Dict[str, Any]) -> None:
        _merge(self._record(story_id), "pages", str(index), {**fields, "index": index})

    async def reset_units(self, story_id: str) -> None:
        record = self._record(story_id)
        record["characters"] = {}
        record["pages"] = {}

    async def get_run_snapshot(self, story_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(story_id)
        return record_to_snapshot(record) if record else None

    async def list_stories(self) -> List[str]:
        return list(self._records)


class JsonFileRunStore(RunStore):
    """One JSON document per story, written atomically"""

    def __init__(self, data_dir: Union[str, Path] = "stories"):
        self.data_dir = Path(data_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _path(self, story_id: str) -> Path:
        return self.data_dir / f"{story_id}.json"

    def _lock(self, story_id: str) -> asyncio.Lock:
        if story_id not in self._locks:
            self._locks[story_id] = asyncio.Lock()
        return self._locks[story_id]

    def _read(self, story_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(story_id)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise StorageError(f"Failed to read story {story_id}: {e}") from e

    def _write(self, story_id: str, record: Dict[str, Any]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(story_id)
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2, ensure_ascii=False)
            temp_path.replace(path)
        except IOError as e:
            raise StorageError(f"Failed to write story {story_id}: {e}") from e

    async def _update(self, story_id: str, mutate) -> None:
        """Read-modify-write one story document under its lock, off the event loop"""
        loop = asyncio.get_running_loop()
        async with self._lock(story_id):
            record = await loop.run_in_executor(None, self._read, story_id)
            record = record or _empty_record(story_id)
            mutate(record)
            await loop.run_in_executor(None, self._write, story_id, record)

    async def upsert_story(self, story_id: str, fields: Dict[str, Any]) -> None:
        await self._update(story_id, lambda record: record.update(deepcopy(fields)))

    async def upsert_character(self, story_id: str, character_id: str, fields: Dict[str, Any]) -> None:
        await self._update(
            story_id,
            lambda record: _merge(record, "characters", character_id, {**fields, "id": character_id}),
        )

    async def upsert_page(self, story_id: str, index: int, fields: Dict[str, Any]) -> None:
        await self._update(
            story_id,
            lambda record: _merge(record, "pages", str(index), {**fields, "index": index}),
        )

    async def reset_units(self, story_id: str) -> None:
        def clear(record: Dict[str, Any]) -> None:
            record["characters"] = {}
            record["pages"] = {}
        await self._update(story_id, clear)

    async def get_run_snapshot(self, story_id: str) -> Optional[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        async with self._lock(story_id):
            record = await loop.run_in_executor(None, self._read, story_id)
        if record is None:
            return None
        logger.debug(f"Loaded story {story_id} from {self._path(story_id)}")
        return record_to_snapshot(record)

    async def list_stories(self) -> List[str]:
        if not self.data_dir.exists():
            return []
        return sorted(path.stem for path in self.data_dir.glob("*.json"))


def create_store(config: StorageConfig) -> RunStore:
    """Build the store selected in configuration"""
    if config.backend == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(config.data_dir)
