"""
Collection store for captured traffic and rules

Every collection is a flat list of JSON objects that is read whole and
written whole. Calls against one collection are serialised by a per-collection
asyncio.Lock so read-modify-write cycles from concurrent handlers do not
interleave inside a single process.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import aiofiles
import aiofiles.os
import structlog

from capture_relay.core.errors import StoreError

logger = structlog.get_logger()

T = TypeVar("T")

REQUESTS = "requests"
RESPONSES = "responses"
MODIFIED_RESPONSES = "modified_responses"
CAPTURE_RULES = "capture_rules"
RESPONSE_RULES = "response_rules"
INTERCEPT_RULES = "intercept_rules"
INTERCEPTED_REQUESTS = "intercepted_requests"

COLLECTIONS = (
    REQUESTS,
    RESPONSES,
    MODIFIED_RESPONSES,
    CAPTURE_RULES,
    RESPONSE_RULES,
    INTERCEPT_RULES,
    INTERCEPTED_REQUESTS,
)

Record = Dict[str, Any]


class CollectionStore(ABC):
    """
    Read-all / append / replace-all over named collections

    Subclasses only implement loading and dumping a whole collection.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @abstractmethod
    async def _load(self, name: str) -> List[Record]:
        ...

    @abstractmethod
    async def _dump(self, name: str, records: List[Record]) -> None:
        ...

    async def read_all(self, name: str) -> List[Record]:
        async with self._locks[name]:
            return await self._load(name)

    async def append(self, name: str, record: Record) -> Record:
        async with self._locks[name]:
            records = await self._load(name)
            records.append(record)
            await self._dump(name, records)
        return record

    async def replace_all(self, name: str, records: List[Record]) -> None:
        async with self._locks[name]:
            await self._dump(name, list(records))

    async def update(self, name: str, mutator: Callable[[List[Record]], T]) -> T:
        """
        Run mutator over the current records and write them back

        The mutator edits the list in place and its return value is passed
        through. Nothing is written when it raises.
        """
        async with self._locks[name]:
            records = await self._load(name)
            result = mutator(records)
            await self._dump(name, records)
            return result

    async def initialize(self, names=COLLECTIONS):
        """Make sure every collection exists in the backing store"""
        for name in names:
            async with self._locks[name]:
                await self._dump(name, await self._load(name))

    def describe(self) -> Dict[str, Any]:
        return {}


class JsonFileStore(CollectionStore):
    """One pretty-printed JSON array per collection, written atomically"""

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.logger = logger.bind(component="json_store")

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    async def _load(self, name: str) -> List[Record]:
        path = self.path_for(name)
        if not path.exists():
            return []
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except OSError as e:
            raise StoreError(name, f"read failed: {e}") from e

        if not content.strip():
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StoreError(name, f"corrupt JSON: {e}") from e
        if not isinstance(data, list):
            raise StoreError(name, "expected a JSON array")
        return data

    async def _dump(self, name: str, records: List[Record]) -> None:
        path = self.path_for(name)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            payload = json.dumps(records, indent=2, ensure_ascii=False, default=str)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(name, f"write failed: {e}") from e

        self.logger.debug("Collection written", collection=name, records=len(records))

    def describe(self) -> Dict[str, Any]:
        files = {}
        for name in COLLECTIONS:
            path = self.path_for(name)
            exists = path.exists()
            files[name] = {
                "path": str(path),
                "exists": exists,
                "size": path.stat().st_size if exists else 0,
            }
        return {"db_directory": str(self.directory), "files": files}


class MemoryStore(CollectionStore):
    """In-process store with the same contract, records are deep-copied on the way in and out"""

    def __init__(self, initial: Optional[Dict[str, List[Record]]] = None):
        super().__init__()
        self._data: Dict[str, str] = {}
        for name, records in (initial or {}).items():
            self._data[name] = json.dumps(records)

    async def _load(self, name: str) -> List[Record]:
        return json.loads(self._data.get(name, "[]"))

    async def _dump(self, name: str, records: List[Record]) -> None:
        try:
            self._data[name] = json.dumps(records, default=str)
        except (TypeError, ValueError) as e:
            raise StoreError(name, f"write failed: {e}") from e

    def describe(self) -> Dict[str, Any]:
        return {
            "db_directory": None,
            "files": {
                name: {"path": None, "exists": name in self._data, "size": len(self._data.get(name, ""))}
                for name in COLLECTIONS
            },
        }
