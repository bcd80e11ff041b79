"""
Result collection for the teacher dashboard.

All results are kept as one JSON array under a single key of a key-value
store. Every write reads the whole array, changes it and writes it back; two
writers racing on the same store can lose an update.
"""
import os
import json
import time
import random
import string
import asyncio
import logging
import tempfile
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

RESULTS_KEY = "all_results"
_BASE36 = string.digits + string.ascii_lowercase

Score = Union[int, float]


class KeyValueStore:
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str) -> None:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value


class FileKeyValueStore(KeyValueStore):
    """One file per key inside ``directory``; writes replace the file atomically."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in key)
        return os.path.join(self.directory, f"{safe}.json")

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def _write(self, key: str, value: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, self._path(key))
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)


class StoredResult(BaseModel):
    id: str
    student_name: str
    course: str = "—"
    type: str = "mediation"
    topic: str = "—"
    content: Optional[Score] = None
    language: Optional[Score] = None
    total: Optional[Score] = None
    date: str


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_result_id() -> str:
    """Millisecond timestamp in base 36 plus a 4-character random suffix."""
    suffix = "".join(random.choice(_BASE36) for _ in range(4))
    return _base36(int(time.time() * 1000)) + suffix


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ResultsStore:
    def __init__(self, kv: KeyValueStore, key: str = RESULTS_KEY):
        self.kv = kv
        self.key = key

    @classmethod
    def from_settings(cls, settings) -> "ResultsStore":
        if settings.results_store_dir:
            return cls(FileKeyValueStore(settings.results_store_dir))
        logger.info("RESULTS_STORE_DIR not set, results are kept in memory only")
        return cls(InMemoryKeyValueStore())

    async def _load(self) -> List[dict]:
        raw = await self.kv.get(self.key)
        if not raw:
            return []
        try:
            results = json.loads(raw)
        except ValueError:
            logger.error("Stored results under %r are not valid JSON, starting from an empty list", self.key)
            return []
        if not isinstance(results, list):
            logger.error("Stored results under %r are not a list, starting from an empty list", self.key)
            return []
        return results

    async def _save(self, results: List[dict]) -> None:
        await self.kv.put(self.key, json.dumps(results, ensure_ascii=False))

    async def submit(self, student_name: str, total: Score, topic: Optional[str] = None,
                     course: Optional[str] = None, type: Optional[str] = None,
                     content: Optional[Score] = None, language: Optional[Score] = None,
                     date: Optional[str] = None) -> dict:
        record = StoredResult(
            id=new_result_id(),
            student_name=student_name,
            course=course or "—",
            type=type or "mediation",
            topic=topic or "—",
            content=content,
            language=language,
            total=total,
            date=date or utc_now_iso(),
        )
        results = await self._load()
        results.append(record.model_dump())
        await self._save(results)
        logger.info("Stored result %s for %s (%d total)", record.id, student_name, len(results))
        return {"success": True, "count": len(results), "id": record.id}

    async def list(self) -> List[dict]:
        return await self._load()

    async def delete(self, result_id: str) -> dict:
        results = await self._load()
        remaining = [r for r in results if r.get("id") != result_id]
        if len(remaining) != len(results):
            await self._save(remaining)
            logger.info("Deleted result %s", result_id)
        return {"success": True, "count": len(remaining)}
