"""JSON file document store."""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

import structlog

from ticketbridge.core.exceptions import StorageError
from ticketbridge.storage.base import DocumentStore

logger = structlog.get_logger()


class JsonFileStore(DocumentStore):
    """Stores each document as ``<base_dir>/<name>.json``.

    Saves write a sibling temp file and atomically rename it over the target,
    so a crash mid-write leaves the previous version intact.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, name: str) -> Path:
        parts = name.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise StorageError(f"Invalid document name: {name!r}", document=name)
        return self.base_dir.joinpath(*parts).with_suffix(".json")

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def load(self, name: str) -> dict[str, Any] | None:
        path = self._path(name)
        async with self._lock(name):
            try:
                return await asyncio.to_thread(self._read, path)
            except (OSError, ValueError) as e:
                raise StorageError(f"Failed to read {name}: {e}", document=name) from e

    async def save(self, name: str, data: dict[str, Any]) -> None:
        path = self._path(name)
        payload = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        async with self._lock(name):
            try:
                await asyncio.to_thread(self._write, path, payload)
            except OSError as e:
                raise StorageError(f"Failed to write {name}: {e}", document=name) from e

    async def delete(self, name: str) -> bool:
        path = self._path(name)
        async with self._lock(name):
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                return False
        return True

    async def delete_prefix(self, prefix: str) -> int:
        directory = self.base_dir.joinpath(*[p for p in prefix.split("/") if p])
        if not directory.is_dir():
            return 0
        count = sum(1 for _ in directory.rglob("*.json"))
        await asyncio.to_thread(shutil.rmtree, directory, True)
        return count

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self.base_dir.mkdir, parents=True, exist_ok=True)
        except OSError:
            logger.warning("Data directory not writable", path=str(self.base_dir))
            return False
        return os.access(self.base_dir, os.W_OK)

    # ==================== File Helpers ====================

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
