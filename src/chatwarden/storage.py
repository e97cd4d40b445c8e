"""
Credential Store.

Each session owns one directory under the sessions base directory, named
``auth_info<N>``. It holds the protocol's opaque credential state
(``creds.json``) and a small metadata record (``meta.json``).
File access runs in a worker thread so the event loop never blocks on disk.
"""

import asyncio
import json
import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from chatwarden.logger import get_logger

logger = get_logger(__name__)

STORAGE_PREFIX = "auth_info"
_KEY_RE = re.compile(rf"^{STORAGE_PREFIX}(\d+)$")

CREDS_FILENAME = "creds.json"
META_FILENAME = "meta.json"


def is_storage_key(key: str) -> bool:
    return bool(_KEY_RE.match(key or ""))


class CredentialStore(ABC):
    """Per-session persisted state, treated as opaque by the core."""

    @abstractmethod
    async def load(self, key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def save(self, key: str, state: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def read_meta(self, key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def write_meta(self, key: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``updates`` into the stored metadata and return the result."""

    @abstractmethod
    async def list_keys(self) -> List[str]:
        pass

    @abstractmethod
    async def next_key(self) -> str:
        pass


class FileCredentialStore(CredentialStore):
    """Credential Store backed by one directory per storage key."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._key_lock = asyncio.Lock()

    def _dir(self, key: str) -> Path:
        if not is_storage_key(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.base_dir / key

    # ─── Credentials ─────────────────────────────────────────────────

    async def load(self, key: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load_sync, key)

    def _load_sync(self, key: str) -> Dict[str, Any]:
        directory = self._dir(key)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / CREDS_FILENAME
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    async def save(self, key: str, state: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_json, self._dir(key) / CREDS_FILENAME, state)

    async def delete(self, key: str) -> None:
        directory = self._dir(key)
        await asyncio.to_thread(shutil.rmtree, directory, True)
        logger.info(f"Deleted credential storage {directory}")

    # ─── Metadata ────────────────────────────────────────────────────

    async def read_meta(self, key: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read_meta_sync, key)

    def _read_meta_sync(self, key: str) -> Dict[str, Any]:
        path = self._dir(key) / META_FILENAME
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable metadata at {path}: {e}")
            return {}

    async def write_meta(self, key: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._write_meta_sync, key, updates)

    def _write_meta_sync(self, key: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        meta = self._read_meta_sync(key)
        meta.update(updates)
        self._write_json(self._dir(key) / META_FILENAME, meta)
        return meta

    # ─── Keys ────────────────────────────────────────────────────────

    async def list_keys(self) -> List[str]:
        return await asyncio.to_thread(self._list_keys_sync)

    def _list_keys_sync(self) -> List[str]:
        keys = [p.name for p in self.base_dir.iterdir() if p.is_dir() and is_storage_key(p.name)]
        return sorted(keys, key=lambda k: int(_KEY_RE.match(k).group(1)))

    async def next_key(self) -> str:
        # Reserve the directory under the lock so concurrent creates never share a key.
        async with self._key_lock:
            keys = await self.list_keys()
            numbers = [int(_KEY_RE.match(k).group(1)) for k in keys]
            key = f"{STORAGE_PREFIX}{(max(numbers) if numbers else 0) + 1}"
            await asyncio.to_thread(self._dir(key).mkdir, parents=True, exist_ok=True)
            return key

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
