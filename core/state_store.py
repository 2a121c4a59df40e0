"""
State Store
===========

Durable, section-keyed persistence for accounts, execution statistics
and engine metadata. Enables recovery of the account set and its
strategy bindings after a restart.

Features:
- One JSON document per logical section (whole-document get/set)
- Atomic writes (temp file + fsync + rename)
- Backup rotation with fallback on corrupt files
- Writers serialized by the store, file I/O off the event loop

Candidate reservation pools are never stored here: a
reservation is only valid inside one opportunity's live window.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


ACCOUNTS_SECTION = "accounts"
EXECUTION_STATS_SECTION = "executionStats"
ENGINE_SECTION = "engine"


class PersistenceFailure(Exception):
    """Raised when a section cannot be written to disk."""

    def __init__(self, section: str, message: str):
        self.section = section
        super().__init__(f"Failed to persist section '{section}': {message}")


@dataclass
class StateStoreConfig:
    """Configuration for the state store."""
    state_dir: str = "state"
    max_backups: int = 3
    stats_save_every_ticks: int = 10


class StateStore:
    """
    Whole-document key-value store backed by one JSON file per section.

    Reads are served from an in-memory cache loaded at initialize();
    every set() rewrites the full section document. Concurrent writers
    are serialized by the store.
    """

    def __init__(self, config: StateStoreConfig | None = None):
        self._config = config or StateStoreConfig()
        self._state_dir = Path(self._config.state_dir)
        self._sections: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self._last_save_time: datetime | None = None
        self._write_count = 0
        self._write_failures = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _section_path(self, section: str) -> Path:
        return self._state_dir / f"{section}.json"

    async def initialize(self) -> None:
        """Create the state directory and load every existing section."""
        await asyncio.to_thread(self._state_dir.mkdir, parents=True, exist_ok=True)

        loaded = await asyncio.to_thread(self._load_all)
        self._sections = loaded
        self._initialized = True

        if loaded:
            logger.info(
                f"StateStore loaded {len(loaded)} section(s) from {self._state_dir}: "
                f"{', '.join(sorted(loaded))}"
            )
        else:
            logger.info(f"StateStore initialized empty at {self._state_dir}")

    def _load_all(self) -> dict[str, Any]:
        sections: dict[str, Any] = {}
        for path in sorted(self._state_dir.glob("*.json")):
            document = self._load_section_file(path)
            if document is not None:
                sections[path.stem] = document
        return sections

    def _load_section_file(self, path: Path) -> Any | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            return payload.get("data") if isinstance(payload, dict) and "data" in payload else payload

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in state file {path}: {e}")
            return self._load_from_backup(path)

        except OSError as e:
            logger.error(f"Failed to read state file {path}: {e}")
            return self._load_from_backup(path)

    def _load_from_backup(self, path: Path) -> Any | None:
        """Try to load a section from its most recent readable backup."""
        for i in range(1, self._config.max_backups + 1):
            backup_path = path.with_suffix(f".bak{i}")
            if not backup_path.exists():
                continue
            try:
                with open(backup_path, "r", encoding="utf-8") as f:
                    payload = json.load(f)
                logger.warning(f"Loaded section '{path.stem}' from backup {backup_path}")
                return payload.get("data") if isinstance(payload, dict) and "data" in payload else payload
            except (OSError, json.JSONDecodeError) as e:
                logger.debug(f"Failed to load backup {backup_path}: {e}")
        return None

    def get(self, section: str, default: Any = None) -> Any:
        """Return a copy of the whole document stored under a section."""
        if section not in self._sections:
            return copy.deepcopy(default)
        return copy.deepcopy(self._sections[section])

    def has(self, section: str) -> bool:
        return section in self._sections

    def sections(self) -> list[str]:
        return sorted(self._sections)

    async def set(self, section: str, document: Any) -> None:
        """
        Replace a whole section document and write it to disk.

        The in-memory value is updated even when the write fails, so the
        engine keeps running on its current state and the next persist
        attempt retries the write.

        Raises:
            PersistenceFailure: if the document could not be written
        """
        async with self._lock:
            await self._write_locked(section, document)

    async def update(self, section: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Serialized read-modify-write of one section. Returns the new document."""
        async with self._lock:
            current = self.get(section, default)
            updated = fn(current)
            await self._write_locked(section, updated)
            return copy.deepcopy(updated)

    async def _write_locked(self, section: str, document: Any) -> None:
        self._sections[section] = copy.deepcopy(document)
        payload = {
            "section": section,
            "persisted_at": datetime.now(timezone.utc).isoformat(),
            "data": document,
        }
        try:
            await asyncio.to_thread(self._write_section_file, section, payload)
        except (OSError, TypeError, ValueError) as e:
            self._write_failures += 1
            logger.error(f"Failed to persist section '{section}': {e}")
            raise PersistenceFailure(section, str(e)) from e

        self._write_count += 1
        self._last_save_time = datetime.now(timezone.utc)
        logger.debug(f"Section '{section}' saved to {self._section_path(section)}")

    def _write_section_file(self, section: str, payload: dict[str, Any]) -> None:
        """Atomic write: temp file + fsync + rename."""
        path = self._section_path(section)
        temp_path = path.with_suffix(".tmp")
        json_data = json.dumps(payload, indent=2, default=str)

        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(json_data)
                f.flush()
                os.fsync(f.fileno())

            if path.exists():
                self._rotate_backups(path)

            temp_path.replace(path)
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _rotate_backups(self, path: Path) -> None:
        try:
            for i in range(self._config.max_backups, 1, -1):
                older = path.with_suffix(f".bak{i-1}")
                newer = path.with_suffix(f".bak{i}")
                if older.exists():
                    shutil.move(str(older), str(newer))

            if self._config.max_backups > 0:
                shutil.copy2(str(path), str(path.with_suffix(".bak1")))

        except OSError as e:
            logger.warning(f"Failed to rotate backups for {path.name}: {e}")

    async def delete(self, section: str) -> None:
        """Remove a section and its backups."""
        async with self._lock:
            self._sections.pop(section, None)
            await asyncio.to_thread(self._delete_section_files, section)
        logger.info(f"Deleted state section '{section}'")

    def _delete_section_files(self, section: str) -> None:
        path = self._section_path(section)
        path.unlink(missing_ok=True)
        for i in range(1, self._config.max_backups + 1):
            path.with_suffix(f".bak{i}").unlink(missing_ok=True)

    async def clear(self) -> None:
        """Remove every section."""
        for section in list(self._sections):
            await self.delete(section)

    def get_state_info(self) -> dict[str, Any]:
        """Get information about persisted state."""
        result: dict[str, Any] = {
            "state_dir": str(self._state_dir),
            "initialized": self._initialized,
            "sections": {},
            "last_save": self._last_save_time.isoformat() if self._last_save_time else None,
            "write_count": self._write_count,
            "write_failures": self._write_failures,
        }

        for section in self._sections:
            path = self._section_path(section)
            info: dict[str, Any] = {"exists": path.exists(), "backups": 0}
            if path.exists():
                stat = path.stat()
                info["size_bytes"] = stat.st_size
                info["modified"] = datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat()
            info["backups"] = sum(
                1 for i in range(1, self._config.max_backups + 1)
                if path.with_suffix(f".bak{i}").exists()
            )
            result["sections"][section] = info

        return result

