# dirmap/services/fingerprint_store.py
"""
Fingerprint Store: per-project table of file and function content hashes.

One JSON file per project under ``cfg.CACHE_DIR`` (``{project_id}.json``):

    {
      "src/app.py": {
        "content": "...",
        "hash": "<md5>",
        "last_modified": 1700000000.0,
        "functions": {"main": {"description": "...", "hash": "<md5>"}}
      }
    }

Every mutation is written through to disk immediately. Reads never raise:
a missing or corrupt file is an empty table.
"""

from __future__ import annotations
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from dirmap.config.settings import cfg
from dirmap.utils.hashing import ContentHasher

logger = logging.getLogger(__name__)

FileTable = Dict[str, Dict[str, Any]]


class FingerprintStore:
    def __init__(self, cache_dir: Optional[Path] = None):
        self.cache_dir = Path(cache_dir) if cache_dir else Path(cfg.CACHE_DIR)
        self._tables: Dict[str, FileTable] = {}

    def _cache_file(self, project_id: str) -> Path:
        return self.cache_dir / f"{project_id}.json"

    # ============== LOAD / SAVE ==============

    def load(self, project_id: str) -> FileTable:
        """Read the project's table from disk. Missing or unparsable -> empty."""
        cache_file = self._cache_file(project_id)
        table: FileTable = {}

        if cache_file.exists():
            try:
                data = json.loads(cache_file.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    table = {k: v for k, v in data.items() if isinstance(v, dict)}
                else:
                    logger.warning(f"[{project_id}] Fingerprint cache is not an object, starting empty")
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
                logger.warning(f"[{project_id}] Failed to load fingerprint cache: {e}")

        self._tables[project_id] = table
        return table

    def _table(self, project_id: str) -> FileTable:
        if project_id not in self._tables:
            self.load(project_id)
        return self._tables[project_id]

    def _save(self, project_id: str) -> None:
        cache_file = self._cache_file(project_id)
        try:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
            cache_file.write_text(
                json.dumps(self._tables.get(project_id, {}), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"[{project_id}] Failed to save fingerprint cache: {e}")

    # ============== QUERIES ==============

    def has_file_changed(self, project_id: str, path: str, content: str) -> bool:
        entry = self._table(project_id).get(path)
        if not entry:
            return True
        return entry.get("hash") != ContentHasher.hash_content(content)

    def has_function_changed(self, project_id: str, path: str, name: str, content: str) -> bool:
        entry = self._table(project_id).get(path)
        if not entry:
            return True
        function = (entry.get("functions") or {}).get(name)
        if not function:
            return True
        return function.get("hash") != ContentHasher.hash_content(content)

    def get_cached_file_content(self, project_id: str, path: str) -> Optional[str]:
        entry = self._table(project_id).get(path)
        if not entry:
            return None
        return entry.get("content") or None

    def get_cached_function_description(self, project_id: str, path: str, name: str) -> Optional[str]:
        entry = self._table(project_id).get(path)
        if not entry:
            return None
        function = (entry.get("functions") or {}).get(name)
        if not function:
            return None
        return function.get("description") or None

    def tracked_paths(self, project_id: str) -> List[str]:
        return sorted(self._table(project_id))

    # ============== MUTATIONS ==============

    def update_file(self, project_id: str, path: str, content: str) -> None:
        """Store content and hash for a file, keeping its function entries."""
        table = self._table(project_id)
        previous = table.get(path) or {}
        table[path] = {
            "content": content,
            "hash": ContentHasher.hash_content(content),
            "last_modified": time.time(),
            "functions": previous.get("functions") or {},
        }
        self._save(project_id)

    def update_function(
        self,
        project_id: str,
        path: str,
        name: str,
        content: str,
        description: str,
    ) -> None:
        table = self._table(project_id)
        if path not in table:
            table[path] = {"content": "", "hash": "", "last_modified": 0, "functions": {}}

        entry = table[path]
        entry.setdefault("functions", {})[name] = {
            "description": description,
            "hash": ContentHasher.hash_content(content),
        }
        self._save(project_id)

    def forget_file(self, project_id: str, path: str) -> bool:
        """Drop one file's entry (file deleted from the project)."""
        table = self._table(project_id)
        if path not in table:
            return False
        del table[path]
        self._save(project_id)
        return True

    def clear(self, project_id: str) -> None:
        cache_file = self._cache_file(project_id)
        try:
            cache_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"[{project_id}] Failed to delete fingerprint cache: {e}")
            # Keep an empty table so the stale file is not reloaded
            self._tables[project_id] = {}
            return
        self._tables.pop(project_id, None)

    clear_project_cache = clear
