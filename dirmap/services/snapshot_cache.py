# dirmap/services/snapshot_cache.py
"""
Snapshot Cache and Change Detector.

The snapshot records the last successful generation of one project: the
git revision it was built from, the grouped entity summaries (apps,
packages) and the directory descriptions. Change detection compares the
stored revision with HEAD, cheapest signal first:

1. no usable snapshot        -> full rescan
2. same revision             -> nothing changed
3. ``git diff`` old..new     -> classified paths
4. diff failed / no git      -> full rescan

Detection may over-invalidate but never reports changed content as
unchanged. The one exception is ``entity_hash``, a name/size/mtime walk
that misses rewrites keeping both size and mtime.
"""

from __future__ import annotations
import itertools
import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dirmap.config.settings import cfg
from dirmap.services.errors import GitDiffError, GitUnavailableError
from dirmap.utils import git_utils
from dirmap.utils.hashing import ContentHasher

logger = logging.getLogger(__name__)


# ============== CONSTANTS ==============

SENTINEL = "*"
SYNTHETIC_REF_PREFIX = "time-"
ENTITY_HASH_LENGTH = 12
# Rough cost of one provider round trip, for cache statistics
SECONDS_PER_DESCRIPTION = 2

_synthetic_counter = itertools.count()


def is_synthetic_reference(ref: str) -> bool:
    return not ref or ref.startswith(SYNTHETIC_REF_PREFIX)


# ============== DATA CLASSES ==============

@dataclass
class ChangeSet:
    """Classified paths since the last generation (relative, posix style)."""
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @classmethod
    def full_rescan(cls) -> "ChangeSet":
        return cls(added=[SENTINEL])

    @classmethod
    def nothing_changed(cls) -> "ChangeSet":
        return cls(unchanged=[SENTINEL])

    @property
    def is_full_rescan(self) -> bool:
        return SENTINEL in self.added

    @property
    def is_unchanged(self) -> bool:
        return SENTINEL in self.unchanged

    @property
    def changed_paths(self) -> List[str]:
        return [p for p in self.added + self.modified + self.deleted if p != SENTINEL]

    def summary(self) -> str:
        if self.is_full_rescan:
            return "full rescan"
        if self.is_unchanged:
            return "no changes"
        return f"+{len(self.added)} ~{len(self.modified)} -{len(self.deleted)}"


@dataclass
class EntitySummary:
    """Cached summary of one grouped entity (e.g. apps/web)."""
    files: int = 0
    lines: int = 0
    type: str = ""
    description: str = ""
    hash: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitySummary":
        return cls(
            files=int(data.get("files", 0)),
            lines=int(data.get("lines", 0)),
            type=str(data.get("type", "")),
            description=str(data.get("description", "")),
            hash=str(data.get("hash", "")),
        )


@dataclass
class ProjectSnapshot:
    version: str = cfg.SNAPSHOT_VERSION
    last_reference_id: str = ""
    last_generated_at: str = ""
    project_id: str = ""
    # group name -> entity name -> summary
    grouped_entities: Dict[str, Dict[str, EntitySummary]] = field(default_factory=dict)
    path_descriptions: Dict[str, str] = field(default_factory=dict)
    # relative path -> content hash, for files seen in the last generation
    file_hashes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectSnapshot":
        grouped = {
            str(group): {str(name): EntitySummary.from_dict(summary) for name, summary in entities.items()}
            for group, entities in (data.get("grouped_entities") or {}).items()
        }
        return cls(
            version=str(data.get("version", "")),
            last_reference_id=str(data.get("last_reference_id", "")),
            last_generated_at=str(data.get("last_generated_at", "")),
            project_id=str(data.get("project_id", "")),
            grouped_entities=grouped,
            path_descriptions={str(k): str(v) for k, v in (data.get("path_descriptions") or {}).items()},
            file_hashes={str(k): str(v) for k, v in (data.get("file_hashes") or {}).items()},
        )


_SNAPSHOT_FIELDS = {f.name for f in fields(ProjectSnapshot)}
_STAMPED_FIELDS = {"version", "last_reference_id", "last_generated_at"}


# ============== SNAPSHOT CACHE ==============

class SnapshotCache:
    """
    Snapshot of one project root, stored at
    ``<root>/<OUTPUT_DIR_NAME>/.structure-cache/incremental-cache.json``.
    """

    def __init__(
        self,
        root_path: Union[str, Path],
        project_id: Optional[str] = None,
        snapshot_path: Optional[Path] = None,
    ):
        self.root_path = Path(root_path).resolve()
        self.project_id = project_id or self.root_path.name
        self.snapshot_path = Path(snapshot_path) if snapshot_path else cfg.snapshot_path(self.root_path)
        self._snapshot: Optional[ProjectSnapshot] = None
        # Revision observed by the last detect_changes(); stamped by update()
        self._detected_reference: Optional[str] = None

    # ============== LOAD / SAVE ==============

    def load(self) -> Optional[ProjectSnapshot]:
        """The stored snapshot, or None if missing, corrupt or from another schema."""
        if self._snapshot is not None:
            return self._snapshot

        if not self.snapshot_path.exists():
            return None

        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"[{self.project_id}] Failed to load snapshot, will regenerate: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"[{self.project_id}] Snapshot is not an object, will regenerate")
            return None

        if data.get("version") != cfg.SNAPSHOT_VERSION:
            logger.info(
                f"[{self.project_id}] Snapshot version {data.get('version')!r} != "
                f"{cfg.SNAPSHOT_VERSION!r}, will regenerate"
            )
            return None

        try:
            self._snapshot = ProjectSnapshot.from_dict(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"[{self.project_id}] Malformed snapshot, will regenerate: {e}")
            return None

        return self._snapshot

    def _save(self, snapshot: ProjectSnapshot) -> None:
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            self.snapshot_path.write_text(
                json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"[{self.project_id}] Failed to save snapshot: {e}")
        self._snapshot = snapshot

    def _empty_snapshot(self) -> ProjectSnapshot:
        return ProjectSnapshot(project_id=self.project_id)

    # ============== CHANGE DETECTION ==============

    def current_reference(self) -> str:
        """HEAD revision, or a unique time-based token outside git."""
        try:
            return git_utils.get_head_reference(self.root_path)
        except GitUnavailableError as e:
            logger.debug(f"[{self.project_id}] git unavailable: {e}")
            return f"{SYNTHETIC_REF_PREFIX}{int(time.time() * 1000)}-{next(_synthetic_counter)}"

    def detect_changes(self) -> ChangeSet:
        snapshot = self.load()
        current_ref = self.current_reference()
        self._detected_reference = current_ref

        if snapshot is None:
            logger.info(f"[{self.project_id}] No snapshot, full rescan")
            return ChangeSet.full_rescan()

        last_ref = snapshot.last_reference_id
        if last_ref and last_ref == current_ref:
            logger.info(f"[{self.project_id}] No changes since last generation")
            return ChangeSet.nothing_changed()

        if is_synthetic_reference(last_ref) or is_synthetic_reference(current_ref):
            logger.info(f"[{self.project_id}] No git history to compare, full rescan")
            return ChangeSet.full_rescan()

        try:
            diff = git_utils.diff_name_status(self.root_path, last_ref, current_ref)
        except (GitDiffError, GitUnavailableError) as e:
            logger.warning(f"[{self.project_id}] Git diff failed, will do full scan: {e}")
            return ChangeSet.full_rescan()

        changes = ChangeSet(added=diff.added, modified=diff.modified, deleted=diff.deleted)
        logger.info(f"[{self.project_id}] Changes: {changes.summary()}")
        return changes

    def _relative(self, path: Union[str, Path]) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.root_path)
            except ValueError:
                return candidate.as_posix()
        rel = candidate.as_posix()
        return "" if rel == "." else rel

    def directory_has_changes(self, path: Union[str, Path], change_set: ChangeSet) -> bool:
        """True if any changed path is inside ``path`` or contains it."""
        if change_set.is_full_rescan:
            return True
        if change_set.is_unchanged:
            return False

        rel = self._relative(path)
        return any(
            change.startswith(rel) or rel.startswith(change)
            for change in change_set.changed_paths
        )

    def entity_hash(self, path: Union[str, Path]) -> str:
        """
        Short digest of a subtree's names, sizes and mtimes.

        Hidden entries and ignored directory names are skipped, unreadable
        directories are skipped silently.
        """
        hasher_input: List[str] = []

        def walk(directory: str) -> None:
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError:
                return

            for entry in entries:
                if entry.name.startswith(".") or entry.name in cfg.IGNORED_DIRECTORIES:
                    continue
                try:
                    st = entry.stat()
                    is_dir = entry.is_dir(follow_symlinks=False)
                except OSError:
                    continue
                hasher_input.append(f"{entry.name}:{st.st_size}:{st.st_mtime_ns}")
                if is_dir:
                    walk(entry.path)

        walk(str(path))
        return ContentHasher.hash_content("\n".join(hasher_input))[:ENTITY_HASH_LENGTH]

    def needs_full_regeneration(self) -> bool:
        if self.load() is None:
            return True
        return self.detect_changes().is_full_rescan

    # ============== CACHED LOOKUPS ==============

    def get_cached_description(self, key: str) -> Optional[str]:
        snapshot = self.load()
        if snapshot is None:
            return None
        return snapshot.path_descriptions.get(key) or None

    def cache_description(self, key: str, description: str) -> None:
        """Record a description in memory; persisted by the next update()."""
        if self.load() is None:
            self._snapshot = self._empty_snapshot()
        self._snapshot.path_descriptions[key] = description

    def get_cached_entity(self, group: str, name: str) -> Optional[EntitySummary]:
        """Cached entity summary, only if its subtree hash is unchanged."""
        snapshot = self.load()
        if snapshot is None:
            return None

        cached = snapshot.grouped_entities.get(group, {}).get(name)
        if cached is None:
            return None

        current_hash = self.entity_hash(self.root_path / group / name)
        if cached.hash == current_hash:
            return cached
        return None

    # ============== UPDATE / CLEAR ==============

    def update(self, reference: Optional[str] = None, **changes: Any) -> ProjectSnapshot:
        """
        Merge fields into the snapshot, stamp revision and time, persist.

        The stamped revision is the one seen by the last detect_changes(), so
        a commit landing mid-generation is picked up by the next run.
        """
        unknown = set(changes) - _SNAPSHOT_FIELDS
        if unknown:
            raise TypeError(f"Unknown snapshot fields: {', '.join(sorted(unknown))}")
        stamped = set(changes) & _STAMPED_FIELDS
        if stamped:
            raise TypeError(f"Fields are stamped automatically: {', '.join(sorted(stamped))}")

        snapshot = self.load() or self._empty_snapshot()
        for key, value in changes.items():
            setattr(snapshot, key, value)

        snapshot.version = cfg.SNAPSHOT_VERSION
        snapshot.last_reference_id = reference or self._detected_reference or self.current_reference()
        snapshot.last_generated_at = datetime.now().astimezone().isoformat()
        self._detected_reference = None

        self._save(snapshot)
        return snapshot

    def clear(self) -> None:
        try:
            self.snapshot_path.unlink(missing_ok=True)
            logger.info(f"[{self.project_id}] Snapshot cleared")
        except OSError as e:
            logger.warning(f"[{self.project_id}] Failed to clear snapshot: {e}")
        self._snapshot = None
        self._detected_reference = None

    # ============== STATS ==============

    def cache_stats(self) -> Dict[str, Any]:
        snapshot = self.load()
        if snapshot is None:
            return {
                "hits": 0,
                "misses": 0,
                "cached_descriptions": 0,
                "saved_time": "0s",
                "last_generated_at": None,
                "last_reference_id": None,
            }

        hits = sum(len(entities) for entities in snapshot.grouped_entities.values())
        descriptions = len(snapshot.path_descriptions)
        saved_seconds = descriptions * SECONDS_PER_DESCRIPTION

        return {
            "hits": hits,
            "misses": 0,
            "cached_descriptions": descriptions,
            "saved_time": f"{round(saved_seconds / 60)}m" if saved_seconds > 60 else f"{saved_seconds}s",
            "last_generated_at": snapshot.last_generated_at,
            "last_reference_id": snapshot.last_reference_id,
        }
