# dirmap/services/structure_generator.py
"""
Generation pipeline for one project.

Each run walks the tree fresh; the caches decide what expensive work can
be skipped:

- FingerprintStore: per-file and per-function hashes, gates function
  descriptions
- SnapshotCache change set: gates directory descriptions
- entity hash: gates rescans of grouped entities (apps/*, packages/*)
"""

from __future__ import annotations
import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dirmap.config.settings import cfg
from dirmap.llm.api_client import DescriptionProvider
from dirmap.services.directory_structure import (
    ProjectMetrics,
    Structure,
    get_directory_structure,
    render_markdown,
    structure_to_tree,
    top_level_directories,
)
from dirmap.services.errors import StructureScanError
from dirmap.services.fingerprint_store import FingerprintStore
from dirmap.services.project_detector import (
    describe_project_type,
    detect_entity_type,
    determine_project_type,
    read_entity_description,
)
from dirmap.services.snapshot_cache import ChangeSet, EntitySummary, ProjectSnapshot, SnapshotCache
from dirmap.utils.analyzers import function_blocks, read_text, should_ignore
from dirmap.utils.hashing import ContentHasher

logger = logging.getLogger(__name__)


# ============== CONSTANTS ==============

DIRECTORY_PROMPT_TREE_LINES = 60
DESCRIPTION_LINE_RE = re.compile(r"^[-*\s]*`?([^:`]+?)/?`?\s*:\s*(.+)$")


# ============== DATA CLASSES ==============

@dataclass
class GenerationResult:
    """Statistics of one generation run"""
    project_id: str
    changes: str = ""
    full_rescan: bool = False
    skipped: bool = False

    files_scanned: int = 0
    files_updated: int = 0
    functions_found: int = 0
    functions_described: int = 0
    functions_reused: int = 0

    entities_cached: int = 0
    entities_rescanned: int = 0

    descriptions_requested: int = 0
    descriptions_reused: int = 0

    file_changes: Dict[str, int] = field(default_factory=dict)
    artifact_path: Optional[str] = None
    artifact_digest: Optional[str] = None
    duration_sec: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "changes": self.changes,
            "full_rescan": self.full_rescan,
            "skipped": self.skipped,
            "files_scanned": self.files_scanned,
            "files_updated": self.files_updated,
            "functions_found": self.functions_found,
            "functions_described": self.functions_described,
            "functions_reused": self.functions_reused,
            "entities_cached": self.entities_cached,
            "entities_rescanned": self.entities_rescanned,
            "descriptions_requested": self.descriptions_requested,
            "descriptions_reused": self.descriptions_reused,
            "file_changes": dict(self.file_changes),
            "artifact_path": self.artifact_path,
            "duration_sec": round(self.duration_sec, 2),
            "errors_count": len(self.errors),
        }


def parse_directory_descriptions(response: str, wanted: List[str]) -> Dict[str, str]:
    """Pick ``path: description`` lines for the wanted directories."""
    wanted_set = set(wanted)
    parsed: Dict[str, str] = {}
    for line in (response or "").splitlines():
        match = DESCRIPTION_LINE_RE.match(line.strip())
        if not match:
            continue
        key = match.group(1).strip().strip("/")
        description = match.group(2).strip().strip("\"'")
        if key in wanted_set and description:
            parsed[key] = description
    return parsed


# ============== GENERATOR ==============

class StructureGenerator:
    def __init__(
        self,
        root_path: Union[str, Path],
        project_id: Optional[str] = None,
        *,
        fingerprint_store: Optional[FingerprintStore] = None,
        snapshot_cache: Optional[SnapshotCache] = None,
        describer: Optional[DescriptionProvider] = None,
        max_depth: int = cfg.MAX_DEPTH,
        describe_functions: Optional[bool] = None,
        describe_directories: Optional[bool] = None,
    ):
        self.root_path = Path(root_path).resolve()
        self.project_id = project_id or self.root_path.name
        self.max_depth = max_depth
        self.fingerprints = fingerprint_store or FingerprintStore()
        self.snapshot_cache = snapshot_cache or SnapshotCache(self.root_path, self.project_id)
        self.describer = describer or DescriptionProvider()
        self.describe_functions = cfg.DESCRIBE_FUNCTIONS if describe_functions is None else describe_functions
        self.describe_directories = (
            cfg.DESCRIBE_DIRECTORIES if describe_directories is None else describe_directories
        )
        self.artifact_path = cfg.output_path(self.root_path)
        self.last_artifact_digest: Optional[str] = None

    async def generate(self) -> GenerationResult:
        start_time = time.time()
        result = GenerationResult(project_id=self.project_id)

        if not self.root_path.is_dir():
            logger.warning(f"[{self.project_id}] Project path does not exist: {self.root_path}")
            result.skipped = True
            return result

        try:
            cfg.output_dir(self.root_path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[{self.project_id}] Cannot create output directory: {e}")

        # git and the tree walk block; keep them off the loop thread
        previous = await asyncio.to_thread(self.snapshot_cache.load)
        change_set = await asyncio.to_thread(self.snapshot_cache.detect_changes)
        result.changes = change_set.summary()
        result.full_rescan = change_set.is_full_rescan

        metrics = ProjectMetrics()
        try:
            structure = await asyncio.to_thread(get_directory_structure, self.root_path, self.max_depth, metrics)
        except StructureScanError as e:
            logger.warning(f"[{self.project_id}] {e}")
            result.skipped = True
            return result
        result.files_scanned = metrics.total_files
        for skipped in metrics.skipped_paths:
            result.errors.append({"file": skipped, "error": "unreadable"})

        function_descriptions = await self._process_functions(metrics, result)
        file_hashes = await asyncio.to_thread(self._file_hashes, metrics)
        if previous is not None:
            result.file_changes = self._compare_hashes(previous.file_hashes, file_hashes)

        grouped_entities = await asyncio.to_thread(self._grouped_entities, result)
        path_descriptions = await self._directory_descriptions(structure, change_set, previous, result)

        project_type = determine_project_type(self.root_path)
        markdown = render_markdown(
            project_name=self.project_id,
            project_type=f"{project_type} ({describe_project_type(project_type)})",
            structure=structure,
            metrics=metrics,
            grouped_entities=grouped_entities,
            path_descriptions=path_descriptions,
            function_descriptions=function_descriptions,
            file_changes=result.file_changes,
        )
        self._write_artifact(markdown, result)

        self.snapshot_cache.update(
            project_id=self.project_id,
            grouped_entities=grouped_entities,
            path_descriptions=path_descriptions,
            file_hashes=file_hashes,
        )

        result.duration_sec = time.time() - start_time
        logger.info(
            f"[{self.project_id}] Generation complete ({result.changes}): "
            f"{result.files_scanned} files, {result.files_updated} updated, "
            f"{result.descriptions_requested} description calls, "
            f"{result.descriptions_reused} reused, {result.duration_sec:.2f}s"
        )
        return result

    # ============== FUNCTIONS ==============

    async def _process_functions(
        self, metrics: ProjectMetrics, result: GenerationResult
    ) -> Dict[str, Dict[str, str]]:
        descriptions: Dict[str, Dict[str, str]] = {}
        seen_paths = set()

        for record in metrics.files_with_functions:
            rel_path = record.path
            try:
                content = read_text(self.root_path / rel_path)
            except OSError as e:
                logger.warning(f"[{self.project_id}] Cannot read {rel_path}: {e}")
                result.errors.append({"file": rel_path, "error": str(e)[:100]})
                continue
            seen_paths.add(rel_path)

            if self.fingerprints.has_file_changed(self.project_id, rel_path, content):
                self.fingerprints.update_file(self.project_id, rel_path, content)
                result.files_updated += 1

            blocks = function_blocks(content, Path(rel_path).suffix)
            file_descriptions: Dict[str, str] = {}

            for name, _ in record.functions:
                result.functions_found += 1
                block = blocks.get(name, "")

                if not self.fingerprints.has_function_changed(self.project_id, rel_path, name, block):
                    cached = self.fingerprints.get_cached_function_description(self.project_id, rel_path, name)
                    if cached:
                        file_descriptions[name] = cached
                        result.functions_reused += 1
                    continue

                if not (self.describe_functions and self.describer.enabled):
                    continue

                description = await self.describer.generate(
                    f"Describe in one short sentence what `{name}` in {rel_path} does:\n\n{block}"
                )
                result.descriptions_requested += 1
                # Empty answers are recorded as well; asked again only after the body changes
                self.fingerprints.update_function(self.project_id, rel_path, name, block, description)
                if description:
                    file_descriptions[name] = description
                    result.functions_described += 1

            if file_descriptions:
                descriptions[rel_path] = file_descriptions

        for stale in set(self.fingerprints.tracked_paths(self.project_id)) - seen_paths:
            if stale not in metrics.code_files:
                self.fingerprints.forget_file(self.project_id, stale)

        return descriptions

    def _file_hashes(self, metrics: ProjectMetrics) -> Dict[str, str]:
        return {rel: ContentHasher.hash_file(self.root_path / rel) for rel in sorted(metrics.code_files)}

    @staticmethod
    def _compare_hashes(old: Dict[str, str], new: Dict[str, str]) -> Dict[str, int]:
        return {
            "new": sum(1 for path in new if path not in old),
            "modified": sum(1 for path, digest in new.items() if path in old and old[path] != digest),
            "removed": sum(1 for path in old if path not in new),
        }

    # ============== GROUPED ENTITIES ==============

    def _grouped_entities(self, result: GenerationResult) -> Dict[str, Dict[str, EntitySummary]]:
        grouped: Dict[str, Dict[str, EntitySummary]] = {}

        for group in cfg.ENTITY_GROUPS:
            group_dir = self.root_path / group
            if not group_dir.is_dir():
                continue

            try:
                children = sorted(p for p in group_dir.iterdir() if p.is_dir() and not should_ignore(p))
            except OSError as e:
                logger.warning(f"[{self.project_id}] Cannot list {group_dir}: {e}")
                continue

            entities: Dict[str, EntitySummary] = {}
            for child in children:
                cached = self.snapshot_cache.get_cached_entity(group, child.name)
                if cached is not None:
                    entities[child.name] = cached
                    result.entities_cached += 1
                else:
                    entities[child.name] = self._scan_entity(child)
                    result.entities_rescanned += 1
            grouped[group] = entities

        return grouped

    def _walk_error(self, error: OSError) -> None:
        logger.warning(f"[{self.project_id}] Skipping {error.filename}: {error}")

    def _scan_entity(self, path: Path) -> EntitySummary:
        entity_hash = self.snapshot_cache.entity_hash(path)
        files = 0
        lines = 0

        for dirpath, dirnames, filenames in os.walk(path, onerror=self._walk_error):
            dirnames[:] = [d for d in dirnames if not should_ignore(Path(d))]
            for filename in filenames:
                if Path(filename).suffix.lower() not in cfg.CODE_EXTENSIONS or should_ignore(Path(filename)):
                    continue
                try:
                    with open(os.path.join(dirpath, filename), "rb") as f:
                        lines += sum(1 for _ in f)
                except OSError as e:
                    logger.warning(f"[{self.project_id}] Cannot read {filename}: {e}")
                    continue
                files += 1

        return EntitySummary(
            files=files,
            lines=lines,
            type=detect_entity_type(path),
            description=read_entity_description(path),
            hash=entity_hash,
        )

    # ============== DIRECTORY DESCRIPTIONS ==============

    async def _directory_descriptions(
        self,
        structure: Structure,
        change_set: ChangeSet,
        previous: Optional[ProjectSnapshot],
        result: GenerationResult,
    ) -> Dict[str, str]:
        if change_set.is_unchanged and previous is not None:
            result.descriptions_reused = len(previous.path_descriptions)
            return dict(previous.path_descriptions)

        descriptions: Dict[str, str] = {}
        for directory in top_level_directories(structure):
            cached = self.snapshot_cache.get_cached_description(directory)
            if cached:
                descriptions[directory] = cached

        if not (self.describe_directories and self.describer.enabled):
            result.descriptions_reused = len(descriptions)
            return descriptions

        stale = [
            d for d in top_level_directories(structure)
            if d not in descriptions or self.snapshot_cache.directory_has_changes(d, change_set)
        ]
        result.descriptions_reused = len([d for d in descriptions if d not in stale])
        if not stale:
            return descriptions

        tree_lines = structure_to_tree({d: structure[d] for d in stale})[:DIRECTORY_PROMPT_TREE_LINES]
        prompt = (
            "Given this project structure, provide brief descriptions (max 50 chars) "
            f"for each of these top-level directories: {', '.join(stale)}\n\n"
            + "\n".join(tree_lines)
            + '\n\nFormat as "path: description" one per line.'
        )

        response = await self.describer.generate(prompt)
        result.descriptions_requested += 1

        # Directories the provider skipped keep their cached description
        for directory, text in parse_directory_descriptions(response, stale).items():
            self.snapshot_cache.cache_description(directory, text)
            descriptions[directory] = text

        return descriptions

    # ============== OUTPUT ==============

    def _write_artifact(self, markdown: str, result: GenerationResult) -> None:
        try:
            self.artifact_path.parent.mkdir(parents=True, exist_ok=True)
            self.artifact_path.write_text(markdown, encoding="utf-8")
        except OSError as e:
            logger.warning(f"[{self.project_id}] Failed to write {self.artifact_path}: {e}")
            result.errors.append({"file": str(self.artifact_path), "error": str(e)[:100]})
            return

        self.last_artifact_digest = ContentHasher.hash_content(markdown)
        result.artifact_path = str(self.artifact_path)
        result.artifact_digest = self.last_artifact_digest
        logger.info(f"[{self.project_id}] Directory structure saved to {self.artifact_path}")

    def cache_stats(self) -> Dict[str, Any]:
        return self.snapshot_cache.cache_stats()

    def clear_project_cache(self) -> None:
        self.fingerprints.clear(self.project_id)
        self.snapshot_cache.clear()
        logger.info(f"[{self.project_id}] Cache cleared")
