# dirmap/services/directory_structure.py
"""
Directory walk and markdown rendering for the generated structure map.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dirmap.config.settings import cfg
from dirmap.services.errors import StructureScanError
from dirmap.utils.analyzers import analyze_file_content, is_binary_file, should_ignore

logger = logging.getLogger(__name__)

Structure = Dict[str, Any]


@dataclass
class FileFunctions:
    """A code file with at least one function or class definition."""
    path: str  # relative, posix
    functions: List[Tuple[str, str]]
    line_count: int


@dataclass
class ProjectMetrics:
    total_files: int = 0
    total_lines: int = 0
    files_by_type: Dict[str, int] = field(default_factory=dict)
    lines_by_type: Dict[str, int] = field(default_factory=dict)
    files_with_functions: List[FileFunctions] = field(default_factory=list)
    # Every code file listed in the tree: relative posix path -> line count
    code_files: Dict[str, int] = field(default_factory=dict)
    skipped_paths: List[str] = field(default_factory=list)


def get_directory_structure(
    root: Path,
    max_depth: int = cfg.MAX_DEPTH,
    metrics: Optional[ProjectMetrics] = None,
) -> Structure:
    """
    Nested ``{name: children}`` map of code files under root.

    Files map to ``{}``; directories with no listed descendants are left
    out. Descends at most ``max_depth`` levels below root. Raises
    StructureScanError if root does not exist; unreadable subdirectories
    are logged and skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise StructureScanError(f"Directory does not exist: {root}")

    if metrics is None:
        metrics = ProjectMetrics()

    return _walk(root, root, 0, max_depth, metrics)


def _walk(root: Path, directory: Path, depth: int, max_depth: int, metrics: ProjectMetrics) -> Structure:
    if depth > max_depth:
        return {}

    try:
        items = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.warning(f"Error scanning directory {directory}: {e}")
        metrics.skipped_paths.append(str(directory))
        return {}

    structure: Structure = {}
    for item in items:
        if should_ignore(item):
            continue

        try:
            is_dir = item.is_dir()
        except OSError as e:
            logger.warning(f"Cannot stat {item}: {e}")
            metrics.skipped_paths.append(str(item))
            continue

        if is_dir:
            if item.is_symlink():
                continue
            substructure = _walk(root, item, depth + 1, max_depth, metrics)
            if substructure:
                structure[item.name] = substructure
            continue

        ext = item.suffix.lower()
        if ext not in cfg.CODE_EXTENSIONS or is_binary_file(item):
            continue

        functions, line_count = analyze_file_content(item)
        rel_path = item.relative_to(root).as_posix()

        metrics.total_files += 1
        metrics.total_lines += line_count
        metrics.files_by_type[ext] = metrics.files_by_type.get(ext, 0) + 1
        metrics.lines_by_type[ext] = metrics.lines_by_type.get(ext, 0) + line_count
        metrics.code_files[rel_path] = line_count

        if functions:
            unique = sorted(dict(functions).items(), key=lambda f: f[0])
            metrics.files_with_functions.append(FileFunctions(rel_path, unique, line_count))

        structure[item.name] = {}

    return structure


def structure_to_tree(structure: Structure, prefix: str = "") -> List[str]:
    lines: List[str] = []
    keys = sorted(structure)

    for i, key in enumerate(keys):
        is_last = i == len(keys) - 1
        lines.append(f"{prefix}{'└── ' if is_last else '├── '}{key}")

        children = structure[key]
        if children:
            lines.extend(structure_to_tree(children, prefix + ("    " if is_last else "│   ")))

    return lines


def top_level_directories(structure: Structure) -> List[str]:
    return sorted(name for name, children in structure.items() if children)


# ============== MARKDOWN ==============

def _cell(text: str) -> str:
    return (text or "-").replace("|", "\\|").replace("\n", " ")


def find_long_files(metrics: ProjectMetrics) -> List[Tuple[str, int, int]]:
    """(path, lines, limit) for files above their FILE_LENGTH_STANDARDS limit."""
    long_files = []
    for path, line_count in metrics.code_files.items():
        limit = cfg.get_file_length_limit(Path(path).suffix)
        if line_count > limit:
            long_files.append((path, line_count, limit))
    return sorted(long_files, key=lambda f: f[1], reverse=True)


def render_markdown(
    project_name: str,
    project_type: str,
    structure: Structure,
    metrics: ProjectMetrics,
    grouped_entities: Optional[Dict[str, Dict[str, Any]]] = None,
    path_descriptions: Optional[Dict[str, str]] = None,
    function_descriptions: Optional[Dict[str, Dict[str, str]]] = None,
    file_changes: Optional[Dict[str, int]] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """Render the structure map artifact."""
    generated_at = generated_at or datetime.now()
    grouped_entities = grouped_entities or {}
    path_descriptions = path_descriptions or {}
    function_descriptions = function_descriptions or {}

    lines = [
        f"# Directory Structure: {project_name}",
        "",
        f"**Generated:** {generated_at.strftime('%B %d, %Y at %I:%M %p')}",
        f"**Project type:** {project_type}",
        "",
        "## Project Metrics",
        "",
        f"**Files:** {metrics.total_files}",
        f"**Total Lines:** {metrics.total_lines}",
    ]
    if file_changes:
        lines.append(
            f"**Since last run:** {file_changes.get('new', 0)} new, "
            f"{file_changes.get('modified', 0)} modified, {file_changes.get('removed', 0)} removed"
        )
    lines.append("")

    if metrics.files_by_type:
        lines.extend(["## File Types", ""])
        for ext in sorted(metrics.files_by_type):
            lines.append(f"- {ext}: {metrics.files_by_type[ext]} files, {metrics.lines_by_type.get(ext, 0)} lines")
        lines.append("")

    for group in sorted(grouped_entities):
        entities = grouped_entities[group]
        if not entities:
            continue
        lines.extend([
            f"## {group.capitalize()}",
            "",
            "| Name | Type | Files | Lines | Description |",
            "|------|------|-------|-------|-------------|",
        ])
        for name in sorted(entities):
            entity = entities[name]
            lines.append(
                f"| `{name}` | {_cell(entity.type)} | {entity.files} | {entity.lines} | {_cell(entity.description)} |"
            )
        lines.append("")

    if path_descriptions:
        lines.extend(["## Directories", ""])
        for path in sorted(path_descriptions):
            lines.append(f"- `{path}/`: {path_descriptions[path]}")
        lines.append("")

    long_files = find_long_files(metrics)
    if long_files:
        lines.extend(["## Long Files", ""])
        for path, count, limit in long_files:
            lines.append(f"- `{path}`: {count} lines (limit {limit})")
        lines.append("")

    if metrics.files_with_functions:
        lines.extend(["## Functions", ""])
        for record in metrics.files_with_functions:
            lines.append(f"### {record.path}")
            described = function_descriptions.get(record.path, {})
            for name, _ in record.functions:
                description = described.get(name)
                lines.append(f"- {name}: {description}" if description else f"- {name}")
            lines.append("")

    lines.extend(["## File Tree", "", "```"])
    lines.extend(structure_to_tree(structure) or ["(empty)"])
    lines.extend(["```", ""])

    return "\n".join(lines)
