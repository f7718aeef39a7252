# dirmap/services/project_detector.py
"""
One-shot project type heuristics and grouped entity classification.
"""

from __future__ import annotations
import fnmatch
import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectType:
    name: str
    description: str
    indicators: Tuple[str, ...]
    file_patterns: Tuple[str, ...]
    required_files: Tuple[str, ...] = ()
    priority: int = 1
    # Extra score when a top-level file has one of these suffixes
    source_extensions: Tuple[str, ...] = ()


PROJECT_TYPES: Dict[str, ProjectType] = {
    "python": ProjectType(
        "Python", "A Python project",
        indicators=("setup.py", "requirements.txt", "pyproject.toml", "Pipfile"),
        file_patterns=("*.py",),
        priority=2,
        source_extensions=(".py",),
    ),
    "nodejs": ProjectType(
        "Node.js", "A Node.js project",
        indicators=("package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml"),
        file_patterns=("*.js", "*.jsx", "*.ts", "*.tsx"),
        required_files=("package.json",),
        priority=3,
    ),
    "javascript": ProjectType(
        "JavaScript", "JavaScript/Node.js Project",
        indicators=("package.json", "webpack.config.js", ".npmrc", ".nvmrc", "next.config.js"),
        file_patterns=("*.js", "*.jsx", "*.mjs", "*.cjs"),
        priority=5,
        source_extensions=(".js", ".jsx", ".mjs", ".cjs"),
    ),
    "typescript": ProjectType(
        "TypeScript", "TypeScript Project",
        indicators=("tsconfig.json", "tslint.json", ".eslintrc"),
        file_patterns=("*.ts", "*.tsx"),
        priority=6,
        source_extensions=(".ts", ".tsx"),
    ),
    "rust": ProjectType(
        "Rust", "A Rust project",
        indicators=("Cargo.toml", "Cargo.lock"),
        file_patterns=("*.rs",),
        required_files=("Cargo.toml",),
        priority=2,
    ),
    "go": ProjectType(
        "Go", "A Go project",
        indicators=("go.mod", "go.sum"),
        file_patterns=("*.go",),
        required_files=("go.mod",),
        priority=2,
    ),
    "java": ProjectType(
        "Java", "A Java project",
        indicators=("pom.xml", "build.gradle", "settings.gradle"),
        file_patterns=("*.java",),
        priority=2,
    ),
    "kotlin": ProjectType(
        "Kotlin", "Kotlin Project",
        indicators=("build.gradle.kts", "settings.gradle.kts", "gradlew"),
        file_patterns=("*.kt", "*.kts"),
        priority=8,
        source_extensions=(".kt", ".kts"),
    ),
    "swift": ProjectType(
        "Swift", "Swift Project",
        indicators=("Package.swift", "*.xcodeproj", "*.xcworkspace"),
        file_patterns=("*.swift",),
        priority=8,
        source_extensions=(".swift",),
    ),
    "php": ProjectType(
        "PHP", "PHP Project",
        indicators=("composer.json", "composer.lock", "artisan"),
        file_patterns=("*.php",),
        priority=5,
        source_extensions=(".php",),
    ),
    "ruby": ProjectType(
        "Ruby", "Ruby Project",
        indicators=("Gemfile", "Gemfile.lock", "Rakefile"),
        file_patterns=("*.rb",),
        priority=5,
        source_extensions=(".rb",),
    ),
    "csharp": ProjectType(
        "C#", "A C# project",
        indicators=("*.csproj", "*.sln"),
        file_patterns=("*.cs",),
        priority=2,
    ),
    "c": ProjectType(
        "C", "C Project",
        indicators=("Makefile", "CMakeLists.txt"),
        file_patterns=("*.c", "*.h"),
        priority=7,
        source_extensions=(".c",),
    ),
    "cpp": ProjectType(
        "C++", "A C++ project",
        indicators=("CMakeLists.txt", "*.vcxproj"),
        file_patterns=("*.cpp", "*.hpp", "*.h"),
        priority=1,
    ),
    "web": ProjectType(
        "Web", "Web Project",
        indicators=("index.html", "styles.css"),
        file_patterns=("*.html", "*.css", "*.scss", "*.svg"),
        priority=3,
    ),
}

# One manifest per supported language; edits to these can change the
# detected project type, so the watcher reacts to them.
LANGUAGE_MANIFESTS: Dict[str, str] = {
    "javascript": "package.json",
    "typescript": "tsconfig.json",
    "python": "pyproject.toml",
    "go": "go.mod",
    "rust": "Cargo.toml",
    "java": "pom.xml",
}


def watched_manifests() -> FrozenSet[str]:
    return frozenset(LANGUAGE_MANIFESTS.values())


def _matches_any(patterns, names: List[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns for name in names)


def determine_project_type(root: Path) -> str:
    """
    Best scoring entry of PROJECT_TYPES for the files directly under root.

    Score per type: 2*priority for an indicator file, +priority for a file
    matching its patterns, +priority for a top-level source file. Types with
    missing required files are skipped. Returns "generic" on no match.
    """
    root = Path(root)
    try:
        entries = list(root.iterdir())
    except OSError as e:
        logger.warning(f"Error detecting project type for {root}: {e}")
        return "generic"

    names = [entry.name for entry in entries]
    top_level_files = [entry.name for entry in entries if entry.is_file()]

    best: Optional[Tuple[str, int]] = None
    for key, project_type in PROJECT_TYPES.items():
        if project_type.required_files and not all(
            _matches_any([required], names) for required in project_type.required_files
        ):
            continue

        score = 0
        if _matches_any(project_type.indicators, names):
            score += 2 * project_type.priority
        if _matches_any(project_type.file_patterns, names):
            score += project_type.priority
        if project_type.source_extensions and any(
            name.endswith(project_type.source_extensions) for name in top_level_files
        ):
            score += project_type.priority

        if score > 0 and (best is None or score > best[1]):
            best = (key, score)

    return best[0] if best else "generic"


def describe_project_type(type_key: str) -> str:
    project_type = PROJECT_TYPES.get(type_key)
    return project_type.description if project_type else "A generic project"


# ============== GROUPED ENTITIES ==============

def _read_package_json(path: Path) -> Optional[dict]:
    manifest = path / "package.json"
    if not manifest.exists():
        return None
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning(f"Cannot read {manifest}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _read_pyproject(path: Path) -> Optional[dict]:
    manifest = path / "pyproject.toml"
    if not manifest.exists():
        return None
    try:
        with manifest.open("rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        logger.warning(f"Cannot read {manifest}: {e}")
        return None


def detect_entity_type(path: Path) -> str:
    """Classify an app/package directory from its manifest."""
    path = Path(path)
    package = _read_package_json(path)
    if package is not None:
        deps: Dict[str, str] = {}
        for section in ("dependencies", "devDependencies"):
            if isinstance(package.get(section), dict):
                deps.update(package[section])

        if "electron" in deps:
            return "electron"
        if "@mantine/core" in deps:
            return "mantine-web"
        if "tailwindcss" in deps:
            return "tailwind-web"
        if "express" in deps:
            return "express-api"
        if any(name.startswith("@storybook/") for name in deps):
            return "storybook"
        if "react-native" in deps:
            return "react-native"
        return "node"

    if (path / "pyproject.toml").exists() or (path / "setup.py").exists():
        return "python"
    if (path / "go.mod").exists():
        return "go"
    if (path / "Cargo.toml").exists():
        return "rust"
    return "unknown"


def read_entity_description(path: Path) -> str:
    """Description field from package.json or pyproject.toml, else ''."""
    path = Path(path)
    package = _read_package_json(path)
    if package and isinstance(package.get("description"), str):
        return package["description"].strip()

    pyproject = _read_pyproject(path)
    if pyproject:
        project = pyproject.get("project") or pyproject.get("tool", {}).get("poetry") or {}
        if isinstance(project.get("description"), str):
            return project["description"].strip()

    return ""
