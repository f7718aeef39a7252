# dirmap/config/settings.py
import json
import logging
import os
from dotenv import load_dotenv
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# .env is looked up in the working directory, next to config.json
BASE_DIR = Path.cwd()
load_dotenv(BASE_DIR / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}={raw!r}, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # ============ DESCRIPTION PROVIDER (OpenRouter) ============
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
    OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

    # Free model by default
    DESCRIBE_MODEL = os.getenv("DESCRIBE_MODEL", "google/gemini-2.0-flash-exp:free")
    DESCRIBE_MAX_TOKENS = _env_int("DESCRIBE_MAX_TOKENS", 500)
    DESCRIBE_RATE_LIMIT_MS = _env_int("DESCRIBE_RATE_LIMIT_MS", 500)
    DESCRIBE_MAX_PROMPT_TOKENS = _env_int("DESCRIBE_MAX_PROMPT_TOKENS", 6000)

    # Function descriptions cost one request per changed function
    DESCRIBE_FUNCTIONS = _env_bool("DESCRIBE_FUNCTIONS", False)
    DESCRIBE_DIRECTORIES = _env_bool("DESCRIBE_DIRECTORIES", True)

    # ============ OUTPUT & CACHE LAYOUT ============
    OUTPUT_DIR_NAME = os.getenv("DIRMAP_OUTPUT_DIR", ".dirmap")
    OUTPUT_FILENAME = "directory-structure.md"
    SNAPSHOT_DIR_NAME = ".structure-cache"
    SNAPSHOT_FILENAME = "incremental-cache.json"
    SNAPSHOT_VERSION = "2.0"

    _cache_raw = os.getenv("DIRMAP_CACHE_DIR")
    CACHE_DIR = Path(_cache_raw).expanduser() if _cache_raw else BASE_DIR / ".dirmap" / "cache"

    # ============ SCHEDULING ============
    # Minimum seconds between two regenerations of the same project
    UPDATE_INTERVAL = _env_float("DIRMAP_UPDATE_INTERVAL", 60.0)
    DEBOUNCE_SECONDS = _env_float("DIRMAP_DEBOUNCE_SECONDS", 2.0)
    MAX_DEPTH = _env_int("DIRMAP_MAX_DEPTH", 3)
    AUTO_UPDATE = _env_bool("DIRMAP_AUTO_UPDATE", True)

    # ============ SCAN TABLES ============
    IGNORED_DIRECTORIES = {
        "__pycache__", "node_modules", "venv", ".venv", ".git", ".hg", ".svn",
        ".idea", ".vscode", "dist", "build", "coverage", ".mypy_cache",
        ".pytest_cache", ".tox", ".cache", "logs",
    }

    IGNORED_FILES: List[str] = [
        ".DS_Store", "Thumbs.db", "*.pyc", "*.pyo", "*.log",
        "package-lock.json", "yarn.lock",
    ]

    BINARY_EXTENSIONS = {
        ".png", ".jpg", ".jpeg", ".gif", ".ico", ".pdf", ".exe", ".bin",
        ".zip", ".gz", ".so", ".dll", ".woff", ".woff2",
    }

    CODE_EXTENSIONS = {
        ".py", ".js", ".ts", ".tsx", ".jsx", ".java", ".kt", ".php", ".swift",
        ".cpp", ".c", ".h", ".hpp", ".cs", ".csx", ".rb", ".go", ".zig",
        ".rs", ".lua", ".groovy",
    }

    FILE_LENGTH_STANDARDS: Dict[str, int] = {
        ".py": 400, ".js": 300, ".ts": 300, ".tsx": 300, ".jsx": 250,
        ".kt": 300, ".php": 400, ".swift": 400, ".cpp": 500, ".c": 500,
        ".h": 300, ".hpp": 300, ".cs": 400, ".csx": 400, ".rb": 300,
        ".go": 400, ".zig": 300, ".rs": 400, ".lua": 300, ".groovy": 300,
        "default": 300,
    }

    # Directories whose children are summarised as grouped entities
    ENTITY_GROUPS = ["apps", "packages"]

    def get_file_length_limit(self, ext: str) -> int:
        return self.FILE_LENGTH_STANDARDS.get(ext.lower(), self.FILE_LENGTH_STANDARDS["default"])

    def output_dir(self, project_path: Path) -> Path:
        return Path(project_path) / self.OUTPUT_DIR_NAME

    def output_path(self, project_path: Path) -> Path:
        return self.output_dir(project_path) / self.OUTPUT_FILENAME

    def snapshot_path(self, project_path: Path) -> Path:
        return self.output_dir(project_path) / self.SNAPSHOT_DIR_NAME / self.SNAPSHOT_FILENAME


# Module-level config instance
cfg = Config()


# ============ PROJECT CONFIG (config.json) ============

def _resolve_project_path(raw: Optional[str], base: Path) -> Path:
    if not raw:
        return base
    return (base / raw).resolve()


def get_default_project_config(project_path: Optional[str] = None) -> Dict[str, Any]:
    """Single-project config used when no config.json is present."""
    path = Path(project_path).resolve() if project_path else BASE_DIR
    return {
        "projects": [
            {
                "name": path.name,
                "project_path": str(path),
                "update_interval": cfg.UPDATE_INTERVAL,
                "max_depth": cfg.MAX_DEPTH,
            }
        ]
    }


def load_project_config(config_path: Optional[Path] = None, strict: bool = False) -> Dict[str, Any]:
    """
    Reads config.json and normalises it to {"projects": [...]}.

    Relative project paths are resolved against the config file's directory.
    A missing or unparsable file yields the default single-project config,
    unless ``strict`` is set (explicit --config on the command line), in
    which case ConfigError is raised.
    """
    from dirmap.services.errors import ConfigError

    path = Path(config_path) if config_path else BASE_DIR / "config.json"

    if not path.exists():
        if strict:
            raise ConfigError(f"Config file not found: {path}")
        return get_default_project_config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        if strict:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        logger.warning(f"Error loading config {path}: {e}")
        return get_default_project_config()

    if not isinstance(data, dict):
        if strict:
            raise ConfigError(f"Config {path} is not a JSON object")
        logger.warning(f"Config {path} is not a JSON object, using defaults")
        return get_default_project_config()

    base = path.parent.resolve()
    projects = data.get("projects")

    if not projects:
        projects = [{
            "name": data.get("name") or _resolve_project_path(data.get("project_path"), base).name,
            "project_path": data.get("project_path", ""),
            "update_interval": data.get("update_interval", cfg.UPDATE_INTERVAL),
            "max_depth": data.get("max_depth", cfg.MAX_DEPTH),
        }]

    normalised = []
    for project in projects:
        if not isinstance(project, dict):
            continue
        resolved = _resolve_project_path(project.get("project_path"), base)
        normalised.append({
            "name": project.get("name") or resolved.name,
            "project_path": str(resolved),
            "update_interval": float(project.get("update_interval", cfg.UPDATE_INTERVAL)),
            "max_depth": int(project.get("max_depth", cfg.MAX_DEPTH)),
        })

    return {"projects": normalised}
