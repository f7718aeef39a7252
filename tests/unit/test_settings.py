# tests/unit/test_settings.py
import json
from pathlib import Path

import pytest

from dirmap.config.settings import cfg, get_default_project_config, load_project_config
from dirmap.services.errors import ConfigError


def test_layout_paths(tmp_path):
    assert cfg.output_path(tmp_path) == tmp_path / ".dirmap" / "directory-structure.md"
    assert cfg.snapshot_path(tmp_path) == tmp_path / ".dirmap" / ".structure-cache" / "incremental-cache.json"


def test_file_length_limit():
    assert cfg.get_file_length_limit(".py") == 400
    assert cfg.get_file_length_limit(".PY") == 400
    assert cfg.get_file_length_limit(".unknown") == cfg.FILE_LENGTH_STANDARDS["default"]


def test_projects_list_resolved_against_config_dir(tmp_path):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({
        "projects": [
            {"name": "api", "project_path": "services/api", "update_interval": 30, "max_depth": 2},
            {"project_path": "web"},
        ]
    }), encoding="utf-8")

    projects = load_project_config(config)["projects"]

    assert projects[0] == {
        "name": "api",
        "project_path": str((tmp_path / "services" / "api").resolve()),
        "update_interval": 30.0,
        "max_depth": 2,
    }
    assert projects[1]["name"] == "web"
    assert projects[1]["update_interval"] == cfg.UPDATE_INTERVAL
    assert projects[1]["max_depth"] == cfg.MAX_DEPTH


def test_single_project_path(tmp_path):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"project_path": "app"}), encoding="utf-8")

    projects = load_project_config(config)["projects"]
    assert len(projects) == 1
    assert Path(projects[0]["project_path"]) == (tmp_path / "app").resolve()
    assert projects[0]["name"] == "app"


def test_missing_or_broken_config_falls_back_to_default(tmp_path):
    default = get_default_project_config()
    assert load_project_config(tmp_path / "absent.json") == default

    broken = tmp_path / "config.json"
    broken.write_text("{oops", encoding="utf-8")
    assert load_project_config(broken) == default


def test_strict_mode_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_project_config(tmp_path / "absent.json", strict=True)

    broken = tmp_path / "config.json"
    broken.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_project_config(broken, strict=True)
