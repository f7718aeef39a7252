# tests/unit/test_project_detector.py
import json

import pytest

from dirmap.services.project_detector import (
    LANGUAGE_MANIFESTS,
    describe_project_type,
    detect_entity_type,
    determine_project_type,
    read_entity_description,
    watched_manifests,
)


def test_python_project(sample_project):
    assert determine_project_type(sample_project) == "python"
    assert describe_project_type("python") == "A Python project"


def test_javascript_outscores_plain_node(tmp_path, write_file):
    write_file(tmp_path / "package.json", "{}")
    write_file(tmp_path / "index.js", "")
    assert determine_project_type(tmp_path) == "javascript"


def test_typescript_project(tmp_path, write_file):
    write_file(tmp_path / "tsconfig.json", "{}")
    write_file(tmp_path / "index.ts", "")
    assert determine_project_type(tmp_path) == "typescript"


def test_generic_when_nothing_matches(tmp_path, write_file):
    write_file(tmp_path / "notes.txt", "hello")
    assert determine_project_type(tmp_path) == "generic"
    assert determine_project_type(tmp_path / "missing") == "generic"
    assert describe_project_type("generic") == "A generic project"


def test_one_manifest_per_language():
    assert len(set(LANGUAGE_MANIFESTS.values())) == len(LANGUAGE_MANIFESTS)
    assert watched_manifests() == frozenset(
        {"package.json", "tsconfig.json", "pyproject.toml", "go.mod", "Cargo.toml", "pom.xml"}
    )


@pytest.mark.parametrize("deps,expected", [
    ({"electron": "^28"}, "electron"),
    ({"@mantine/core": "7"}, "mantine-web"),
    ({"tailwindcss": "3"}, "tailwind-web"),
    ({"express": "4"}, "express-api"),
    ({"@storybook/react": "7"}, "storybook"),
    ({"react-native": "0.73"}, "react-native"),
    ({"lodash": "4"}, "node"),
])
def test_entity_type_from_package_json(tmp_path, write_file, deps, expected):
    write_file(tmp_path / "package.json", json.dumps({"dependencies": deps}))
    assert detect_entity_type(tmp_path) == expected


def test_entity_type_from_other_manifests(tmp_path, write_file):
    write_file(tmp_path / "py" / "pyproject.toml", "[project]\nname = 'x'\n")
    write_file(tmp_path / "go" / "go.mod", "module x\n")
    write_file(tmp_path / "rs" / "Cargo.toml", "[package]\nname = 'x'\n")
    (tmp_path / "empty").mkdir()

    assert detect_entity_type(tmp_path / "py") == "python"
    assert detect_entity_type(tmp_path / "go") == "go"
    assert detect_entity_type(tmp_path / "rs") == "rust"
    assert detect_entity_type(tmp_path / "empty") == "unknown"


def test_entity_description(tmp_path, write_file):
    write_file(tmp_path / "web" / "package.json", json.dumps({"description": " Web client "}))
    write_file(tmp_path / "api" / "pyproject.toml", "[project]\nname = 'api'\ndescription = 'REST API'\n")
    write_file(tmp_path / "bad" / "package.json", "{broken")

    assert read_entity_description(tmp_path / "web") == "Web client"
    assert read_entity_description(tmp_path / "api") == "REST API"
    assert read_entity_description(tmp_path / "bad") == ""
