# tests/conftest.py
import shutil
import subprocess
from pathlib import Path
from typing import List

import pytest


class FakeDescriber:
    """Stands in for DescriptionProvider; records prompts, returns canned text."""

    def __init__(self, response: str = "", enabled: bool = True):
        self.response = response
        self.enabled = enabled
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if callable(self.response):
            return self.response(prompt)
        return self.response


@pytest.fixture
def fake_describer():
    return FakeDescriber


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def sample_project(tmp_path):
    root = tmp_path / "sample"
    write(root / "src" / "app.py", "import os\n\n\ndef main():\n    return 1\n\n\nclass App:\n    pass\n")
    write(root / "src" / "util.py", "def helper(x):\n    return x * 2\n")
    write(root / "lib" / "index.js", "export function start() {\n  return true;\n}\n")
    write(root / "README.md", "# sample\n")
    write(root / "pyproject.toml", "[project]\nname = 'sample'\n")
    return root


def git(root: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-C", str(root), *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


@pytest.fixture
def git_repo(sample_project):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    git(sample_project, "init", "-q")
    git(sample_project, "config", "user.email", "dev@example.com")
    git(sample_project, "config", "user.name", "Dev")
    git(sample_project, "config", "commit.gpgsign", "false")
    git(sample_project, "add", "-A")
    git(sample_project, "commit", "-q", "-m", "initial")
    return sample_project


@pytest.fixture
def write_file():
    return write


@pytest.fixture
def run_git():
    return git
