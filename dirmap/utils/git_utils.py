# dirmap/utils/git_utils.py
"""Thin wrappers over the git CLI used by change detection."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dirmap.services.errors import GitDiffError, GitUnavailableError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10.0


@dataclass
class DiffEntries:
    """Paths touched between two revisions, relative to the project root."""
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)


def _run_git(root: Path, args: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", "-C", str(root), *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise GitUnavailableError(f"Cannot run git in {root}: {e}") from e


def get_head_reference(root: Path) -> str:
    """Commit id of HEAD for the repository containing ``root``."""
    proc = _run_git(Path(root), ["rev-parse", "HEAD"])
    if proc.returncode != 0:
        raise GitUnavailableError(f"Not a git revision at {root}: {proc.stderr.strip()}")

    ref = proc.stdout.strip()
    if not ref:
        raise GitUnavailableError(f"git rev-parse returned nothing for {root}")
    return ref


def diff_name_status(root: Path, old_ref: str, new_ref: str) -> DiffEntries:
    """
    Classify the paths changed between two revisions.

    Runs ``git diff --name-status -z --relative old new`` so paths come back
    relative to ``root`` and anything outside it is dropped. Renames become
    a delete of the old path plus an add of the new one, copies an add.
    Raises GitDiffError when either revision cannot be resolved.
    """
    proc = _run_git(Path(root), ["diff", "--name-status", "-z", "--relative", old_ref, new_ref])
    if proc.returncode != 0:
        raise GitDiffError(
            f"git diff {old_ref[:12]}..{new_ref[:12]} failed: {proc.stderr.strip()}",
            old_ref=old_ref,
            new_ref=new_ref,
        )

    entries = DiffEntries()
    fields = proc.stdout.split("\0")
    i = 0
    while i < len(fields):
        status = fields[i]
        if not status:
            i += 1
            continue

        kind = status[0]
        if kind in ("R", "C"):
            if i + 2 >= len(fields):
                break
            old_path, new_path = fields[i + 1], fields[i + 2]
            if kind == "R":
                entries.deleted.append(old_path)
            entries.added.append(new_path)
            i += 3
            continue

        if i + 1 >= len(fields):
            break
        path = fields[i + 1]
        if kind == "A":
            entries.added.append(path)
        elif kind == "D":
            entries.deleted.append(path)
        else:
            # M, T (type change), U (unmerged)
            entries.modified.append(path)
        i += 2

    logger.debug(
        f"git diff {old_ref[:12]}..{new_ref[:12]}: +{len(entries.added)} "
        f"~{len(entries.modified)} -{len(entries.deleted)}"
    )
    return entries
