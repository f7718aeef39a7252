# tests/unit/test_snapshot_cache.py
import json

import pytest

from dirmap.config.settings import cfg
from dirmap.services.snapshot_cache import (
    SENTINEL,
    ChangeSet,
    EntitySummary,
    SnapshotCache,
    is_synthetic_reference,
)


def test_change_set_sentinels():
    full = ChangeSet.full_rescan()
    same = ChangeSet.nothing_changed()

    assert full.is_full_rescan and not full.is_unchanged
    assert same.is_unchanged and not same.is_full_rescan
    assert full.added == [SENTINEL]
    assert full.changed_paths == []
    assert ChangeSet(added=["a"], deleted=["b"]).summary() == "+1 ~0 -1"


def test_missing_snapshot_means_full_rescan(tmp_path):
    cache = SnapshotCache(tmp_path)
    assert cache.load() is None
    assert cache.detect_changes().is_full_rescan
    assert cache.needs_full_regeneration()


def test_update_persists_and_stamps(tmp_path):
    cache = SnapshotCache(tmp_path, "proj")
    cache.detect_changes()
    snapshot = cache.update(path_descriptions={"src": "Sources"}, file_hashes={"a.py": "abc"})

    assert snapshot.version == cfg.SNAPSHOT_VERSION
    assert snapshot.last_reference_id
    assert snapshot.last_generated_at

    data = json.loads(cache.snapshot_path.read_text(encoding="utf-8"))
    assert data["path_descriptions"] == {"src": "Sources"}
    assert data["file_hashes"] == {"a.py": "abc"}

    reloaded = SnapshotCache(tmp_path, "proj")
    assert reloaded.get_cached_description("src") == "Sources"


def test_update_rejects_unknown_and_stamped_fields(tmp_path):
    cache = SnapshotCache(tmp_path)
    with pytest.raises(TypeError):
        cache.update(bogus=1)
    with pytest.raises(TypeError):
        cache.update(last_reference_id="abc")


def test_wrong_version_is_ignored(tmp_path):
    cache = SnapshotCache(tmp_path)
    cache.snapshot_path.parent.mkdir(parents=True)
    cache.snapshot_path.write_text(json.dumps({"version": "1.0", "last_reference_id": "x"}), encoding="utf-8")

    assert cache.load() is None
    assert cache.detect_changes().is_full_rescan


def test_corrupt_snapshot_is_ignored(tmp_path):
    cache = SnapshotCache(tmp_path)
    cache.snapshot_path.parent.mkdir(parents=True)
    cache.snapshot_path.write_text("{{{", encoding="utf-8")
    assert cache.load() is None


def test_synthetic_references_force_full_rescan(tmp_path):
    cache = SnapshotCache(tmp_path)
    cache.update(reference="time-1-0")

    first = cache.current_reference()
    second = cache.current_reference()
    if is_synthetic_reference(first):
        assert first != second
        assert cache.detect_changes().is_full_rescan


def test_directory_has_changes(tmp_path):
    cache = SnapshotCache(tmp_path)
    changes = ChangeSet(added=["src/new.py"], modified=["lib/util/x.py"])

    assert cache.directory_has_changes("src", changes)
    assert cache.directory_has_changes("lib/util", changes)
    assert cache.directory_has_changes(tmp_path / "lib", changes)
    assert not cache.directory_has_changes("docs", changes)
    assert cache.directory_has_changes("docs", ChangeSet.full_rescan())
    assert not cache.directory_has_changes("src", ChangeSet.nothing_changed())


def test_entity_hash_tracks_structure(tmp_path, write_file):
    entity = tmp_path / "apps" / "web"
    write_file(entity / "index.js", "console.log(1)\n")
    cache = SnapshotCache(tmp_path)

    first = cache.entity_hash(entity)
    assert len(first) == 12
    assert cache.entity_hash(entity) == first

    write_file(entity / "other.js", "x\n")
    assert cache.entity_hash(entity) != first


def test_entity_hash_skips_hidden_and_ignored(tmp_path, write_file):
    entity = tmp_path / "apps" / "web"
    write_file(entity / "index.js", "x\n")
    cache = SnapshotCache(tmp_path)
    before = cache.entity_hash(entity)

    write_file(entity / ".cache-file", "noise")
    write_file(entity / "node_modules" / "dep" / "index.js", "noise")
    assert cache.entity_hash(entity) == before


def test_cached_entity_requires_matching_hash(tmp_path, write_file):
    entity = tmp_path / "apps" / "web"
    write_file(entity / "index.js", "x\n")
    cache = SnapshotCache(tmp_path)

    summary = EntitySummary(files=1, lines=1, type="node", hash=cache.entity_hash(entity))
    cache.update(grouped_entities={"apps": {"web": summary}})

    assert cache.get_cached_entity("apps", "web") == summary
    assert cache.get_cached_entity("apps", "api") is None

    write_file(entity / "more.js", "y\n")
    assert cache.get_cached_entity("apps", "web") is None


def test_cache_description_persisted_by_update(tmp_path):
    cache = SnapshotCache(tmp_path)
    cache.cache_description("src", "Source code")
    assert cache.get_cached_description("src") == "Source code"

    cache.update()
    assert SnapshotCache(tmp_path).get_cached_description("src") == "Source code"


def test_clear_and_stats(tmp_path):
    cache = SnapshotCache(tmp_path)
    assert cache.cache_stats()["hits"] == 0

    cache.update(
        grouped_entities={"apps": {"web": EntitySummary(hash="abc")}},
        path_descriptions={"a": "x", "b": "y"},
    )
    stats = cache.cache_stats()
    assert stats["hits"] == 1
    assert stats["cached_descriptions"] == 2
    assert stats["saved_time"] == "4s"

    cache.clear()
    assert not cache.snapshot_path.exists()
    assert cache.load() is None


# ============== GIT ==============

def test_same_head_means_nothing_changed(git_repo):
    cache = SnapshotCache(git_repo)
    cache.detect_changes()
    cache.update()

    assert cache.detect_changes().is_unchanged
    assert not cache.needs_full_regeneration()


def test_git_diff_classifies_paths(git_repo, run_git, write_file):
    cache = SnapshotCache(git_repo)
    cache.detect_changes()
    cache.update()

    write_file(git_repo / "src" / "app.py", "def main():\n    return 2\n")
    write_file(git_repo / "docs" / "guide.py", "def guide():\n    pass\n")
    run_git(git_repo, "mv", "src/util.py", "src/helpers.py")
    (git_repo / "lib" / "index.js").unlink()
    run_git(git_repo, "add", "-A")
    run_git(git_repo, "commit", "-q", "-m", "second")

    changes = cache.detect_changes()
    assert not changes.is_full_rescan
    assert "src/app.py" in changes.modified
    assert "docs/guide.py" in changes.added
    assert "src/helpers.py" in changes.added
    assert "src/util.py" in changes.deleted
    assert "lib/index.js" in changes.deleted

    assert cache.directory_has_changes("docs", changes)
    assert not cache.directory_has_changes("tests", changes)


def test_unknown_stored_revision_falls_back_to_full(git_repo):
    cache = SnapshotCache(git_repo)
    cache.update(reference="0" * 40)
    assert cache.detect_changes().is_full_rescan


def test_update_stamps_revision_seen_at_detection(git_repo, run_git, write_file):
    cache = SnapshotCache(git_repo)
    cache.detect_changes()
    detected = run_git(git_repo, "rev-parse", "HEAD")

    # Commit lands while the generation is running
    write_file(git_repo / "late.py", "x = 1\n")
    run_git(git_repo, "add", "-A")
    run_git(git_repo, "commit", "-q", "-m", "late")

    snapshot = cache.update()
    assert snapshot.last_reference_id == detected
    assert not cache.detect_changes().is_unchanged
