# tests/unit/test_project_registry.py
import asyncio
from functools import partial

from dirmap.config.settings import cfg
from dirmap.services.fingerprint_store import FingerprintStore
from dirmap.services.project_registry import ProjectRegistry, project_id_for
from dirmap.services.structure_generator import StructureGenerator
from dirmap.services.update_scheduler import SessionState, WatchSession


class FakeObserver:
    def schedule(self, handler, path, recursive=False):
        pass

    def start(self):
        pass

    def stop(self):
        pass

    def join(self, timeout=None):
        pass


class BlockingGenerator:
    """Generator stand-in whose run waits until released."""

    def __init__(self, root):
        self.artifact_path = cfg.output_path(root)
        self.calls = 0
        self.finished = False
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        self.finished = True
        return None


def make_registry(tmp_path, fake_describer, **kwargs):
    def generator_factory(root, project_id, max_depth):
        return StructureGenerator(
            root,
            project_id,
            fingerprint_store=FingerprintStore(tmp_path / "fingerprints"),
            describer=fake_describer("src: Sources"),
            max_depth=max_depth,
        )

    kwargs.setdefault("debounce_seconds", 0.05)
    kwargs.setdefault("minimum_interval", 0)
    return ProjectRegistry(
        loop=asyncio.get_running_loop(),
        session_factory=partial(WatchSession, observer_factory=FakeObserver),
        generator_factory=generator_factory,
        **kwargs,
    )


def test_project_id_is_basename(tmp_path):
    assert project_id_for(tmp_path / "one" / "app") == "app"
    # Known collision: different parents, same id
    assert project_id_for(tmp_path / "two" / "app") == project_id_for(tmp_path / "one" / "app")


def test_add_generate_remove(sample_project, tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)

        project_id = registry.add_project(sample_project)
        assert project_id == "sample"
        assert registry.list_projects() == ["sample"]
        assert registry.get_session("sample").is_watching

        result = await registry.generate("sample")
        assert result is not None
        assert result.files_scanned == 3
        assert registry.status()[0]["regenerations"] == 1

        assert registry.remove_project("sample")
        assert not registry.remove_project("sample")
        assert registry.list_projects() == []

    asyncio.run(scenario())


def test_adding_twice_keeps_first_session(sample_project, tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)
        registry.add_project(sample_project)
        session = registry.get_session("sample")

        assert registry.add_project(sample_project) == "sample"
        assert registry.get_session("sample") is session
        registry.stop_all()

    asyncio.run(scenario())


def test_missing_path_is_registered_but_idle(tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)
        project_id = registry.add_project(tmp_path / "missing")

        session = registry.get_session(project_id)
        assert not session.is_watching

        result = await registry.generate(project_id)
        assert result.skipped
        registry.stop_all()

    asyncio.run(scenario())


def test_set_auto_update(sample_project, tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)
        registry.add_project(sample_project)

        assert registry.set_auto_update("sample", False)
        assert not registry.get_session("sample").auto_update
        assert not registry.get_session("sample").notify(sample_project / "src" / "app.py")
        assert not registry.set_auto_update("unknown", True)
        registry.stop_all()

    asyncio.run(scenario())


def test_stop_all_stops_every_session(sample_project, tmp_path, write_file, fake_describer):
    async def scenario():
        other = tmp_path / "other"
        write_file(other / "main.go", "package main\n\nfunc main() {}\n")

        registry = make_registry(tmp_path, fake_describer)
        registry.add_project(sample_project)
        registry.add_project(other)
        sessions = [registry.get_session(pid) for pid in registry.list_projects()]

        registry.stop_all()

        assert registry.list_projects() == []
        assert all(session.stopped for session in sessions)
        assert await registry.generate("sample") is None

    asyncio.run(scenario())


def test_file_event_regenerates_through_registry(sample_project, tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)
        registry.add_project(sample_project)
        session = registry.get_session("sample")

        assert session.notify(sample_project / "src" / "app.py", "modified")
        await asyncio.sleep(0.2)
        await session.wait_idle()

        assert session.regeneration_count == 1
        assert session.last_result.files_scanned == 3
        registry.stop_all()

    asyncio.run(scenario())


def test_fresh_project_scenario(sample_project, tmp_path, fake_describer):
    async def scenario():
        registry = make_registry(tmp_path, fake_describer)
        assert not cfg.output_dir(sample_project).exists()

        registry.add_project(sample_project)
        assert cfg.output_dir(sample_project).is_dir()

        generator = registry.get_generator("sample")
        for rel in ("src/app.py", "src/util.py", "lib/index.js"):
            content = (sample_project / rel).read_text(encoding="utf-8")
            assert generator.fingerprints.has_file_changed("sample", rel, content)
        assert generator.snapshot_cache.needs_full_regeneration()
        registry.stop_all()

    asyncio.run(scenario())


def test_remove_during_regeneration_leaves_session_stopped(sample_project):
    async def scenario():
        blocking = BlockingGenerator(sample_project)
        registry = ProjectRegistry(
            loop=asyncio.get_running_loop(),
            session_factory=partial(WatchSession, observer_factory=FakeObserver),
            generator_factory=lambda root, project_id, max_depth: blocking,
            debounce_seconds=0.05,
            minimum_interval=0,
        )
        registry.add_project(sample_project)
        session = registry.get_session("sample")

        task = session.trigger_now()
        await blocking.started.wait()
        assert session.notify(sample_project / "src" / "app.py", "modified")

        assert registry.remove_project("sample")
        blocking.release.set()
        await task

        assert blocking.finished
        assert session.state is SessionState.STOPPED
        assert session._debounce_handle is None
        assert not session.notify(sample_project / "src" / "app.py", "modified")

        await asyncio.sleep(0.2)
        assert blocking.calls == 1

    asyncio.run(scenario())
