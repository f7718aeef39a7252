# tests/unit/test_update_scheduler.py
import asyncio
import threading

from watchdog.events import DirCreatedEvent, FileModifiedEvent, FileMovedEvent

from dirmap.config.settings import cfg
from dirmap.services.fingerprint_store import FingerprintStore
from dirmap.services.structure_generator import StructureGenerator
from dirmap.services.update_scheduler import SessionState, WatchSession, _SessionEventHandler
from dirmap.utils.hashing import ContentHasher

DEBOUNCE = 0.05


class FakeObserver:
    instances = []

    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.joined = False
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True


class Recorder:
    """Regenerate callback counting calls, optionally blocking until released."""

    def __init__(self, block=False, fail=False):
        self.calls = 0
        self.block = block
        self.fail = fail
        self.release = None

    async def __call__(self):
        self.calls += 1
        if self.block:
            self.release = asyncio.Event()
            await self.release.wait()
        if self.fail:
            raise RuntimeError("generator exploded")
        return None


def make_session(root, regenerate, **kwargs):
    kwargs.setdefault("debounce_seconds", DEBOUNCE)
    kwargs.setdefault("minimum_interval", 0)
    kwargs.setdefault("observer_factory", FakeObserver)
    return WatchSession("sample", root, regenerate, loop=asyncio.get_running_loop(), **kwargs)


def test_burst_collapses_into_one_regeneration(sample_project):
    async def scenario():
        recorder = Recorder()
        session = make_session(sample_project, recorder)

        for _ in range(5):
            assert session.notify(sample_project / "src" / "app.py", "modified")
            await asyncio.sleep(DEBOUNCE / 5)
        assert session.state is SessionState.DEBOUNCE_PENDING
        assert recorder.calls == 0

        await asyncio.sleep(DEBOUNCE * 4)
        await session.wait_idle()
        assert recorder.calls == 1
        assert session.state is SessionState.IDLE
        assert session.regeneration_count == 1
        assert session.last_update_at is not None

    asyncio.run(scenario())


def test_burst_regeneration_sees_last_write(sample_project, tmp_path, write_file, fake_describer):
    async def scenario():
        generator = StructureGenerator(
            sample_project,
            "sample",
            fingerprint_store=FingerprintStore(tmp_path / "fingerprints"),
            describer=fake_describer(""),
            describe_functions=False,
            describe_directories=False,
        )
        session = make_session(sample_project, generator.generate)
        target = sample_project / "src" / "app.py"

        for version in range(3):
            write_file(target, f"def main():\n    return {version}\n")
            assert session.notify(target, "modified")
            await asyncio.sleep(DEBOUNCE / 5)

        await asyncio.sleep(DEBOUNCE * 4)
        await session.wait_idle()

        assert session.regeneration_count == 1
        assert session.last_result.files_updated == 3
        cached = generator.fingerprints.get_cached_file_content("sample", "src/app.py")
        assert cached == "def main():\n    return 2\n"

    asyncio.run(scenario())


def test_relevance_filter(sample_project):
    async def scenario():
        session = make_session(sample_project, Recorder())

        assert session.is_relevant(sample_project / "src" / "app.py", "modified")
        assert session.is_relevant(sample_project / "pyproject.toml", "modified")
        assert session.is_relevant(sample_project / "newdir", "created", is_directory=True)

        assert not session.is_relevant(sample_project / "newdir", "modified", is_directory=True)
        assert not session.is_relevant(sample_project / "README.md", "modified")
        assert not session.is_relevant(sample_project / "node_modules" / "x" / "index.js", "created")
        assert not session.is_relevant(sample_project / ".git" / "index", "modified")
        assert not session.is_relevant(sample_project / ".venv" / "lib" / "a.py", "modified")
        assert not session.is_relevant(sample_project / "src" / "app.pyc", "created")
        assert not session.is_relevant(sample_project.parent / "elsewhere.py", "modified")
        assert not session.is_relevant(sample_project, "modified", is_directory=True)

    asyncio.run(scenario())


def test_auto_update_off_ignores_events(sample_project):
    async def scenario():
        recorder = Recorder()
        session = make_session(sample_project, recorder, auto_update=False)

        assert not session.notify(sample_project / "src" / "app.py")
        await asyncio.sleep(DEBOUNCE * 3)
        assert recorder.calls == 0
        assert session.state is SessionState.IDLE

        session.auto_update = True
        assert session.notify(sample_project / "src" / "app.py")
        session.stop()

    asyncio.run(scenario())


def test_event_during_regeneration_schedules_rerun(sample_project):
    async def scenario():
        recorder = Recorder(block=True)
        session = make_session(sample_project, recorder)

        session.notify(sample_project / "src" / "app.py")
        await asyncio.sleep(DEBOUNCE * 3)
        assert session.state is SessionState.REGENERATING
        assert recorder.calls == 1

        assert session.notify(sample_project / "src" / "util.py")
        recorder.release.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert session.state is SessionState.DEBOUNCE_PENDING

        await asyncio.sleep(DEBOUNCE * 3)
        assert recorder.calls == 2
        recorder.release.set()
        await session.wait_idle()
        assert session.state is SessionState.IDLE
        assert session.regeneration_count == 2

    asyncio.run(scenario())


def test_minimum_interval_defers_regeneration(sample_project):
    async def scenario():
        recorder = Recorder()
        session = make_session(sample_project, recorder, minimum_interval=DEBOUNCE * 6)

        await session.trigger_now()
        assert recorder.calls == 1

        session.notify(sample_project / "src" / "app.py")
        await asyncio.sleep(DEBOUNCE * 3)
        # Debounce elapsed, but the minimum interval has not
        assert recorder.calls == 1
        assert session.state is SessionState.DEBOUNCE_PENDING

        await asyncio.sleep(DEBOUNCE * 6)
        await session.wait_idle()
        assert recorder.calls == 2

    asyncio.run(scenario())


def test_failed_regeneration_is_swallowed(sample_project):
    async def scenario():
        recorder = Recorder(fail=True)
        session = make_session(sample_project, recorder)

        await session.trigger_now()
        assert session.state is SessionState.IDLE
        assert session.regeneration_count == 1
        assert session.last_result is None

        assert session.notify(sample_project / "src" / "app.py")
        session.stop()

    asyncio.run(scenario())


def test_own_artifact_write_is_ignored(sample_project):
    async def scenario():
        artifact = cfg.output_path(sample_project)
        artifact.parent.mkdir(parents=True, exist_ok=True)
        artifact.write_text("# map", encoding="utf-8")

        session = make_session(sample_project, Recorder(), artifact_path=artifact)
        session.record_artifact_digest(ContentHasher.hash_content("# map"))
        assert not session.notify(artifact, "modified")

        # Someone else edited the artifact
        artifact.write_text("# hand edited", encoding="utf-8")
        assert session.notify(artifact, "modified")
        session.stop()

    asyncio.run(scenario())


def test_stop_is_idempotent_and_cancels_timer(sample_project):
    async def scenario():
        recorder = Recorder()
        session = make_session(sample_project, recorder)
        assert session.start()
        observer = session._observer
        assert observer.scheduled[0][1:] == (str(sample_project.resolve()), True)
        assert observer.started

        session.notify(sample_project / "src" / "app.py")
        session.stop()
        session.stop()

        assert observer.stopped and observer.joined
        assert not session.is_watching
        assert session.stopped

        await asyncio.sleep(DEBOUNCE * 3)
        assert recorder.calls == 0
        assert not session.notify(sample_project / "src" / "app.py")
        assert session.trigger_now() is None

    asyncio.run(scenario())


def test_missing_root_never_observes(tmp_path):
    async def scenario():
        session = make_session(tmp_path / "missing", Recorder())
        assert not session.start()
        assert not session.is_watching

    asyncio.run(scenario())


def test_events_from_observer_thread_reach_the_loop(sample_project):
    async def scenario():
        recorder = Recorder()
        session = make_session(sample_project, recorder)
        handler = _SessionEventHandler(session)

        src = str(sample_project / "src" / "app.py")
        events = [
            FileModifiedEvent(src),
            DirCreatedEvent(str(sample_project / "pkg")),
            FileMovedEvent(src, str(sample_project / "src" / "renamed.py")),
        ]
        thread = threading.Thread(target=lambda: [handler.dispatch(e) for e in events])
        thread.start()
        thread.join()

        await asyncio.sleep(0)
        assert session.state is SessionState.DEBOUNCE_PENDING
        await asyncio.sleep(DEBOUNCE * 3)
        await session.wait_idle()
        assert recorder.calls == 1

    asyncio.run(scenario())


def test_status(sample_project):
    async def scenario():
        session = make_session(sample_project, Recorder())
        status = session.status()
        assert status["id"] == "sample"
        assert status["state"] == "idle"
        assert status["auto_update"] is True
        assert status["last_update"] is None

    asyncio.run(scenario())
