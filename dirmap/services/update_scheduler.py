# dirmap/services/update_scheduler.py
"""
Update Scheduler: one WatchSession per watched project.

watchdog delivers events on its observer thread; every event is handed to
the asyncio loop with ``call_soon_threadsafe`` and all session state is
touched only on the loop thread.

    idle -> debounce_pending -> regenerating -> idle

A relevant event always cancels the pending timer and schedules a new one,
so a burst collapses into a single regeneration. Events arriving during a
regeneration mark a rerun, which re-enters debounce_pending afterwards.
"""

from __future__ import annotations
import asyncio
import logging
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from dirmap.config.settings import cfg
from dirmap.services.project_detector import watched_manifests
from dirmap.utils.analyzers import has_ignored_part, matches_ignored_file
from dirmap.utils.hashing import ContentHasher

logger = logging.getLogger(__name__)

RegenerateCallback = Callable[[], Awaitable[Any]]

RELEVANT_EVENT_TYPES = {"created", "modified", "deleted", "moved"}
STRUCTURAL_EVENT_TYPES = {"created", "deleted", "moved"}
OBSERVER_JOIN_TIMEOUT = 5.0


class SessionState(Enum):
    IDLE = "idle"
    DEBOUNCE_PENDING = "debounce_pending"
    REGENERATING = "regenerating"
    STOPPED = "stopped"


class _SessionEventHandler(FileSystemEventHandler):
    """Forwards watchdog events to the session's loop"""

    def __init__(self, session: "WatchSession"):
        super().__init__()
        self.session = session

    def on_any_event(self, event: FileSystemEvent):
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return

        self.session.post_event(os.fsdecode(event.src_path), event.event_type, event.is_directory)
        dest_path = getattr(event, "dest_path", "")
        if event.event_type == "moved" and dest_path:
            self.session.post_event(os.fsdecode(dest_path), event.event_type, event.is_directory)


class WatchSession:
    def __init__(
        self,
        project_id: str,
        root_path: Union[str, Path],
        regenerate: RegenerateCallback,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        debounce_seconds: float = cfg.DEBOUNCE_SECONDS,
        minimum_interval: float = cfg.UPDATE_INTERVAL,
        auto_update: bool = True,
        artifact_path: Optional[Path] = None,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.project_id = project_id
        self.root_path = Path(root_path).resolve()
        self.regenerate = regenerate
        self.loop = loop or asyncio.get_running_loop()
        self.debounce_seconds = debounce_seconds
        self.minimum_interval = minimum_interval
        self.auto_update = auto_update
        self.artifact_path = Path(artifact_path).resolve() if artifact_path else cfg.output_path(self.root_path)
        self._observer_factory = observer_factory

        self.state = SessionState.IDLE
        self.last_update_at: Optional[datetime] = None
        self.regeneration_count = 0
        self.last_result: Any = None

        self._observer = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._rerun = False
        self._last_update_time: Optional[float] = None  # loop clock
        self._last_artifact_digest: Optional[str] = None
        self._manifests = watched_manifests()

    # ============== LIFECYCLE ==============

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    @property
    def stopped(self) -> bool:
        return self.state is SessionState.STOPPED

    def start(self) -> bool:
        """Begin observing the project root. False if nothing is observed."""
        if self.stopped or self._observer is not None:
            return self._observer is not None

        if not self.root_path.is_dir():
            logger.warning(f"[{self.project_id}] Path does not exist, session will not fire: {self.root_path}")
            return False

        observer = self._observer_factory()
        try:
            observer.schedule(_SessionEventHandler(self), str(self.root_path), recursive=True)
            observer.start()
        except OSError as e:
            logger.warning(f"[{self.project_id}] Cannot watch {self.root_path}: {e}")
            return False

        self._observer = observer
        logger.info(f"[{self.project_id}] Watching {self.root_path}")
        return True

    def stop(self) -> None:
        """Cancel the timer and release the observer. Safe to call twice."""
        if self.stopped:
            return
        self.state = SessionState.STOPPED
        self._cancel_timer()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=OBSERVER_JOIN_TIMEOUT)
            self._observer = None
        logger.info(f"[{self.project_id}] Stopped watching")

    # ============== EVENTS ==============

    def post_event(self, path: str, event_type: str, is_directory: bool = False) -> None:
        """Called from the observer thread."""
        try:
            self.loop.call_soon_threadsafe(self.notify, path, event_type, is_directory)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def record_artifact_digest(self, digest: Optional[str]) -> None:
        if digest:
            self._last_artifact_digest = digest

    def _is_own_artifact_write(self, event_type: str) -> bool:
        if event_type == "deleted" or self._last_artifact_digest is None:
            return False
        try:
            current = ContentHasher.hash_bytes(self.artifact_path.read_bytes())
        except OSError:
            return False
        return current == self._last_artifact_digest

    def is_relevant(self, path: Union[str, Path], event_type: str, is_directory: bool = False) -> bool:
        candidate = Path(os.path.abspath(path))
        try:
            rel_parts = candidate.relative_to(self.root_path).parts
        except ValueError:
            return False

        if not rel_parts or has_ignored_part(rel_parts):
            return False

        if candidate == self.artifact_path:
            # Written by the running regeneration itself
            if self.state is SessionState.REGENERATING:
                return False
            return not self._is_own_artifact_write(event_type)

        if any(part.startswith(".") for part in rel_parts):
            return False

        name = rel_parts[-1]
        if is_directory:
            return event_type in STRUCTURAL_EVENT_TYPES
        if name in self._manifests:
            return True
        if matches_ignored_file(name):
            return False
        return candidate.suffix.lower() in cfg.CODE_EXTENSIONS

    def notify(self, path: Union[str, Path], event_type: str = "modified", is_directory: bool = False) -> bool:
        """
        Handle one file system event on the loop thread.

        Returns True if the event (re)armed the debounce timer or marked a
        rerun of an in-flight regeneration.
        """
        if self.stopped:
            return False
        if not self.is_relevant(path, event_type, is_directory):
            return False
        if not self.auto_update:
            logger.debug(f"[{self.project_id}] Auto-update off, ignoring {event_type} {path}")
            return False

        logger.debug(f"[{self.project_id}] {event_type}: {path}")
        if self.state is SessionState.REGENERATING:
            self._rerun = True
            return True

        self._schedule(self.debounce_seconds)
        return True

    # ============== TIMER ==============

    def _cancel_timer(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _schedule(self, delay: float) -> None:
        self._cancel_timer()
        self.state = SessionState.DEBOUNCE_PENDING
        self._debounce_handle = self.loop.call_later(max(delay, 0.0), self._on_timer)

    def _on_timer(self) -> None:
        self._debounce_handle = None
        if self.stopped:
            return
        if self.state is SessionState.REGENERATING:
            self._rerun = True
            return

        if self._last_update_time is not None:
            remaining = self.minimum_interval - (self.loop.time() - self._last_update_time)
            if remaining > 0:
                logger.debug(f"[{self.project_id}] Minimum interval not reached, retry in {remaining:.1f}s")
                self._schedule(remaining)
                return

        self._start_regeneration()

    # ============== REGENERATION ==============

    def _start_regeneration(self) -> asyncio.Task:
        self.state = SessionState.REGENERATING
        self._rerun = False
        self._task = self.loop.create_task(self._run_regeneration())
        return self._task

    async def _run_regeneration(self) -> None:
        logger.info(f"[{self.project_id}] Regenerating")
        self.last_result = None
        try:
            result = await self.regenerate()
        except Exception:
            logger.exception(f"[{self.project_id}] Regeneration failed")
        else:
            self.last_result = result
            self.record_artifact_digest(getattr(result, "artifact_digest", None))

        self._last_update_time = self.loop.time()
        self.last_update_at = datetime.now()
        self.regeneration_count += 1
        self._task = None

        if self.stopped:
            return
        if self._rerun:
            self._rerun = False
            self._schedule(self.debounce_seconds)
        else:
            self.state = SessionState.IDLE

    def trigger_now(self) -> Optional[asyncio.Task]:
        """
        Regenerate immediately, bypassing debounce and minimum interval.
        If a regeneration is running, a rerun is queued and its task returned.
        """
        if self.stopped:
            return None
        if self.state is SessionState.REGENERATING:
            self._rerun = True
            return self._task

        self._cancel_timer()
        return self._start_regeneration()

    async def wait_idle(self) -> None:
        """Wait for the in-flight regeneration, if any."""
        while self._task is not None:
            await asyncio.shield(self._task)

    def status(self) -> Dict[str, Any]:
        return {
            "id": self.project_id,
            "path": str(self.root_path),
            "auto_update": self.auto_update,
            "state": self.state.value,
            "watching": self.is_watching,
            "last_update": self.last_update_at.isoformat(timespec="seconds") if self.last_update_at else None,
            "regenerations": self.regeneration_count,
        }
