# dirmap/services/project_registry.py
"""
Project Registry: the set of watched projects and their sessions.

An explicit object, not a module-level singleton; each registry owns its
sessions and generators and nothing is shared between registries.
"""

from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from dirmap.config.settings import cfg
from dirmap.llm.api_client import DescriptionProvider
from dirmap.services.structure_generator import GenerationResult, StructureGenerator
from dirmap.services.update_scheduler import WatchSession

logger = logging.getLogger(__name__)

GeneratorFactory = Callable[..., StructureGenerator]
SessionFactory = Callable[..., WatchSession]


def project_id_for(path: Union[str, Path]) -> str:
    """
    Project id derived from the final path segment.

    Two projects with the same directory name share an id, and so share a
    fingerprint cache file.
    """
    return Path(path).resolve().name


class ProjectRegistry:
    def __init__(
        self,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        session_factory: Optional[SessionFactory] = None,
        generator_factory: Optional[GeneratorFactory] = None,
        debounce_seconds: float = cfg.DEBOUNCE_SECONDS,
        minimum_interval: float = cfg.UPDATE_INTERVAL,
        auto_update: bool = cfg.AUTO_UPDATE,
    ):
        self._loop = loop
        self._session_factory = session_factory or WatchSession
        self._generator_factory = generator_factory or self._default_generator
        self.debounce_seconds = debounce_seconds
        self.minimum_interval = minimum_interval
        self.auto_update = auto_update

        self._sessions: Dict[str, WatchSession] = {}
        self._generators: Dict[str, StructureGenerator] = {}
        self._describer: Optional[DescriptionProvider] = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _default_generator(self, root_path: Path, project_id: str, max_depth: int) -> StructureGenerator:
        # One provider per registry so its rate limit covers every project
        if self._describer is None:
            self._describer = DescriptionProvider()
        return StructureGenerator(root_path, project_id, describer=self._describer, max_depth=max_depth)

    # ============== OPERATIONS ==============

    def add_project(
        self,
        path: Union[str, Path],
        project_id: Optional[str] = None,
        *,
        max_depth: int = cfg.MAX_DEPTH,
        minimum_interval: Optional[float] = None,
    ) -> str:
        """
        Register and start watching a project; returns its id.

        Already registered ids are left alone. A missing path is registered
        anyway, its session simply never fires.
        """
        root = Path(path).expanduser().resolve()
        project_id = project_id or project_id_for(root)

        if project_id in self._sessions:
            logger.info(f"[{project_id}] Already watching {self._sessions[project_id].root_path}")
            return project_id

        if root.is_dir():
            try:
                cfg.output_dir(root).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(f"[{project_id}] Cannot create output directory: {e}")
        else:
            logger.warning(f"[{project_id}] Project path does not exist: {root}")

        generator = self._generator_factory(root, project_id, max_depth)
        session = self._session_factory(
            project_id,
            root,
            generator.generate,
            loop=self.loop,
            debounce_seconds=self.debounce_seconds,
            minimum_interval=self.minimum_interval if minimum_interval is None else minimum_interval,
            auto_update=self.auto_update,
            artifact_path=generator.artifact_path,
        )
        session.start()

        self._generators[project_id] = generator
        self._sessions[project_id] = session
        logger.info(f"[{project_id}] Added project {root}")
        return project_id

    def remove_project(self, project_id: str) -> bool:
        session = self._sessions.pop(project_id, None)
        self._generators.pop(project_id, None)
        if session is None:
            logger.info(f"[{project_id}] Not registered, nothing to remove")
            return False

        session.stop()
        logger.info(f"[{project_id}] Removed project")
        return True

    def set_auto_update(self, project_id: str, enabled: bool) -> bool:
        session = self._sessions.get(project_id)
        if session is None:
            logger.warning(f"[{project_id}] Not registered")
            return False

        session.auto_update = enabled
        logger.info(f"[{project_id}] Auto-update {'enabled' if enabled else 'disabled'}")
        return True

    def stop_all(self) -> None:
        for project_id in list(self._sessions):
            self._sessions.pop(project_id).stop()
        self._generators.clear()

    def list_projects(self) -> List[str]:
        return list(self._sessions)

    def get_session(self, project_id: str) -> Optional[WatchSession]:
        return self._sessions.get(project_id)

    def get_generator(self, project_id: str) -> Optional[StructureGenerator]:
        return self._generators.get(project_id)

    def status(self) -> List[Dict[str, Any]]:
        return [session.status() for session in self._sessions.values()]

    async def generate(self, project_id: str) -> Optional[GenerationResult]:
        """Regenerate one project now and wait for it."""
        session = self._sessions.get(project_id)
        if session is None:
            logger.warning(f"[{project_id}] Not registered")
            return None

        task = session.trigger_now()
        if task is None:
            return None
        await asyncio.shield(task)
        return session.last_result
