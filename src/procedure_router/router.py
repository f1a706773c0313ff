from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from pathlib import Path

from .loader import WorkflowLoader
from .models import VcsPlatform, WorkflowDefinition, WorkflowSelectionDecision
from .registry import ProcedureRegistry, build_default_registry
from .runners import RoutingRunner, build_routing_runner
from .selector import WorkflowSelector
from .settings import RouterSettings
from .state_machine import ProcedureStateMachine
from .validation_loop import ValidationLoopController

logger = logging.getLogger(__name__)


class ProcedureRouter:
    """Own the built-in registry, the external loader and the merged snapshot.

    The merged registry and the loaded definitions live in one tuple that is
    replaced by :meth:`reload` / :meth:`refresh`, which run one at a time
    under a writer lock; every reader takes the current tuple without locking.
    A failed reload leaves the previous snapshot published.
    """

    def __init__(
        self,
        runner: RoutingRunner,
        *,
        registry: ProcedureRegistry | None = None,
        loader: WorkflowLoader | None = None,
        timeout: float = 10.0,
        platform: VcsPlatform | str | None = None,
        validation: ValidationLoopController | None = None,
    ) -> None:
        self.built_ins = registry or build_default_registry()
        self.loader = loader
        self.platform = platform
        self.validation = validation or ValidationLoopController()
        self._write_lock = threading.Lock()
        self._snapshot: tuple[ProcedureRegistry, tuple[WorkflowDefinition, ...]] = (self.built_ins, ())
        self.selector = WorkflowSelector(lambda: self.registry, runner, timeout=timeout, platform=self.platform)
        self.state_machine = ProcedureStateMachine(lambda: self.registry)

    @classmethod
    def from_settings(
        cls,
        settings: RouterSettings,
        *,
        runner: RoutingRunner | None = None,
        repo_root: Path | None = None,
    ) -> "ProcedureRouter":
        loader = None
        if settings.workflows_source:
            loader = WorkflowLoader(
                settings.workflows_source,
                branch=settings.workflows_branch,
                path=settings.workflows_path,
                home=settings.home_path,
                cache_enabled=settings.cache_enabled,
            )
        return cls(
            runner or build_routing_runner(settings, repo_root=repo_root),
            loader=loader,
            timeout=float(settings.timeout_seconds),
            platform=settings.vcs_platform,
            validation=ValidationLoopController(
                max_iterations=settings.validation_max_iterations,
                max_parse_retries=settings.validation_parse_retries,
            ),
        )

    @property
    def registry(self) -> ProcedureRegistry:
        return self._snapshot[0]

    @property
    def definitions(self) -> tuple[WorkflowDefinition, ...]:
        return self._snapshot[1]

    def _publish(self) -> ProcedureRegistry:
        if self.loader is None:
            return self.registry
        procedures, workflows = self.loader.snapshot()
        definitions = tuple(workflows)
        merged = self.built_ins.with_overrides(procedures)
        self._snapshot = (merged, definitions)
        logger.info("Registry holds %d procedure(s), %d external", len(merged), len(definitions))
        return merged

    def reload(self) -> ProcedureRegistry:
        """Load external definitions (if configured) and publish a new merged registry."""
        with self._write_lock:
            if self.loader is not None:
                self.loader.load()
            return self._publish()

    def refresh(self) -> ProcedureRegistry:
        with self._write_lock:
            if self.loader is not None:
                self.loader.refresh()
            return self._publish()

    async def areload(self) -> ProcedureRegistry:
        return await asyncio.to_thread(self.reload)

    async def arefresh(self) -> ProcedureRegistry:
        return await asyncio.to_thread(self.refresh)

    async def select(
        self,
        request_text: str,
        labels: Sequence[str] | None = None,
        *,
        platform: VcsPlatform | str | None = None,
        timeout: float | None = None,
    ) -> WorkflowSelectionDecision:
        return await self.selector.select(
            request_text,
            labels,
            list(self.definitions),
            platform=platform,
            timeout=timeout,
        )

    def load_errors(self) -> dict[str, str]:
        """Per-file errors from the last external load, keyed by file name."""
        return self.loader.errors() if self.loader is not None else {}
