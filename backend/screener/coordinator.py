"""Pipeline coordinator: runs every missing stage of a session with failure isolation."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .errors import SessionNotFound, StageFailure, StoreFailure, WaitTimeout
from .stages import Stage, StageInvoker, StageRegistry, StageResult, StageTrigger
from .store import METADATA, ArtifactStore
from .waiter import DependencyWaiter

logger = logging.getLogger(__name__)


@dataclass
class StageError:
    stage: str
    error: StageFailure

    def to_dict(self) -> dict:
        return {"stage": self.stage, "error": self.error.message}


@dataclass
class PipelineRunResult:
    session_id: str
    per_stage: dict[str, StageResult] = field(default_factory=dict)
    errors: list[StageError] = field(default_factory=list)
    # stage name -> artifact name, for the artifacts view
    _artifact_of: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def artifacts(self) -> dict[str, dict]:
        """Successful stage outputs keyed by artifact name."""
        return {
            self._artifact_of[name]: r.value
            for name, r in self.per_stage.items()
            if r.ok
        }

    def artifact(self, name: str) -> Optional[dict]:
        return self.artifacts.get(name)

    def to_dict(self) -> dict:
        return {
            "perStage": {
                name: ({"ok": True, "value": r.value} if r.ok else {"ok": False, "error": r.error.message})
                for name, r in self.per_stage.items()
            },
            "errors": [e.to_dict() for e in self.errors],
        }


class PipelineCoordinator:
    def __init__(
        self,
        store: ArtifactStore,
        registry: StageRegistry,
        invoker: StageInvoker,
        waiter: DependencyWaiter,
        trigger: StageTrigger,
    ):
        self.store = store
        self.registry = registry
        self.invoker = invoker
        self.waiter = waiter
        self.trigger = trigger

    async def run(self, session_id: str) -> PipelineRunResult:
        """Bring every stage artifact of ``session_id`` into existence if possible.

        Raises ``SessionNotFound`` when the session has no metadata. Any other
        failure is recorded per stage and never raised. A stage that failed
        but whose artifact exists by the end of the run (a self-heal trigger
        re-ran it) is reported with that artifact.
        """
        if not await self.store.exists(session_id, METADATA):
            raise SessionNotFound(session_id)

        stages = list(self.registry)
        present = await self.store.list_existing(session_id, [s.artifact for s in stages])
        present_by_stage = {s.name: ok for s, ok in zip(stages, present)}
        missing = [s for s in stages if not present_by_stage[s.name]]

        logger.info(
            "Pipeline %s: %d/%d stages present, running %s",
            session_id, len(stages) - len(missing), len(stages),
            [s.name for s in missing] or "nothing",
        )

        result = PipelineRunResult(session_id, _artifact_of={s.name: s.artifact for s in stages})

        # Present stages take the invoker's cache path and come back unchanged.
        # Dependents look their dependency's task up in this map.
        tasks: dict[str, asyncio.Task] = {}
        for s in stages:
            if present_by_stage[s.name]:
                coro = self.invoker.invoke(session_id, s.name)
            else:
                coro = self._run_stage(session_id, s, tasks)
            tasks[s.name] = asyncio.ensure_future(coro)
        settled = await asyncio.gather(*tasks.values(), return_exceptions=True)

        outcomes: dict[str, StageResult] = {}
        for stage, outcome in zip(stages, settled):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failure = StageFailure(stage.name, f"crashed: {outcome}", outcome)
                outcome = StageResult(stage.name, ok=False, error=failure)
            outcomes[stage.name] = outcome

        await self._reconcile(session_id, stages, outcomes)

        for stage in stages:
            outcome = outcomes[stage.name]
            result.per_stage[stage.name] = outcome
            if not outcome.ok:
                result.errors.append(StageError(stage.name, outcome.error))

        logger.info(
            "Pipeline %s finished: %d ok, %d failed",
            session_id, len(result.per_stage) - len(result.errors), len(result.errors),
        )
        return result

    async def _run_stage(self, session_id: str, stage: Stage, tasks: dict[str, asyncio.Task]) -> StageResult:
        for dep_name in stage.depends_on:
            if await self._sibling_succeeded(tasks.get(dep_name)):
                continue
            try:
                await self._await_dependency(session_id, self.registry.get(dep_name))
            except StageFailure as e:
                return StageResult(stage.name, ok=False,
                                   error=StageFailure(stage.name, f"dependency {dep_name} unavailable: {e.message}", e.cause or e))
        return await self.invoker.invoke(session_id, stage.name)

    @staticmethod
    async def _sibling_succeeded(task: Optional[asyncio.Task]) -> bool:
        if task is None:
            return False
        try:
            sibling = await asyncio.shield(task)
        except Exception:
            # run() records the crash against the sibling itself
            return False
        return sibling.ok

    async def _await_dependency(self, session_id: str, dep: Stage) -> dict:
        """Poll for ``dep``'s artifact, then re-run ``dep`` once if it never shows up."""
        try:
            return await self.waiter.wait_for(session_id, dep.artifact)
        except WaitTimeout as timeout:
            logger.warning("%s; triggering %s", timeout.message, dep.name)
            try:
                await self.trigger.trigger(session_id, dep.name)
            except Exception as e:
                logger.warning("Self-heal trigger for %s failed: %s", dep.name, e)
            if await self.store.exists(session_id, dep.artifact):
                return await self.store.read(session_id, dep.artifact)
            raise StageFailure(dep.name, timeout.message, timeout) from timeout

    async def _reconcile(self, session_id: str, stages: list[Stage], outcomes: dict[str, StageResult]) -> None:
        failed = [s for s in stages if not outcomes[s.name].ok]
        if not failed:
            return
        try:
            present = await self.store.list_existing(session_id, [s.artifact for s in failed])
        except StoreFailure as e:
            logger.warning("Pipeline %s: could not re-check failed stages: %s", session_id, e.message)
            return
        for stage, ok in zip(failed, present):
            if not ok:
                continue
            try:
                value = await self.store.read(session_id, stage.artifact)
            except StoreFailure as e:
                logger.warning("[%s] %s: artifact exists but is unreadable: %s", stage.name, session_id, e.message)
                continue
            logger.info("[%s] %s: recovered by a later run", stage.name, session_id)
            outcomes[stage.name] = StageResult(stage.name, ok=True, value=value)
