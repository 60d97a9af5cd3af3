"""Stage descriptors, the idempotent stage invoker and stage triggers."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from .errors import PrerequisiteMissing, StageFailure
from .store import METADATA, ArtifactStore

logger = logging.getLogger(__name__)

# Stage names double as the HTTP endpoint that runs them
VISUAL_SEARCH = "visual-search"
ORIGIN_ANALYSIS = "origin-analysis"
FULL_ANALYSIS = "full-analysis"
FIND_VALUE = "find-value"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class StageInputs:
    session_id: str
    metadata: dict
    artifacts: dict[str, dict] = field(default_factory=dict)  # keyed by artifact name

    @property
    def image_url(self) -> str:
        return self.metadata.get("imageUrl", "")


StageFn = Callable[[StageInputs], Awaitable[dict]]


@dataclass(frozen=True)
class Stage:
    name: str
    artifact: str
    run: StageFn
    depends_on: tuple[str, ...] = ()


@dataclass
class StageResult:
    stage: str
    ok: bool
    value: Optional[dict] = None
    error: Optional[StageFailure] = None
    cached: bool = False


class StageRegistry:
    def __init__(self, stages: Sequence[Stage]):
        self._stages = {s.name: s for s in stages}

    def __iter__(self):
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)

    def get(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise ValueError(f"Unknown stage: {name}") from None

    def by_artifact(self, artifact: str) -> Optional[Stage]:
        for s in self._stages.values():
            if s.artifact == artifact:
                return s
        return None


# ═══════════════════════════════════════════════════════════════════════════
# INVOKER
# ═══════════════════════════════════════════════════════════════════════════

class StageInvoker:
    """Runs one stage for one session, at most once per artifact.

    If the stage's artifact already exists it is returned untouched. Otherwise
    the analysis function runs under ``timeout_s`` and its result is written.
    Failures come back as a ``StageResult`` carrying a ``StageFailure``; no
    partial artifact is ever written.

    Concurrent calls for the same session and stage share one run: a caller
    arriving while the analysis is in flight awaits that run's result.
    """

    def __init__(self, store: ArtifactStore, registry: StageRegistry, timeout_s: float = 60.0):
        self.store = store
        self.registry = registry
        self.timeout_s = timeout_s
        self._in_flight: dict[tuple[str, str], asyncio.Task] = {}

    async def invoke(self, session_id: str, stage_name: str) -> StageResult:
        stage = self.registry.get(stage_name)
        key = (session_id, stage.name)
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._invoke(session_id, stage))
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.info("[%s] %s: already running, joining", stage.name, session_id)
        # Cancelling one caller leaves the shared run alive for the others
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _invoke(self, session_id: str, stage: Stage) -> StageResult:
        try:
            if await self.store.exists(session_id, stage.artifact):
                value = await self.store.read(session_id, stage.artifact)
                logger.info("[%s] %s: artifact exists, skipping", stage.name, session_id)
                return StageResult(stage.name, ok=True, value=value, cached=True)

            inputs = await self._gather_inputs(session_id, stage)
            logger.info("[%s] %s: running analysis", stage.name, session_id)
            value = await asyncio.wait_for(stage.run(inputs), timeout=self.timeout_s)
            document = self._to_document(stage, value)
            await self.store.write(session_id, stage.artifact, document)
        except asyncio.TimeoutError as e:
            failure = StageFailure(stage.name, f"timed out after {self.timeout_s}s", e)
        except StageFailure as e:
            failure = e
        except Exception as e:
            failure = StageFailure(stage.name, str(e) or type(e).__name__, e)
        else:
            logger.info("[%s] %s: artifact '%s' written", stage.name, session_id, stage.artifact)
            return StageResult(stage.name, ok=True, value=document)

        logger.warning("[%s] %s: failed: %s", stage.name, session_id, failure.message)
        return StageResult(stage.name, ok=False, error=failure)

    async def _gather_inputs(self, session_id: str, stage: Stage) -> StageInputs:
        names = [METADATA] + [self.registry.get(d).artifact for d in stage.depends_on]
        present = await self.store.list_existing(session_id, names)
        for name, ok in zip(names, present):
            if not ok:
                raise StageFailure(stage.name, "prerequisite missing",
                                   PrerequisiteMissing(session_id, name))
        docs = await asyncio.gather(*(self.store.read(session_id, n) for n in names))
        return StageInputs(session_id, metadata=docs[0], artifacts=dict(zip(names[1:], docs[1:])))

    @staticmethod
    def _to_document(stage: Stage, value: Any) -> dict:
        if not isinstance(value, dict):
            raise StageFailure(stage.name, f"analysis returned {type(value).__name__}, expected an object")
        document = {"timestamp": now_ms(), **value} if "timestamp" not in value else dict(value)
        try:
            json.dumps(document)
        except (TypeError, ValueError) as e:
            raise StageFailure(stage.name, f"result is not JSON-serializable: {e}", e) from e
        return document


# ═══════════════════════════════════════════════════════════════════════════
# TRIGGERS (self-healing re-runs of a sibling stage)
# ═══════════════════════════════════════════════════════════════════════════

class StageTrigger(Protocol):
    async def trigger(self, session_id: str, stage_name: str) -> dict: ...


class LocalStageTrigger:
    """Re-runs a stage in-process through the invoker."""

    def __init__(self, invoker: StageInvoker):
        self.invoker = invoker

    async def trigger(self, session_id: str, stage_name: str) -> dict:
        result = await self.invoker.invoke(session_id, stage_name)
        if not result.ok:
            raise result.error
        return result.value


class HttpStageTrigger:
    """Re-runs a stage by POSTing ``{sessionId}`` to this service's own endpoint."""

    def __init__(self, base_url: str, client: httpx.AsyncClient, timeout_s: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout_s = timeout_s

    async def trigger(self, session_id: str, stage_name: str) -> dict:
        url = f"{self.base_url}/{stage_name}"
        logger.info("[%s] %s: triggering via %s", stage_name, session_id, url)
        try:
            r = await self.client.post(url, json={"sessionId": session_id}, timeout=self.timeout_s)
        except httpx.HTTPError as e:
            raise StageFailure(stage_name, f"trigger request failed: {e}", e) from e
        if r.status_code // 100 != 2:
            raise StageFailure(stage_name, f"trigger returned HTTP {r.status_code}")
        try:
            body = r.json()
        except ValueError as e:
            raise StageFailure(stage_name, "trigger returned a non-JSON body", e) from e
        if not body.get("success"):
            raise StageFailure(stage_name, body.get("message") or "trigger reported failure")
        return body.get("results") or {}
