"""Session progress derived from artifact existence only."""

from dataclasses import dataclass
from typing import Optional

from .errors import SessionNotFound
from .store import ANALYSIS, DETAILED, METADATA, ORIGIN, VALUE, ArtifactStore

PERCENT_COMPLETE = 100
PERCENT_IN_PROGRESS = 50  # no finer progress is tracked inside a stage


@dataclass(frozen=True)
class TrackedStage:
    key: str
    artifact: str
    upstream: Optional[str] = None   # artifact that must exist before this stage can start
    required: bool = True


TRACKED_STAGES = (
    TrackedStage("visualSearch", ANALYSIS),
    TrackedStage("originAnalysis", ORIGIN, upstream=ANALYSIS),
    TrackedStage("detailedAnalysis", DETAILED),
    TrackedStage("marketResearch", VALUE, upstream=DETAILED, required=False),
)


def stage_progress(stage: TrackedStage, present: dict[str, bool]) -> dict:
    if present[stage.artifact]:
        return {"status": "complete", "percent": PERCENT_COMPLETE}
    if stage.upstream and not present[stage.upstream]:
        return {"status": "pending", "percent": PERCENT_IN_PROGRESS}
    return {"status": "processing", "percent": PERCENT_IN_PROGRESS}


def overall_status(present: dict[str, bool], stages=TRACKED_STAGES) -> str:
    if not any(present[s.artifact] for s in stages):
        return "starting"
    if all(present[s.artifact] for s in stages if s.required):
        return "complete"
    return "processing"


class StatusAggregator:
    def __init__(self, store: ArtifactStore, stages=TRACKED_STAGES):
        self.store = store
        self.stages = stages

    async def status(self, session_id: str) -> dict:
        names = [METADATA] + [s.artifact for s in self.stages]
        flags = await self.store.list_existing(session_id, names)
        present = dict(zip(names, flags))
        if not present[METADATA]:
            raise SessionNotFound(session_id)

        return {
            "overall": overall_status(present, self.stages),
            "perStage": {s.key: stage_progress(s, present) for s in self.stages},
        }

    async def results(self, session_id: str) -> dict:
        """Required artifacts, for a session whose status is complete."""
        return {
            s.artifact: await self.store.read(session_id, s.artifact)
            for s in self.stages
            if s.required
        }
