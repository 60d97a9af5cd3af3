"""Background delivery: runs after the email submission response was sent.

Re-runs the pipeline, composes the free report and fans out to the email,
spreadsheet and CRM branches. Nothing here raises to a caller; every branch
goes through ``non_fatal`` and the whole run is wrapped once more.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .background import BranchOutcome, non_fatal
from .coordinator import PipelineCoordinator
from .errors import DeliveryFailure, SessionNotFound, StoreFailure, WaitTimeout
from .logging_config import log_delivery_event
from .notify import FALLBACK_OFFER, crm_message
from .report import Report, compose_report
from .stages import now_ms
from .store import DETAILED, METADATA, REPORT, ArtifactStore, read_optional
from .waiter import DependencyWaiter

logger = logging.getLogger(__name__)

PERSONAL_OFFER_DELAY_S = 3600


@dataclass
class DeliveryReport:
    session_id: str
    stopped: bool = False
    report: Optional[Report] = None
    pipeline_errors: list[dict] = field(default_factory=list)
    branches: dict[str, BranchOutcome] = field(default_factory=dict)

    @property
    def failed_branches(self) -> list[str]:
        return [name for name, b in self.branches.items() if not b.ok]


class DeliveryPipeline:
    def __init__(
        self,
        store: ArtifactStore,
        coordinator: PipelineCoordinator,
        waiter: DependencyWaiter,
        mailer,
        offer_writer,
        sheets,
        crm,
        offer_delay_s: int = PERSONAL_OFFER_DELAY_S,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.coordinator = coordinator
        self.waiter = waiter
        self.mailer = mailer
        self.offer_writer = offer_writer
        self.sheets = sheets
        self.crm = crm
        self.offer_delay_s = offer_delay_s
        self.clock = clock

    async def run(self, session_id: str, email: str, submitted_at: Optional[float] = None) -> DeliveryReport:
        logger.info("=== Delivery for session %s started ===", session_id)
        try:
            result = await self._run(session_id, email, submitted_at or self.clock())
        except Exception:
            logger.exception("Delivery for session %s aborted", session_id)
            return DeliveryReport(session_id, stopped=True)
        logger.info("=== Delivery for session %s complete (failed branches: %s) ===",
                    session_id, result.failed_branches or "none")
        return result

    async def _run(self, session_id: str, email: str, submitted_at: float) -> DeliveryReport:
        delivery = DeliveryReport(session_id)

        # Step 1: analyses. Whatever subset exists is good enough.
        try:
            pipeline = await self.coordinator.run(session_id)
        except SessionNotFound as e:
            logger.error("Delivery stopped: %s", e.message)
            delivery.stopped = True
            return delivery
        except Exception:
            logger.exception("Pipeline run failed for %s; continuing with stored artifacts", session_id)
            artifacts = await self._stored_artifacts(session_id)
        else:
            artifacts = pipeline.artifacts
            delivery.pipeline_errors = [e.to_dict() for e in pipeline.errors]

        metadata = await read_optional(self.store, session_id, METADATA) or {}

        # Step 2: report
        report = compose_report(artifacts)
        delivery.report = report
        delivery.branches["report"] = await non_fatal(
            "report", self.store.write(session_id, REPORT, report.to_artifact(now_ms())), session_id
        )

        # Step 3: fan-out
        outcomes = await asyncio.gather(
            non_fatal("free_report", self.mailer.send_free_report(email, report.html), session_id),
            non_fatal("personal_offer",
                      self._personal_offer(session_id, email, artifacts.get(DETAILED), submitted_at),
                      session_id),
            non_fatal("sheets",
                      self.sheets.record_submission(session_id, email, "Email Processing Complete"),
                      session_id),
            non_fatal("crm",
                      self.crm.publish(crm_message(email, session_id, metadata, artifacts, now_ms())),
                      session_id),
        )
        for outcome in outcomes:
            delivery.branches[outcome.branch] = outcome
        return delivery

    async def _stored_artifacts(self, session_id: str) -> dict[str, dict]:
        artifacts = {}
        for stage in self.coordinator.registry:
            try:
                doc = await read_optional(self.store, session_id, stage.artifact)
            except StoreFailure as e:
                logger.warning("Could not read %s for %s: %s", stage.artifact, session_id, e.message)
                continue
            if doc is not None:
                artifacts[stage.artifact] = doc
        return artifacts

    async def _personal_offer(
        self, session_id: str, email: str, detailed: Optional[dict], submitted_at: float
    ) -> dict:
        degraded = False
        if detailed is None:
            logger.info("Detailed analysis for %s not available, waiting...", session_id)
            try:
                detailed = await self.waiter.wait_for(session_id, DETAILED)
            except WaitTimeout as e:
                failure = DeliveryFailure("personal_offer", f"sending degraded offer: {e.message}")
                log_delivery_event(session_id, "personal_offer", "degraded",
                                   error=failure.message, errorClass=type(failure).__name__)
                degraded = True

        try:
            offer = await self.offer_writer.write(detailed)
        except Exception as e:
            logger.warning("Offer writer failed for %s, using fallback copy: %s", session_id, e)
            offer = FALLBACK_OFFER
            degraded = True

        send_at = int(submitted_at) + self.offer_delay_s
        sent = await self.mailer.schedule_personal_offer(email, offer["subject"], offer["content"], send_at)
        return {**sent, "degraded": degraded}
