"""Explicit construction of every service handle the API uses."""

from dataclasses import dataclass
from typing import Optional

import httpx

from .background import BackgroundTasks
from .config import Settings
from .coordinator import PipelineCoordinator
from .crypto import EmailCipher
from .delivery import DeliveryPipeline
from .premium import PremiumDataService
from .stages import HttpStageTrigger, LocalStageTrigger, StageInvoker, StageRegistry, StageTrigger
from .status import StatusAggregator
from .store import ArtifactStore
from .waiter import DependencyWaiter


@dataclass
class Services:
    settings: Settings
    store: ArtifactStore
    registry: StageRegistry
    invoker: StageInvoker
    waiter: DependencyWaiter
    coordinator: PipelineCoordinator
    status: StatusAggregator
    delivery: DeliveryPipeline
    premium: PremiumDataService
    background: BackgroundTasks
    cipher: EmailCipher
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def assemble(
    settings: Settings,
    store: ArtifactStore,
    registry: StageRegistry,
    http: httpx.AsyncClient,
    mailer,
    offer_writer,
    sheets,
    crm,
    waiter: Optional[DependencyWaiter] = None,
    trigger: Optional[StageTrigger] = None,
    cipher: Optional[EmailCipher] = None,
    keyword_llm=None,
) -> Services:
    """Wire the pipeline around the given collaborators. Tests pass doubles here."""
    invoker = StageInvoker(store, registry, timeout_s=settings.stage_timeout_s)
    waiter = waiter or DependencyWaiter(
        store, max_retries=settings.wait_max_retries, retry_delay_ms=settings.wait_retry_delay_ms
    )
    if trigger is None:
        trigger = (
            HttpStageTrigger(settings.self_base_url, http, timeout_s=settings.stage_timeout_s)
            if settings.self_base_url else LocalStageTrigger(invoker)
        )
    coordinator = PipelineCoordinator(store, registry, invoker, waiter, trigger)
    delivery = DeliveryPipeline(
        store, coordinator, waiter, mailer, offer_writer, sheets, crm,
        offer_delay_s=settings.personal_offer_delay_s,
    )
    return Services(
        settings=settings,
        store=store,
        registry=registry,
        invoker=invoker,
        waiter=waiter,
        coordinator=coordinator,
        status=StatusAggregator(store),
        delivery=delivery,
        premium=PremiumDataService(
            store, http, settings.valuer_agent_url, settings.premium_subscription_key,
            openai=keyword_llm, keyword_model=settings.keyword_model,
        ),
        background=BackgroundTasks(),
        cipher=cipher or EmailCipher.from_settings(settings),
        http=http,
    )


def build_services(settings: Settings) -> Services:
    """Production wiring: Supabase storage, real model clients and delivery channels."""
    # Imported here so tests that inject doubles never build SDK clients
    from .analysis import AnalysisClients, build_stages
    from .notify import CrmNotifier, OfferWriter, SendGridMailer, SheetsLog
    from .store import InMemoryArtifactStore, SupabaseArtifactStore

    http = httpx.AsyncClient()
    if settings.supabase_url:
        store = SupabaseArtifactStore.from_settings(settings)
    else:
        store = InMemoryArtifactStore()

    clients = AnalysisClients.from_settings(settings, http)
    return assemble(
        settings,
        store,
        StageRegistry(build_stages(clients)),
        http,
        mailer=SendGridMailer(settings.sendgrid_api_key, settings.sendgrid_from_email,
                              settings.sendgrid_sender_name, http),
        offer_writer=OfferWriter(clients.claude, settings.claude_model),
        sheets=SheetsLog(settings.google_credentials_file, settings.sheets_id),
        crm=CrmNotifier(settings.google_credentials_file, settings.gcp_project_id, settings.crm_topic),
        keyword_llm=clients.openai if settings.openai_api_key else None,
    )
