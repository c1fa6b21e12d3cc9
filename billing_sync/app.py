"""Composition root and HTTP application.

``build_engine`` constructs every collaborator once (ledger, queue, provider,
store, reconcilers, processor, receiver, sweep) and wires them by reference.
Nothing registers itself at import time. ``create_app`` mounts the webhook
endpoint and the tenant-facing ``/billing`` routes on a FastAPI app.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing_sync.config import Settings, get_settings
from billing_sync.errors import BillingSyncError, http_status_for
from billing_sync.jobs.base import BaseJobQueue, RetryPolicy
from billing_sync.jobs.memory import InMemoryJobQueue
from billing_sync.jobs.worker import WorkerPool
from billing_sync.ledger.store import InMemoryLedger, LedgerStore
from billing_sync.notifications import EmailNotificationSender, NotificationDispatcher
from billing_sync.processor import WebhookProcessor, build_registry
from billing_sync.provider.client import BillingProvider, StripeProvider
from billing_sync.queries import TenantQueries
from billing_sync.reconciliation.catalog import CatalogReconciler
from billing_sync.reconciliation.customers import CustomerReconciler
from billing_sync.reconciliation.invoices import InvoiceReconciler
from billing_sync.reconciliation.payments import PaymentIntentReconciler
from billing_sync.reconciliation.subscriptions import SubscriptionReconciler
from billing_sync.store.graph import GraphBackend, GraphStore
from billing_sync.store.repositories import Repositories
from billing_sync.sweep import ReconciliationSweep
from billing_sync.usage import UsageService
from billing_sync.webhooks.handlers import register_webhook_routes
from billing_sync.webhooks.receiver import WebhookReceiver

logger = logging.getLogger(__name__)


@dataclass
class BillingEngine:
    settings: Settings
    ledger: LedgerStore
    queue: BaseJobQueue
    provider: BillingProvider
    repos: Repositories
    notifier: NotificationDispatcher
    customers: CustomerReconciler
    catalog: CatalogReconciler
    subscriptions: SubscriptionReconciler
    invoices: InvoiceReconciler
    payments: PaymentIntentReconciler
    processor: WebhookProcessor
    receiver: WebhookReceiver
    queries: TenantQueries
    usage: UsageService
    sweep: ReconciliationSweep
    email_sender: EmailNotificationSender
    pools: list[WorkerPool] = field(default_factory=list)

    def start_workers(self) -> None:
        """Start the webhook and notification worker pools."""
        if self.pools:
            return
        s = self.settings
        self.pools = [
            self.queue.consume(
                s.webhook_job_type,
                self.processor,
                concurrency=s.webhook_concurrency,
                lock_seconds=s.webhook_lock_seconds,
            ),
            self.queue.consume(
                s.notification_job_type,
                self.email_sender,
                concurrency=1,
                lock_seconds=s.webhook_lock_seconds,
            ),
        ]

    def stop_workers(self) -> None:
        for pool in self.pools:
            pool.stop()
        self.pools = []


def _build_ledger(settings: Settings) -> LedgerStore:
    if settings.database_url:
        from billing_sync.ledger.postgres import PostgresLedger

        ledger = PostgresLedger(settings.database_url)
        ledger.ensure_schema()
        return ledger
    logger.warning("No database_url configured; ledger is in-memory (not durable)")
    return InMemoryLedger()


def _build_graph(settings: Settings) -> GraphBackend:
    if settings.database_url:
        from billing_sync.store.postgres import PostgresGraphStore

        graph = PostgresGraphStore(settings.database_url)
        graph.ensure_schema()
        return graph
    logger.warning("No database_url configured; state store is in-memory (not durable)")
    return GraphStore()


def _build_queue(settings: Settings) -> BaseJobQueue:
    if settings.queue_backend == "redis":
        from billing_sync.jobs.redis_queue import RedisJobQueue

        return RedisJobQueue(settings.redis_url)
    if settings.queue_backend != "memory":
        raise ValueError(f"Unknown queue backend: {settings.queue_backend}")
    return InMemoryJobQueue()


def build_engine(
    settings: Settings | None = None,
    *,
    ledger: LedgerStore | None = None,
    queue: BaseJobQueue | None = None,
    provider: BillingProvider | None = None,
    graph: GraphBackend | None = None,
) -> BillingEngine:
    """Wire the engine. Explicit collaborators override the configured backends."""
    settings = settings or get_settings()
    if ledger is None:
        ledger = _build_ledger(settings)
    if queue is None:
        queue = _build_queue(settings)
    if provider is None:
        provider = StripeProvider(settings.provider_api_key)
    if graph is None:
        graph = _build_graph(settings)
    repos = Repositories(graph)

    webhook_policy = RetryPolicy(
        attempts=settings.webhook_attempts,
        backoff_seconds=settings.webhook_backoff_seconds,
    )
    notifier = NotificationDispatcher(
        queue,
        repos,
        job_type=settings.notification_job_type,
        policy=RetryPolicy(
            attempts=settings.notification_attempts,
            backoff_seconds=settings.notification_backoff_seconds,
        ),
    )
    customers = CustomerReconciler(provider, repos)
    catalog = CatalogReconciler(provider, repos)
    subscriptions = SubscriptionReconciler(provider, repos, customers, catalog)
    invoices = InvoiceReconciler(provider, repos, subscriptions, notifier)
    payments = PaymentIntentReconciler(invoices, notifier)
    processor = WebhookProcessor(
        ledger, build_registry(customers, catalog, subscriptions, invoices, payments)
    )
    receiver = WebhookReceiver(
        ledger,
        queue,
        secret=settings.webhook_secret,
        tolerance=settings.signature_tolerance_seconds,
        job_type=settings.webhook_job_type,
        policy=webhook_policy,
    )
    queries = TenantQueries(repos)
    sweep = ReconciliationSweep(
        ledger,
        queue,
        repos,
        customers,
        subscriptions,
        invoices,
        provider,
        job_type=settings.webhook_job_type,
        policy=webhook_policy,
        stale_pending_seconds=settings.stale_pending_seconds,
    )
    email_sender = EmailNotificationSender(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_from=settings.smtp_from,
    )
    return BillingEngine(
        settings=settings,
        ledger=ledger,
        queue=queue,
        provider=provider,
        repos=repos,
        notifier=notifier,
        customers=customers,
        catalog=catalog,
        subscriptions=subscriptions,
        invoices=invoices,
        payments=payments,
        processor=processor,
        receiver=receiver,
        queries=queries,
        usage=UsageService(provider, repos, queries),
        sweep=sweep,
        email_sender=email_sender,
    )


class UsageReport(BaseModel):
    meter_id: str
    meter_event_name: str
    quantity: int = Field(ge=0)
    timestamp: datetime | None = None
    identifier: str | None = None


class PortalSessionRequest(BaseModel):
    return_url: str


def register_billing_routes(app: FastAPI, engine: BillingEngine) -> None:
    """Tenant-facing read routes and usage reporting under /billing.

    The tenant comes from the ``X-Tenant-Id`` header; authenticating it is
    the job of the surrounding gateway.
    """
    router = APIRouter(prefix="/billing", tags=["billing"])
    queries = engine.queries
    usage = engine.usage

    @router.get("/subscriptions")
    async def list_subscriptions(
        x_tenant_id: str = Header(...),
        status: str | None = Query(default=None),
    ):
        return {"data": [asdict(s) for s in queries.list_subscriptions(x_tenant_id, status)]}

    @router.get("/subscriptions/{subscription_id}")
    async def get_subscription(subscription_id: str, x_tenant_id: str = Header(...)):
        return {"data": asdict(queries.get_subscription(x_tenant_id, subscription_id))}

    @router.get("/invoices")
    async def list_invoices(
        x_tenant_id: str = Header(...),
        status: str | None = Query(default=None),
    ):
        return {"data": [asdict(i) for i in queries.list_invoices(x_tenant_id, status)]}

    @router.get("/invoices/{invoice_id}")
    async def get_invoice(invoice_id: str, x_tenant_id: str = Header(...)):
        return {"data": asdict(queries.get_invoice(x_tenant_id, invoice_id))}

    @router.post("/subscriptions/{subscription_id}/usage", status_code=201)
    async def report_usage(subscription_id: str, body: UsageReport, x_tenant_id: str = Header(...)):
        record = usage.report_usage(
            x_tenant_id,
            subscription_id,
            body.meter_id,
            body.meter_event_name,
            body.quantity,
            timestamp=body.timestamp,
            identifier=body.identifier,
        )
        return {"data": asdict(record)}

    @router.get("/subscriptions/{subscription_id}/usage")
    async def list_usage(
        subscription_id: str,
        x_tenant_id: str = Header(...),
        start: datetime | None = Query(default=None),
        end: datetime | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        records = usage.list_usage_records(x_tenant_id, subscription_id, start, end, limit)
        return {"data": [asdict(r) for r in records]}

    @router.get("/subscriptions/{subscription_id}/usage/summary")
    async def usage_summary(
        subscription_id: str,
        start: datetime,
        end: datetime,
        x_tenant_id: str = Header(...),
    ):
        return {"data": asdict(usage.get_usage_summary(x_tenant_id, subscription_id, start, end))}

    @router.get("/meters/{meter_id}/summaries")
    async def meter_summaries(
        meter_id: str,
        start: datetime,
        end: datetime,
        x_tenant_id: str = Header(...),
    ):
        summaries = usage.get_meter_event_summaries(x_tenant_id, meter_id, start, end)
        return {"data": [s.model_dump() for s in summaries]}

    @router.post("/portal-session")
    async def portal_session(body: PortalSessionRequest, x_tenant_id: str = Header(...)):
        """Provider-hosted page where the tenant manages payment details."""
        customer = queries.customer_for(x_tenant_id)
        url = engine.provider.create_portal_session(customer.external_customer_id, body.return_url)
        return {"data": {"url": url}}

    @router.get("/ledger/failed")
    async def failed_events(limit: int = Query(default=100, ge=1, le=1000)):
        """Operator view of events that exhausted processing."""
        return {"data": [asdict(e) for e in engine.ledger.list_failed(limit)]}

    app.include_router(router)


def create_app(engine: BillingEngine | None = None, *, run_workers: bool = False) -> FastAPI:
    engine = engine or build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_workers:
            engine.start_workers()
        yield
        engine.stop_workers()

    app = FastAPI(title="billing-sync", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(BillingSyncError)
    async def billing_error_handler(request: Request, exc: BillingSyncError):
        status = http_status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse({"error": exc.kind.value, "detail": exc.message}, status_code=status)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(app, engine.receiver)
    register_billing_routes(app, engine)
    return app
