import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from sqlalchemy import or_
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from msgrelay import records
from msgrelay.clock import Clock, SystemClock
from msgrelay.config import settings
from msgrelay.dedup import EventKeyCache, build_event_cache
from msgrelay.errors import UnknownProviderError
from msgrelay.ingestion import EventIngestionPipeline
from msgrelay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from msgrelay.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from msgrelay.models import DeliveryEvent
from msgrelay.orchestrator import SendOrchestrator
from msgrelay.propagation import StatusPropagator
from msgrelay.providers import build_registry
from msgrelay.quota import DatabaseQuotaLedger, QuotaLedger
from msgrelay.schemas import (
    DeliveryEventResponse,
    ErrorResponse,
    HealthResponse,
    MessageEventsResponse,
    MessageRecordResponse,
    SendMessageRequest,
    SendOutcome,
    TenantStatsResponse,
    WebhookResponse,
)
from msgrelay.storage import SessionLocal, check_db_health, get_db, init_db
from msgrelay.throttle import ThrottlePolicy


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Rejection reason -> HTTP status for provider callbacks
WEBHOOK_REJECTION_STATUS = {
    "unknown_provider": status.HTTP_404_NOT_FOUND,
    "invalid_signature": status.HTTP_401_UNAUTHORIZED,
    "invalid_payload": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "processing_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def wire_services(
    target: FastAPI,
    clock: Optional[Clock] = None,
    quota_ledger: Optional[QuotaLedger] = None,
    propagator: Optional[StatusPropagator] = None,
    cache: Optional[EventKeyCache] = None,
    throttle: Optional[ThrottlePolicy] = None,
) -> None:
    """Build the pipeline components and hang them on ``target.state``."""
    clock = clock or SystemClock()
    registry = build_registry(settings)
    ledger = quota_ledger or DatabaseQuotaLedger(SessionLocal, clock=clock)

    target.state.clock = clock
    target.state.registry = registry
    target.state.quota_ledger = ledger
    target.state.throttle = throttle or ThrottlePolicy(clock=clock)
    target.state.orchestrator = SendOrchestrator(
        ledger,
        session_factory=SessionLocal,
        settings=settings,
        clock=clock,
        propagator=propagator,
        throttle=target.state.throttle,
        registry=registry,
    )
    target.state.pipeline = EventIngestionPipeline(
        registry,
        session_factory=SessionLocal,
        cache=cache if cache is not None else build_event_cache(settings, clock=clock),
        settings=settings,
        clock=clock,
        propagator=propagator,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and wire services (unless already wired).
    """
    init_db()
    if not hasattr(app.state, "orchestrator"):
        wire_services(app)
    yield


app = FastAPI(
    title="msgrelay",
    description="Idempotent WhatsApp message delivery: sends and provider delivery callbacks",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - 200 only if:
    1. WEBHOOK_SECRET is set (non-empty)
    2. at least one provider is enabled
    3. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    providers = request.app.state.registry.names()
    if not providers:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="No providers enabled")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready", details={"providers": providers})


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhooks/{provider}",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        404: {"model": ErrorResponse, "description": "Unknown provider"},
        422: {"model": ErrorResponse, "description": "Malformed payload"},
        500: {"model": ErrorResponse, "description": "Processing error"},
    },
)
async def webhook(provider: str, request: Request) -> WebhookResponse:
    """
    Ingest one provider delivery callback exactly once.

    Duplicates, stale events and out-of-order events are acknowledged with
    200 so the provider stops redelivering; only unknown providers, bad
    signatures and malformed payloads are refused.

    The signature header depends on the provider (X-Signature for generic,
    X-Hub-Signature-256 for meta).
    """
    try:
        adapter = request.app.state.registry.get(provider)
    except UnknownProviderError:
        record_webhook_outcome("unknown", "rejected")
        log_webhook_data(request, provider=provider, result="unknown_provider")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown provider")

    raw_body = await request.body()
    signature = request.headers.get(adapter.signature_header)
    logger.debug(f"Webhook received: provider={adapter.name}, body_size={len(raw_body)}")

    result = await run_in_threadpool(request.app.state.pipeline.ingest, raw_body, adapter.name, signature)

    log_webhook_data(
        request,
        provider=adapter.name,
        event_key=result.event_key,
        result=result.action if result.accepted else result.reason,
        dup=result.reason == "duplicate",
    )

    if not result.accepted:
        raise HTTPException(
            status_code=WEBHOOK_REJECTION_STATUS.get(result.reason, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=result.reason.replace("_", " "),
        )

    return WebhookResponse(status="ok", action=result.action, reason=result.reason)


# =============================================================================
# Messages Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=SendOutcome,
    responses={422: {"description": "Validation error or unknown provider"}},
)
def send_message(payload: SendMessageRequest, request: Request) -> SendOutcome:
    """
    Send a text message idempotently.

    Repeating the call with the same tenant_id and request_id returns
    ``already_sent`` (or the current skip reason) instead of sending again.
    """
    orchestrator: SendOrchestrator = request.app.state.orchestrator
    try:
        outcome = orchestrator.send_api_message(
            tenant_id=payload.tenant_id,
            request_id=payload.request_id,
            recipient=payload.to,
            content=payload.text,
            provider=payload.provider,
        )
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info(f"POST /messages: tenant={payload.tenant_id}, request_id={payload.request_id}, outcome={outcome.status}")
    return outcome


@app.get(
    "/messages/{idempotency_key}",
    response_model=MessageRecordResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_message(idempotency_key: str, db: Session = Depends(get_db)) -> MessageRecordResponse:
    record = records.get_record_by_key(db, idempotency_key)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return MessageRecordResponse.model_validate(record)


@app.get(
    "/messages/{idempotency_key}/events",
    response_model=MessageEventsResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_message_events(idempotency_key: str, db: Session = Depends(get_db)) -> MessageEventsResponse:
    """
    Audit trail of every callback for the message, including duplicates
    and orphans received before the record carried its provider id.
    """
    record = records.get_record_by_key(db, idempotency_key)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")

    conditions = [DeliveryEvent.message_record_id == record.id]
    if record.provider_message_id:
        conditions.append(DeliveryEvent.provider_message_id == record.provider_message_id)

    events = db.query(DeliveryEvent).filter(or_(*conditions)).order_by(DeliveryEvent.id.asc()).all()
    return MessageEventsResponse(
        data=[DeliveryEventResponse.model_validate(event) for event in events],
        total=len(events),
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/tenants/{tenant_id}/stats", response_model=TenantStatsResponse)
def get_tenant_stats(tenant_id: str, db: Session = Depends(get_db)) -> TenantStatsResponse:
    """Message counts by status and success rate (sent, delivered or read) for one tenant."""
    return TenantStatsResponse(**records.tenant_stats(db, tenant_id))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus text exposition of the HTTP, webhook, send and latency metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
