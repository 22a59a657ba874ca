"""
EventIngestionPipeline: turns provider delivery callbacks into MessageRecord
state changes, exactly once per event.

Per callback:
1. resolve adapter, verify signature, decode + normalize
2. freshness guard (events older than EVENT_MAX_AGE_DAYS are ignored)
3. idempotency guard (cache, then processed_event_keys)
4. lookup the MessageRecord by provider message id (row lock); orphan if absent
5. validate the transition, apply it, compute timing metrics
6. append the DeliveryEvent and the processed key in one transaction
7. propagate to linked business objects after commit

Every callback is recorded as a DeliveryEvent row, duplicates and ignored
events included.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from msgrelay import records
from msgrelay.clock import Clock, SystemClock
from msgrelay.config import Settings, get_settings
from msgrelay.dedup import EventKeyCache, InMemoryEventKeyCache, event_key, is_processed, mark_processed
from msgrelay.errors import (
    PERMANENT_ERRORS,
    ErrorCode,
    MalformedPayloadError,
    UnknownProviderError,
    classify_provider_error,
    is_retryable,
)
from msgrelay.logging_utils import log_context
from msgrelay.metrics import observe_delivery_latency, observe_read_latency, record_webhook_outcome
from msgrelay.models import DeliveryEvent, EventType, MessageRecord, MessageStatus, ProcessResult
from msgrelay.propagation import LoggingStatusPropagator, StatusPropagator, propagate
from msgrelay.providers import NormalizedEvent, ProviderRegistry
from msgrelay.schemas import IngestionResult
from msgrelay.storage import SessionLocal

logger = logging.getLogger(__name__)


@dataclass
class EventApplication:
    """What validating and applying one event did to its MessageRecord."""
    status_before: str
    status_after: str
    status_changed: bool
    is_out_of_order: bool
    process_result: str
    note: Optional[str] = None
    delivery_time_seconds: Optional[float] = None
    read_time_seconds: Optional[float] = None
    propagate_status: Optional[str] = None


def _seconds_between(start: Optional[datetime], end: datetime) -> Optional[float]:
    if start is None:
        return None
    seconds = (end - start).total_seconds()
    return seconds if seconds >= 0 else None


def apply_event(
    db: Session,
    record: MessageRecord,
    event: NormalizedEvent,
    settings: Settings,
    now: datetime,
) -> EventApplication:
    """
    Validate ``event`` against the record's current status and apply it.

    Shared by live ingestion and the reconciliation sweep so both produce
    the same final state. Flushes, never commits.
    """
    target = records.EVENT_TARGET_STATUS[event.event_type]
    before = record.status
    allowed, reason = records.check_transition(before, target)
    if not allowed:
        return EventApplication(
            status_before=before,
            status_after=before,
            status_changed=False,
            is_out_of_order=True,
            process_result=ProcessResult.IGNORED,
            note=reason,
        )

    ts = event.event_timestamp
    if before == MessageStatus.SENDING and target != MessageStatus.FAILED:
        # Leaving sending ends the claim
        record.processing_claim_id = None
        record.processing_claimed_at = None

    application = EventApplication(
        status_before=before,
        status_after=target,
        status_changed=True,
        is_out_of_order=False,
        process_result=ProcessResult.PROCESSED,
        propagate_status=target,
    )

    if target == MessageStatus.SENT:
        record.status = MessageStatus.SENT
        record.sent_at = record.sent_at or ts
        record.error_code = None
        record.error_message = None
        record.is_retryable = False
        record.retry_after = None
    elif target == MessageStatus.DELIVERED:
        application.delivery_time_seconds = _seconds_between(record.sent_at, ts)
        record.status = MessageStatus.DELIVERED
        record.sent_at = record.sent_at or ts
        record.delivered_at = ts
        record.is_retryable = False
        record.retry_after = None
    elif target == MessageStatus.READ:
        application.read_time_seconds = _seconds_between(record.delivered_at, ts)
        record.status = MessageStatus.READ
        record.sent_at = record.sent_at or ts
        record.read_at = ts
        record.is_retryable = False
        record.retry_after = None
    elif target == MessageStatus.FAILED:
        code = classify_provider_error(event.error_code, event.error_message)
        retryable = is_retryable(code)
        if event.event_type == EventType.REJECTED:
            retryable = False
            if code not in PERMANENT_ERRORS:
                code = ErrorCode.REJECTED
        failed = records.mark_failed(
            db,
            record.id,
            code,
            event.error_message or f"Provider reported {event.event_type}",
            retryable=retryable,
            now=now,
            backoff_base=settings.RETRY_BACKOFF_BASE_SECONDS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        )
        # Linked objects only learn about failures that will not be retried
        if failed is None or failed.is_retryable:
            application.propagate_status = None

    record.updated_at = now
    db.flush()
    return application


def event_row(
    provider_name: str,
    key: str,
    event: NormalizedEvent,
    received_at: datetime,
    process_result: str,
    record: Optional[MessageRecord] = None,
    application: Optional[EventApplication] = None,
    note: Optional[str] = None,
    signature: Optional[str] = None,
    reconciled_from_id: Optional[int] = None,
) -> DeliveryEvent:
    """Build the append-only DeliveryEvent row for one callback."""
    row = DeliveryEvent(
        provider_name=provider_name,
        event_key=key,
        event_id=event.event_id,
        provider_message_id=event.provider_message_id,
        message_record_id=record.id if record is not None else None,
        tenant_id=record.tenant_id if record is not None else None,
        event_type=event.event_type,
        event_timestamp=event.event_timestamp,
        received_at=received_at,
        recipient=event.recipient,
        error_code=event.error_code,
        error_message=event.error_message,
        raw_payload=event.raw or None,
        signature=signature,
        status_before=record.status if record is not None else None,
        status_after=record.status if record is not None else None,
        status_changed=False,
        is_out_of_order=False,
        process_result=process_result,
        process_note=note,
        reconciled_from_id=reconciled_from_id,
    )
    if application is not None:
        row.status_before = application.status_before
        row.status_after = application.status_after
        row.status_changed = application.status_changed
        row.is_out_of_order = application.is_out_of_order
        row.delivery_time_seconds = application.delivery_time_seconds
        row.read_time_seconds = application.read_time_seconds
        if note is None:
            row.process_note = application.note
    return row


def event_from_row(row: DeliveryEvent) -> NormalizedEvent:
    """Rebuild the normalized view of a stored callback."""
    return NormalizedEvent(
        provider_message_id=row.provider_message_id,
        event_type=row.event_type,
        event_id=row.event_id,
        event_timestamp=row.event_timestamp,
        recipient=row.recipient,
        error_code=row.error_code,
        error_message=row.error_message,
        raw=row.raw_payload or {},
    )


def observe_timing(application: EventApplication) -> None:
    observe_delivery_latency(application.delivery_time_seconds)
    observe_read_latency(application.read_time_seconds)


class EventIngestionPipeline:
    def __init__(
        self,
        registry: ProviderRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
        cache: Optional[EventKeyCache] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        propagator: Optional[StatusPropagator] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.cache = cache if cache is not None else InMemoryEventKeyCache(
            ttl_seconds=self.settings.EVENT_CACHE_TTL_SECONDS, clock=self.clock
        )
        self.propagator = propagator or LoggingStatusPropagator()

    def ingest(
        self,
        raw_payload: Union[bytes, str, Dict[str, Any]],
        provider_name: str,
        signature: Optional[str] = None,
    ) -> IngestionResult:
        """
        Process one callback. Never raises; provider-facing success is
        ``result.accepted``.

        Dict payloads come from in-process callers (replays, tests) and skip
        signature verification; raw bytes are always verified when the
        adapter has a secret.
        """
        received_at = self.clock.now()

        try:
            adapter = self.registry.get(provider_name)
        except UnknownProviderError:
            logger.warning(f"Callback for unknown provider: {provider_name}")
            return self._rejected(provider_name, "unknown_provider")

        try:
            if isinstance(raw_payload, dict):
                payload = raw_payload
            else:
                raw_body = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload
                if not adapter.verify_signature(raw_body, signature):
                    logger.warning(f"Invalid callback signature: provider={adapter.name}")
                    return self._rejected(adapter.name, "invalid_signature")
                payload = adapter.decode(raw_body)
            event = adapter.normalize(payload, received_at)
        except MalformedPayloadError as e:
            logger.warning(f"Malformed callback: provider={adapter.name}: {e}")
            return self._rejected(adapter.name, "invalid_payload")
        except Exception:
            logger.exception(f"Callback decoding failed: provider={adapter.name}")
            return self._rejected(adapter.name, "processing_error")

        key =event_key(adapter.name, event.provider_message_id, event.event_type, event.event_id)

        with log_context(provider=adapter.name, event_key=key), self.session_factory() as db:
            try:
                result = self._process(db, adapter.name, key, event, received_at, signature)
            except Exception:
                db.rollback()
                logger.exception(f"Callback processing failed: provider={adapter.name}, event_key={key}")
                return self._rejected(adapter.name, "processing_error", event_key=key)

        record_webhook_outcome(adapter.name, self._metric_result(result))
        logger.info(
            "Callback ingested",
            extra={
                "provider": adapter.name,
                "event_key": key,
                "action": result.action,
                "reason": result.reason,
                "status_before": result.status_before,
                "status_after": result.status_after,
            },
        )
        return result

    def _process(
        self,
        db: Session,
        provider_name: str,
        key: str,
        event: NormalizedEvent,
        received_at: datetime,
        signature: Optional[str],
    ) -> IngestionResult:
        max_age = timedelta(days=self.settings.EVENT_MAX_AGE_DAYS)
        if event.event_timestamp < received_at - max_age:
            row = event_row(
                provider_name, key, event, received_at, ProcessResult.IGNORED,
                note="event_too_old", signature=signature,
            )
            db.add(row)
            db.commit()
            logger.info(f"Ignoring stale callback: event_key={key}, event_timestamp={event.event_timestamp}")
            return self._result(row, "ignored", "event_too_old", provider_name, key)

        if self.cache.seen(key) or is_processed(db, key):
            return self._record_duplicate(db, provider_name, key, event, received_at, signature)

        record = records.get_record_by_provider_id(db, event.provider_message_id, lock=True)

        if record is None:
            row = event_row(
                provider_name, key, event, received_at, ProcessResult.STORED_ORPHAN,
                note="message_not_found", signature=signature,
            )
            db.add(row)
            mark_processed(db, key, received_at)
            if not self._commit_or_duplicate(db, key):
                return self._record_duplicate(db, provider_name, key, event, received_at, signature)
            self.cache.mark(key)
            logger.info(f"Stored orphan callback: provider_message_id={event.provider_message_id}, event_key={key}")
            return self._result(row, "stored_orphan", "message_not_found", provider_name, key)

        application = apply_event(db, record, event, self.settings, received_at)
        row = event_row(
            provider_name, key, event, received_at, application.process_result,
            record=record, application=application, signature=signature,
        )
        db.add(row)
        mark_processed(db, key, received_at)
        if not self._commit_or_duplicate(db, key):
            return self._record_duplicate(db, provider_name, key, event, received_at, signature)
        self.cache.mark(key)

        if application.status_changed:
            observe_timing(application)
            if application.propagate_status:
                propagate(self.propagator, record.link_refs, application.propagate_status, event.event_timestamp)
        else:
            logger.info(
                f"Callback did not change status: event_key={key}, current={application.status_before}, "
                f"event={event.event_type}, reason={application.note}"
            )

        action = "processed" if application.status_changed else "ignored"
        return self._result(row, action, application.note, provider_name, key)

    def _commit_or_duplicate(self, db: Session, key: str) -> bool:
        """Commit the event; False when another worker processed the same key first."""
        try:
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            logger.info(f"Concurrent duplicate callback lost the race: event_key={key}")
            return False

    def _record_duplicate(
        self,
        db: Session,
        provider_name: str,
        key: str,
        event: NormalizedEvent,
        received_at: datetime,
        signature: Optional[str],
    ) -> IngestionResult:
        record = records.get_record_by_provider_id(db, event.provider_message_id)
        row = event_row(
            provider_name, key, event, received_at, ProcessResult.DUPLICATE,
            record=record, note="duplicate", signature=signature,
        )
        db.add(row)
        db.commit()
        self.cache.mark(key)
        logger.info(f"Duplicate callback: event_key={key}")
        return self._result(row, "ignored", "duplicate", provider_name, key)

    @staticmethod
    def _result(row: DeliveryEvent, action: str, reason: Optional[str], provider_name: str, key: str) -> IngestionResult:
        return IngestionResult(
            accepted=True,
            action=action,
            reason=reason,
            provider=provider_name,
            event_key=key,
            event_record_id=row.id,
            message_record_id=row.message_record_id,
            status_before=row.status_before,
            status_after=row.status_after,
            status_changed=bool(row.status_changed),
        )

    @staticmethod
    def _rejected(provider_name: str, reason: str, event_key: Optional[str] = None) -> IngestionResult:
        record_webhook_outcome(provider_name or "unknown", "rejected")
        return IngestionResult(
            accepted=False,
            action="rejected",
            reason=reason,
            provider=provider_name,
            event_key=event_key,
        )

    @staticmethod
    def _metric_result(result: IngestionResult) -> str:
        if result.reason == "duplicate":
            return ProcessResult.DUPLICATE
        return result.action

