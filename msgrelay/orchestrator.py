"""
SendOrchestrator: sends a logical message at most once.

Flow for one ``send`` call:
1. find-or-create the MessageRecord by idempotency key
2. short-circuit terminal, in-flight and exhausted records
3. read-only quota estimate
4. atomic claim (single conditional UPDATE, committed before any network I/O)
5. provider call
6. record success (then consume quota under ``quota_<key>``) or failure

No exception escapes ``send``; callers always get a SendOutcome.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy.orm import Session

from msgrelay import records
from msgrelay.clock import Clock, SystemClock
from msgrelay.config import Settings, get_settings
from msgrelay.errors import ErrorCode, QuotaError, classify_provider_error, is_retryable
from msgrelay.logging_utils import log_context
from msgrelay.metrics import record_send_outcome
from msgrelay.models import MessageRecord, MessageStatus, MessageType
from msgrelay.propagation import LoggingStatusPropagator, StatusPropagator, propagate
from msgrelay.providers import ProviderRegistry, ProviderResponse
from msgrelay.quota import QuotaLedger
from msgrelay.records import MessageAttributes
from msgrelay.schemas import SendOutcome
from msgrelay.storage import SessionLocal
from msgrelay.throttle import ThrottlePolicy

logger = logging.getLogger(__name__)

ProviderCall = Callable[[], ProviderResponse]


@dataclass
class _Attempt:
    """Progress of one send call, consulted when an unexpected error escapes."""
    key: str
    record_id: Optional[int] = None
    claim_id: Optional[str] = None
    claimed: bool = False


class SendOrchestrator:
    def __init__(
        self,
        quota_ledger: QuotaLedger,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        propagator: Optional[StatusPropagator] = None,
        throttle: Optional[ThrottlePolicy] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.quota_ledger = quota_ledger
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.propagator = propagator or LoggingStatusPropagator()
        self.throttle = throttle
        self.registry = registry

    # =========================================================================
    # Core
    # =========================================================================

    def send(self, idempotency_key: str, attributes: MessageAttributes, provider_call: ProviderCall) -> SendOutcome:
        attempt = _Attempt(key=idempotency_key)
        with log_context(idempotency_key=idempotency_key, tenant_id=attributes.tenant_id), self.session_factory() as db:
            try:
                outcome = self._send(db, attempt, attributes, provider_call)
            except Exception as e:
                logger.exception(f"Send failed unexpectedly: key={idempotency_key}")
                db.rollback()
                outcome = self._fail_after_error(db, attempt, e)

        record_send_outcome(outcome.status, outcome.reason)
        logger.info(
            "Send finished",
            extra={
                "idempotency_key": idempotency_key,
                "outcome": outcome.status,
                "reason": outcome.reason,
                "message_record_id": outcome.message_record_id,
            },
        )
        return outcome

    def _send(self, db: Session, attempt: _Attempt, attributes: MessageAttributes, provider_call: ProviderCall) -> SendOutcome:
        now = self.clock.now()
        record, _ = records.find_or_create_record(db, attempt.key, attributes, now)
        attempt.record_id = record.id

        skip = self._precheck(record, now)
        if skip is not None:
            return skip

        quota = self.quota_ledger.can_consume(record.tenant_id, record.message_cost)
        if not quota.can_consume:
            logger.warning(
                f"Quota check failed before send: key={attempt.key}, tenant={record.tenant_id}, reason={quota.reason}"
            )
            failed = records.mark_failed(
                db,
                record.id,
                ErrorCode.QUOTA_EXCEEDED,
                f"Quota check failed: {quota.reason}",
                retryable=False,
                now=now,
                backoff_base=self.settings.RETRY_BACKOFF_BASE_SECONDS,
                backoff_multiplier=self.settings.RETRY_BACKOFF_MULTIPLIER,
            )
            db.commit()
            return self._outcome("skipped", failed or record, reason="quota_exceeded")

        attempt.claim_id = str(uuid.uuid4())
        attempt.claimed = records.claim_record(
            db, record.id, attempt.claim_id, now, self.settings.SENDING_STALE_SECONDS
        )
        db.commit()
        if not attempt.claimed:
            logger.info(f"Claim lost to another worker: key={attempt.key}")
            return self._outcome("skipped", record, reason="claim_failed")

        response = self._call_provider(provider_call, attempt.key)

        if response.accepted and response.provider_message_id:
            return self._record_success(db, record, response)

        if response.accepted:
            response = ProviderResponse.failure(
                ErrorCode.PROVIDER_ERROR,
                "Provider accepted the message without returning an id",
                http_status=response.http_status,
                provider_name=response.provider_name,
            )
        return self._record_failure(db, record, response)

    def _precheck(self, record: MessageRecord, now) -> Optional[SendOutcome]:
        if record.is_successfully_sent:
            logger.info(f"Message already sent: key={record.idempotency_key}, status={record.status}")
            return self._outcome("already_sent", record)

        if record.status == MessageStatus.SENDING and not records.is_claim_stale(
            record, now, self.settings.SENDING_STALE_SECONDS
        ):
            return self._outcome("skipped", record, reason="processing")

        if record.status == MessageStatus.FAILED:
            if record.retry_count >= record.max_retries:
                return self._outcome("skipped", record, reason="max_retries_reached")
            if not record.is_retryable:
                return self._outcome("skipped", record, reason="permanently_failed")

        if record.status == MessageStatus.EXPIRED:
            return self._outcome("skipped", record, reason="expired")

        return None

    def _call_provider(self, provider_call: ProviderCall, key: str) -> ProviderResponse:
        try:
            return provider_call()
        except requests.Timeout as e:
            logger.warning(f"Provider call timed out: key={key}: {e}")
            return ProviderResponse.failure(ErrorCode.TIMEOUT, str(e) or "Request timed out")
        except Exception as e:
            logger.warning(f"Provider call raised: key={key}: {e!r}")
            return ProviderResponse.failure(ErrorCode.NETWORK_ERROR, str(e) or type(e).__name__)

    def _record_success(self, db: Session, record: MessageRecord, response: ProviderResponse) -> SendOutcome:
        now = self.clock.now()
        updated = records.mark_sent(
            db, record.id, response.provider_message_id, response.provider_name, response.http_status, now
        )
        db.commit()
        if not updated:
            logger.warning(
                f"Provider accepted but record was no longer claimable: key={record.idempotency_key}, "
                f"provider_message_id={response.provider_message_id}"
            )

        self._consume_quota(db, record, response)
        propagate(self.propagator, record.link_refs, MessageStatus.SENT, now)

        db.refresh(record)
        logger.info(
            f"Message sent: key={record.idempotency_key}, provider={response.provider_name}, "
            f"provider_message_id={response.provider_message_id}"
        )
        return self._outcome("sent", record)

    def _consume_quota(self, db: Session, record: MessageRecord, response: ProviderResponse) -> None:
        key = records.quota_key(record.idempotency_key)
        try:
            result = self.quota_ledger.try_consume(
                record.tenant_id,
                record.message_cost,
                key,
                {
                    "message_record_id": record.id,
                    "provider_message_id": response.provider_message_id,
                    "recipient": record.recipient,
                },
            )
        except QuotaError as e:
            # The message is already out; the shortfall is reported, not undone
            logger.warning(f"Quota consume failed after successful send: key={record.idempotency_key}: {e}")
            return

        if result.consumed or result.skipped:
            records.mark_quota_consumed(db, record.id, key, self.clock.now())
            db.commit()

    def _record_failure(self, db: Session, record: MessageRecord, response: ProviderResponse) -> SendOutcome:
        now = self.clock.now()
        code = classify_provider_error(response.error_code, response.error_message, response.http_status)
        factor = self.throttle.factor_for(record.tenant_id) if self.throttle else 1.0

        failed = records.mark_failed(
            db,
            record.id,
            code,
            response.error_message or code,
            retryable=is_retryable(code),
            now=now,
            backoff_base=self.settings.RETRY_BACKOFF_BASE_SECONDS,
            backoff_multiplier=self.settings.RETRY_BACKOFF_MULTIPLIER,
            throttle_factor=factor,
            http_status=response.http_status,
            provider_message_id=response.provider_message_id,
        )
        db.commit()

        if failed is None:
            db.refresh(record)
            return self._outcome("already_sent", record)

        logger.warning(
            f"Send failed: key={failed.idempotency_key}, code={code}, retryable={failed.is_retryable}, "
            f"retry_count={failed.retry_count}/{failed.max_retries}"
        )
        if not failed.is_retryable:
            propagate(self.propagator, failed.link_refs, MessageStatus.FAILED, now)
        return self._outcome("failed", failed)

    def _fail_after_error(self, db: Session, attempt: _Attempt, error: Exception) -> SendOutcome:
        fallback = SendOutcome(
            status="failed",
            reason="internal_error",
            message_record_id=attempt.record_id,
            error_code=ErrorCode.NETWORK_ERROR,
            error_message=str(error),
            is_retryable=True,
        )
        if not (attempt.claimed and attempt.record_id):
            return fallback

        try:
            failed = records.mark_failed(
                db,
                attempt.record_id,
                ErrorCode.NETWORK_ERROR,
                f"Internal error: {error}",
                retryable=True,
                now=self.clock.now(),
                backoff_base=self.settings.RETRY_BACKOFF_BASE_SECONDS,
                backoff_multiplier=self.settings.RETRY_BACKOFF_MULTIPLIER,
            )
            db.commit()
            if failed is not None:
                return self._outcome("failed", failed, reason="internal_error")

            record = records.get_record(db, attempt.record_id)
            if record is not None and record.is_successfully_sent:
                # The provider accepted before the error; the send stands
                return self._outcome("sent", record)
        except Exception:
            db.rollback()
            logger.exception(f"Could not release claim after error: key={attempt.key}")
        return fallback

    @staticmethod
    def _outcome(status: str, record: MessageRecord, reason: Optional[str] = None) -> SendOutcome:
        return SendOutcome(
            status=status,
            reason=reason,
            message_record_id=record.id,
            provider_message_id=record.provider_message_id,
            error_code=record.error_code,
            error_message=record.error_message,
            is_retryable=bool(record.is_retryable),
            retry_count=record.retry_count or 0,
            retry_after=record.retry_after,
            quota_consumed=bool(record.quota_consumed),
        )

    # =========================================================================
    # Convenience entry points
    # =========================================================================

    def _provider_call(self, provider: Optional[str], recipient: str, content: str, options: Dict[str, Any]) -> ProviderCall:
        if self.registry is None:
            raise RuntimeError("SendOrchestrator was built without a provider registry")
        adapter = self.registry.get(provider)
        return lambda: adapter.send(recipient, content, options)

    def send_campaign_message(
        self,
        tenant_id: str,
        campaign_id: str,
        target_id: str,
        recipient: str,
        content: str = "",
        template_name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> SendOutcome:
        """One message per campaign target, however often the batch is re-run."""
        options: Dict[str, Any] = {}
        message_type = MessageType.TEXT
        if template_name:
            message_type = MessageType.TEMPLATE
            options = {"type": "template", "template_name": template_name, **(params or {})}

        attributes = MessageAttributes(
            tenant_id=tenant_id,
            recipient=recipient,
            content=content,
            message_type=message_type,
            template_name=template_name,
            message_params=params,
            campaign_id=campaign_id,
            campaign_target_id=target_id,
            max_retries=self.settings.DEFAULT_MAX_RETRIES,
        )
        return self.send(
            records.campaign_key(campaign_id, target_id),
            attributes,
            self._provider_call(provider, recipient, content, options),
        )

    def send_inbox_message(
        self,
        tenant_id: str,
        conversation_id: str,
        recipient: str,
        content: str,
        nonce: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> SendOutcome:
        """
        Agent reply from the inbox. Pass the client-generated ``nonce`` to make
        a resubmitted reply idempotent; without one every call is a new message.
        """
        attributes = MessageAttributes(
            tenant_id=tenant_id,
            recipient=recipient,
            content=content,
            conversation_id=conversation_id,
            max_retries=self.settings.DEFAULT_MAX_RETRIES,
        )
        return self.send(
            records.inbox_key(conversation_id, nonce),
            attributes,
            self._provider_call(provider, recipient, content, {}),
        )

    def send_api_message(
        self,
        tenant_id: str,
        request_id: str,
        recipient: str,
        content: str,
        provider: Optional[str] = None,
    ) -> SendOutcome:
        attributes = MessageAttributes(
            tenant_id=tenant_id,
            recipient=recipient,
            content=content,
            max_retries=self.settings.DEFAULT_MAX_RETRIES,
            metadata={"request_id": request_id},
        )
        return self.send(
            records.api_key(tenant_id, request_id),
            attributes,
            self._provider_call(provider, recipient, content, {}),
        )
