import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import requests

from msgrelay.clock import to_naive_utc
from msgrelay.errors import ErrorCode, MalformedPayloadError, classify_provider_error
from msgrelay.models import EventType

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = (5.0, 15.0)  # connect, read

# Provider-native status -> canonical event type
STATUS_VOCABULARY = {
    "sent": EventType.SENT,
    "enqueued": EventType.SENT,
    "submitted": EventType.SENT,
    "accepted": EventType.SENT,
    "queued": EventType.SENT,
    "delivered": EventType.DELIVERED,
    "read": EventType.READ,
    "seen": EventType.READ,
    "failed": EventType.FAILED,
    "undelivered": EventType.FAILED,
    "error": EventType.FAILED,
    "rejected": EventType.REJECTED,
    "blocked": EventType.REJECTED,
    "expired": EventType.EXPIRED,
    "deleted": EventType.EXPIRED,
}


def normalize_event_type(status: Optional[str]) -> Optional[str]:
    """Unrecognized statuses map to failed so they get investigated."""
    if not status:
        return None
    return STATUS_VOCABULARY.get(str(status).strip().lower(), EventType.FAILED)


def parse_timestamp(value: Any, default: datetime) -> datetime:
    """Accept epoch seconds, epoch milliseconds or ISO-8601; return naive UTC."""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = None
    if number is not None:
        if number > 1e11:  # milliseconds
            number = number / 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc).replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            raise MalformedPayloadError(f"timestamp out of range: {value!r}")
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise MalformedPayloadError(f"unparseable timestamp: {value!r}")


@dataclass
class ProviderResponse:
    """What a provider said about one outbound send attempt."""
    accepted: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    http_status: Optional[int] = None
    provider_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error_code: str, error_message: str, **kwargs) -> "ProviderResponse":
        return cls(accepted=False, error_code=error_code, error_message=error_message, **kwargs)


@dataclass(frozen=True)
class NormalizedEvent:
    """Provider-agnostic view of one delivery callback."""
    provider_message_id: str
    event_type: str
    event_id: Optional[str]
    event_timestamp: datetime
    recipient: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    """
    Common send/normalize contract implemented once per provider.

    Subclasses set ``name`` and implement ``_send_live`` and ``normalize``.
    In dry-run mode ``send`` never touches the network and returns a
    synthetic ``dev-<name>-<ms>-<hex>`` id, which keeps local runs and tests offline.
    """

    name = "base"
    signature_header = "X-Signature"

    def __init__(
        self,
        secret: str = "",
        dry_run: bool = True,
        timeout: Tuple[float, float] = DEFAULT_TIMEOUT,
        http: Optional[requests.Session] = None,
    ):
        self.secret = secret
        self.dry_run = dry_run
        self.timeout = timeout
        self.http = http or requests.Session()

    # ---------- outbound ----------

    def send(self, recipient: str, content: str, options: Optional[Dict[str, Any]] = None) -> ProviderResponse:
        options = options or {}
        if self.dry_run:
            dev_id = f"dev-{self.name}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
            log.info("[DRY_RUN SEND] provider=%s to=%s id=%s", self.name, recipient, dev_id)
            return ProviderResponse(accepted=True, provider_message_id=dev_id, provider_name=self.name)

        try:
            response = self._send_live(recipient, content, options)
        except requests.Timeout as e:
            log.warning("Provider send timed out provider=%s: %s", self.name, e)
            return ProviderResponse.failure(ErrorCode.TIMEOUT, str(e), provider_name=self.name)
        except requests.RequestException as e:
            log.warning("Provider send transport error provider=%s: %s", self.name, e)
            return ProviderResponse.failure(ErrorCode.NETWORK_ERROR, str(e), provider_name=self.name)

        response.provider_name = self.name
        return response

    def _send_live(self, recipient: str, content: str, options: Dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError

    def _response_from_http(self, resp: requests.Response, message_id: Optional[str]) -> ProviderResponse:
        try:
            data = resp.json()
        except ValueError:
            data = {"_raw": resp.text}

        if resp.status_code in (200, 201, 202) and message_id:
            return ProviderResponse(
                accepted=True,
                provider_message_id=str(message_id),
                http_status=resp.status_code,
                raw=data if isinstance(data, dict) else {"data": data},
            )

        error_message = self._extract_error(data) or f"HTTP {resp.status_code}"
        log.error("Provider send failed provider=%s status=%s data=%s", self.name, resp.status_code, data)
        return ProviderResponse.failure(
            classify_provider_error(error_message=error_message, http_status=resp.status_code),
            error_message,
            http_status=resp.status_code,
            raw=data if isinstance(data, dict) else {"data": data},
        )

    @staticmethod
    def _extract_error(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        error = data.get("error") or data.get("message")
        if isinstance(error, dict):
            return error.get("message") or error.get("title")
        return str(error) if error else None

    # ---------- inbound ----------

    def decode(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"Invalid JSON: {e}")
        if not isinstance(payload, dict):
            raise MalformedPayloadError("payload must be a JSON object")
        return payload

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Verify a hex HMAC-SHA256 of the raw body.

        Adapters without a configured secret accept unsigned callbacks.
        """
        if not self.secret:
            return True
        if not signature:
            return False
        expected = hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        # Use constant-time comparison to prevent timing attacks
        return hmac.compare_digest(expected, self._strip_signature_prefix(signature))

    @staticmethod
    def _strip_signature_prefix(signature: str) -> str:
        return signature.split("=", 1)[1] if signature.startswith("sha256=") else signature

    def normalize(self, payload: Dict[str, Any], received_at: datetime) -> NormalizedEvent:
        raise NotImplementedError
