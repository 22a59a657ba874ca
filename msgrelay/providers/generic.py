from datetime import datetime
from typing import Any, Dict

from msgrelay.errors import MalformedPayloadError
from msgrelay.providers.base import (
    NormalizedEvent,
    ProviderAdapter,
    ProviderResponse,
    normalize_event_type,
    parse_timestamp,
)


class GenericAdapter(ProviderAdapter):
    """
    Flat JSON shape used by internal relays and test harnesses:

        {"event_id": "e1", "message_id": "wamid.1", "status": "delivered",
         "timestamp": "2025-01-15T10:00:00Z", "to": "+62811...", "error_code": null}
    """

    name = "generic"

    def __init__(self, api_base: str = "", **kwargs):
        super().__init__(**kwargs)
        self.api_base = api_base.rstrip("/")

    def _send_live(self, recipient: str, content: str, options: Dict[str, Any]) -> ProviderResponse:
        resp = self.http.post(
            f"{self.api_base}/messages",
            json={"to": recipient, "text": content, **options},
            timeout=self.timeout,
        )
        message_id = None
        try:
            message_id = resp.json().get("message_id")
        except (ValueError, AttributeError):
            pass
        return self._response_from_http(resp, message_id)

    def normalize(self, payload: Dict[str, Any], received_at: datetime) -> NormalizedEvent:
        message_id = payload.get("message_id") or payload.get("id")
        event_type = normalize_event_type(payload.get("status") or payload.get("event"))
        if not message_id or not event_type:
            raise MalformedPayloadError("Missing message_id or status")

        error_code = payload.get("error_code")
        event_id = payload.get("event_id")
        return NormalizedEvent(
            provider_message_id=str(message_id),
            event_type=event_type,
            event_id=str(event_id) if event_id else None,
            event_timestamp=parse_timestamp(payload.get("timestamp"), received_at),
            recipient=payload.get("phone") or payload.get("to"),
            error_code=str(error_code) if error_code is not None else None,
            error_message=payload.get("error_message") or payload.get("error"),
            raw=payload,
        )
