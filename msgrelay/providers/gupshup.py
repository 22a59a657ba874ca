import json
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


class GupshupAdapter(ProviderAdapter):
    """Gupshup WhatsApp BSP: form-encoded sends, message-event callbacks."""

    name = "gupshup"

    def __init__(self, api_base: str = "", api_key: str = "", source: str = "", app_name: str = "", **kwargs):
        super().__init__(**kwargs)
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.source = source
        self.app_name = app_name

    def _send_live(self, recipient: str, content: str, options: Dict[str, Any]) -> ProviderResponse:
        resp = self.http.post(
            f"{self.api_base}/msg",
            headers={"apikey": self.api_key, "Content-Type": "application/x-www-form-urlencoded"},
            data={
                "channel": "whatsapp",
                "source": self.source,
                "destination": recipient.lstrip("+"),
                "message": json.dumps({"type": "text", "text": content}),
                "src.name": self.app_name,
            },
            timeout=self.timeout,
        )
        message_id = None
        try:
            message_id = resp.json().get("messageId")
        except (ValueError, AttributeError):
            pass
        return self._response_from_http(resp, message_id)

    def normalize(self, payload: Dict[str, Any], received_at: datetime) -> NormalizedEvent:
        # Gupshup wraps the event in {"type": "message-event", "payload": {...}}
        event = payload.get("payload") if isinstance(payload.get("payload"), dict) else payload

        message_id = event.get("gsId") or event.get("id")
        event_type = normalize_event_type(event.get("type"))
        if not message_id or not event_type:
            raise MalformedPayloadError("Missing message_id or event_type")

        details = event.get("payload") if isinstance(event.get("payload"), dict) else {}
        error_code = details.get("code")
        return NormalizedEvent(
            provider_message_id=str(message_id),
            event_type=event_type,
            event_id=payload.get("eventId"),
            event_timestamp=parse_timestamp(event.get("timestamp") or payload.get("timestamp"), received_at),
            recipient=event.get("destination"),
            error_code=str(error_code) if error_code is not None else None,
            error_message=details.get("reason"),
            raw=payload,
        )
