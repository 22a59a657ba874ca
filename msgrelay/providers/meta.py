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


class MetaCloudAdapter(ProviderAdapter):
    """
    WhatsApp Cloud API (graph.facebook.com).

    Status callbacks arrive nested as entry[0].changes[0].value.statuses[0]
    and are signed with the app secret in X-Hub-Signature-256 ("sha256=<hex>").
    """

    name = "meta"
    signature_header = "X-Hub-Signature-256"

    def __init__(self, api_base: str = "", phone_number_id: str = "", access_token: str = "", **kwargs):
        super().__init__(**kwargs)
        self.api_base = api_base.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token

    def _send_live(self, recipient: str, content: str, options: Dict[str, Any]) -> ProviderResponse:
        body: Dict[str, Any] = {"messaging_product": "whatsapp", "to": recipient.lstrip("+")}
        if options.get("type") == "template" and options.get("template_name"):
            body["type"] = "template"
            body["template"] = {
                "name": options["template_name"],
                "language": {"code": options.get("language", "en")},
            }
        else:
            body["type"] = "text"
            body["text"] = {"body": content}

        resp = self.http.post(
            f"{self.api_base}/{self.phone_number_id}/messages",
            headers={"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )
        message_id = None
        try:
            messages = resp.json().get("messages") or []
            if messages:
                message_id = messages[0].get("id")
        except (ValueError, AttributeError):
            pass
        return self._response_from_http(resp, message_id)

    def normalize(self, payload: Dict[str, Any], received_at: datetime) -> NormalizedEvent:
        try:
            value = payload["entry"][0]["changes"][0]["value"]
            status = value["statuses"][0]
        except (KeyError, IndexError, TypeError):
            raise MalformedPayloadError("Missing entry/changes/value/statuses")
        if not isinstance(status, dict):
            raise MalformedPayloadError("Status entry is not an object")

        message_id = status.get("id")
        event_type = normalize_event_type(status.get("status"))
        if not message_id or not event_type:
            raise MalformedPayloadError("Missing message_id or status")

        errors = status.get("errors") or [{}]
        error = errors[0] if isinstance(errors, list) and isinstance(errors[0], dict) else {}
        error_code = error.get("code")
        return NormalizedEvent(
            provider_message_id=str(message_id),
            event_type=event_type,
            event_id=None,
            event_timestamp=parse_timestamp(status.get("timestamp"), received_at),
            recipient=status.get("recipient_id"),
            error_code=str(error_code) if error_code is not None else None,
            error_message=error.get("title"),
            raw=payload,
        )
