from datetime import datetime
from typing import Any, Dict
from urllib.parse import parse_qsl

from msgrelay.errors import MalformedPayloadError
from msgrelay.providers.base import (
    NormalizedEvent,
    ProviderAdapter,
    ProviderResponse,
    normalize_event_type,
)


def _strip_channel(address: str) -> str:
    return address.split(":", 1)[1] if address.startswith("whatsapp:") else address


class TwilioAdapter(ProviderAdapter):
    """
    Twilio WhatsApp. Status callbacks are form-encoded and carry no
    timestamp, so the receipt time stands in for the event time.
    """

    name = "twilio"

    def __init__(self, api_base: str = "", account_sid: str = "", auth_token: str = "", sender: str = "", **kwargs):
        super().__init__(**kwargs)
        self.api_base = api_base.rstrip("/")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.sender = sender

    def _send_live(self, recipient: str, content: str, options: Dict[str, Any]) -> ProviderResponse:
        resp = self.http.post(
            f"{self.api_base}/Accounts/{self.account_sid}/Messages.json",
            auth=(self.account_sid, self.auth_token),
            data={"From": f"whatsapp:{self.sender}", "To": f"whatsapp:{recipient}", "Body": content},
            timeout=self.timeout,
        )
        message_id = None
        try:
            message_id = resp.json().get("sid")
        except (ValueError, AttributeError):
            pass
        return self._response_from_http(resp, message_id)

    def decode(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            return dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as e:
            raise MalformedPayloadError(f"Invalid form body: {e}")

    def normalize(self, payload: Dict[str, Any], received_at: datetime) -> NormalizedEvent:
        message_id = payload.get("MessageSid")
        event_type = normalize_event_type(payload.get("MessageStatus"))
        if not message_id or not event_type:
            raise MalformedPayloadError("Missing MessageSid or MessageStatus")

        return NormalizedEvent(
            provider_message_id=str(message_id),
            event_type=event_type,
            event_id=None,
            event_timestamp=received_at,
            recipient=_strip_channel(payload.get("To") or "") or None,
            error_code=payload.get("ErrorCode") or None,
            error_message=payload.get("ErrorMessage") or None,
            raw=payload,
        )
