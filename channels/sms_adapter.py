"""
SMS Deliverer — Twilio Messages API over httpx.

Provides:
- Form-encoded POST to /Accounts/{sid}/Messages.json
- Body is the subject and body joined by a newline
- Segment counting (GSM-7 vs UCS-2) for logs
- HTTP classification: 429 / 5xx / network → transient, other 4xx → terminal

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import Deliverer, TerminalDeliveryError, TransientDeliveryError
from models.schemas import Message, MessageClass

logger = structlog.get_logger()


# GSM-7 basic character set
_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
_GSM7_EXTENDED = set("^{}[]~|\\€")


def segment_count(text: str) -> int:
    """
    SMS segments needed for `text`.

    GSM-7: 160 chars single / 153 per segment
    UCS-2: 70 chars single / 67 per segment
    """
    if not text:
        return 0
    if all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text):
        units = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        return 1 if units <= 160 else (units + 152) // 153
    return 1 if len(text) <= 70 else (len(text) + 66) // 67


def sms_text(message: Message) -> str:
    if message.subject:
        return f"{message.subject}\n{message.body}"
    return message.body


class TwilioSmsDeliverer(Deliverer):
    """
    Config (providers.sms.credentials):
        account_sid, auth_token, from_number, base_url, timeout
    The message's own sender wins over from_number.
    """

    message_class = MessageClass.SMS
    provider = "twilio"

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, **breaker_kwargs):
        super().__init__(**breaker_kwargs)
        self._account_sid: str = ""
        self._auth_token: str = ""
        self._from_number: str = ""
        self._base_url: str = self.BASE_URL
        self._timeout: float = 15.0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._account_sid = config.get("account_sid", "")
        self._auth_token = config.get("auth_token", "")
        self._from_number = config.get("from_number", "")
        self._base_url = config.get("base_url", self.BASE_URL).rstrip("/")
        self._timeout = float(config.get("timeout", 15.0))
        self._initialized = True
        logger.info("twilio_deliverer_initialized", account_sid=self._account_sid[:8])

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{self._account_sid}/Messages.json"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self._account_sid, self._auth_token),
                timeout=httpx.Timeout(self._timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    async def _do_deliver(self, message: Message) -> str:
        if not self._initialized:
            raise TransientDeliveryError("Twilio deliverer not initialized", self.channel)

        text = sms_text(message)
        payload = {
            "From": message.sender or self._from_number,
            "To": message.recipient,
            "Body": text,
        }
        try:
            resp = await self._get_client().post(self.messages_url, data=payload)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Twilio timeout: {e}", self.channel) from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Twilio transport error: {e}", self.channel) from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            logger.warning("twilio_api_error",
                           message_id=message.id,
                           status=resp.status_code,
                           detail=detail)
            if resp.status_code == 429 or resp.status_code >= 500:
                raise TransientDeliveryError(
                    f"Twilio {resp.status_code}: {detail}", self.channel,
                )
            raise TerminalDeliveryError(f"Twilio {resp.status_code}: {detail}", self.channel)

        sid = resp.json().get("sid", "")
        if not sid:
            raise TerminalDeliveryError("Twilio response carried no message sid", self.channel)

        logger.info("sms_sent",
                    message_id=message.id,
                    to=message.recipient,
                    segments=segment_count(text),
                    provider_ref=sid)
        return sid

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300]
    return str(body.get("message") or body)[:300]
