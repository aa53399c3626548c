"""
Email Deliverer — SMTP delivery through aiosmtplib.

Provides:
- Multipart send: HTML body with a plain-text alternative
- From display name per tenant ("{organization} - EMAIL SERVICE"), falling
  back to a static from_name
- Message-ID generated locally and returned as the provider reference
- SMTP error classification: 4xx / network → transient, 5xx → terminal
"""
from __future__ import annotations

import asyncio
import html
import re
import structlog
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

import aiosmtplib

from channels.base import Deliverer, TerminalDeliveryError, TransientDeliveryError
from models.schemas import Message, MessageClass

logger = structlog.get_logger()

_TAG_RE = re.compile(r"<[a-zA-Z/][^>]*>")

DEFAULT_FROM_NAME_FORMAT = "{organization} - EMAIL SERVICE"


def _classify_smtp_error(exc: Exception) -> bool:
    """True when the failure is temporary and worth another attempt."""
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [getattr(r, "code", 0) for r in exc.recipients]
        return bool(codes) and all(400 <= c < 500 for c in codes)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return True

    code = getattr(exc, "code", None)
    if isinstance(code, int):
        if 400 <= code < 500:
            return True
        if 500 <= code < 600:
            return False

    # Unknown SMTP failures get the benefit of the doubt
    return True


def html_to_plain(body: str) -> str:
    """Best-effort HTML → plain text without external dependencies."""
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", body, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class SmtpEmailDeliverer(Deliverer):
    """
    Sends one email per deliver() call over a fresh SMTP session.

    Config (providers.email.credentials):
        smtp_host, smtp_port, username, password, use_tls, start_tls,
        from_address, from_name, domain, timeout,
        tenant_names ({tenant_id: organization name}),
        from_name_format (default "{organization} - EMAIL SERVICE")
    """

    message_class = MessageClass.EMAIL
    provider = "smtp"

    def __init__(self, **breaker_kwargs):
        super().__init__(**breaker_kwargs)
        self._host: str = "localhost"
        self._port: int = 587
        self._username: str = ""
        self._password: str = ""
        self._use_tls: bool = False
        self._start_tls: bool = True
        self._from_address: str = ""
        self._from_name: str = ""
        self._tenant_names: dict[str, str] = {}
        self._from_name_format: str = DEFAULT_FROM_NAME_FORMAT
        self._domain: str = ""
        self._timeout: float = 20.0

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._host = config.get("smtp_host", "localhost")
        self._port = int(config.get("smtp_port", 587))
        self._username = config.get("username", "")
        self._password = config.get("password", "")
        self._use_tls = bool(config.get("use_tls", False))
        self._start_tls = bool(config.get("start_tls", not self._use_tls))
        self._from_address = config.get("from_address", "no-reply@example.com")
        self._from_name = config.get("from_name", "")
        self._tenant_names = {str(k): str(v) for k, v in (config.get("tenant_names") or {}).items()}
        self._from_name_format = config.get("from_name_format", DEFAULT_FROM_NAME_FORMAT)
        self._domain = config.get("domain", "") or self._from_address.rpartition("@")[2]
        self._timeout = float(config.get("timeout", 20.0))
        self._initialized = True
        logger.info("smtp_deliverer_initialized", host=self._host, port=self._port)

    def display_name_for(self, tenant_id: str) -> str:
        organization = self._tenant_names.get(tenant_id)
        if organization:
            return self._from_name_format.format(organization=organization)
        return self._from_name

    def build_mime(self, message: Message) -> EmailMessage:
        mime = EmailMessage()
        mime["From"] = formataddr((self.display_name_for(message.tenant_id), self._from_address))
        mime["To"] = message.recipient
        mime["Subject"] = message.subject
        mime["Message-ID"] = make_msgid(domain=self._domain or None)

        if _TAG_RE.search(message.body):
            html_body = message.body
            plain_body = html_to_plain(message.body)
        else:
            plain_body = message.body
            html_body = "<p>" + html.escape(message.body).replace("\n", "<br>") + "</p>"
        mime.set_content(plain_body)
        mime.add_alternative(html_body, subtype="html")
        return mime

    async def _do_deliver(self, message: Message) -> str:
        if not self._initialized:
            raise TransientDeliveryError("SMTP deliverer not initialized", self.channel)

        mime = self.build_mime(message)
        try:
            await aiosmtplib.send(
                mime,
                hostname=self._host,
                port=self._port,
                username=self._username or None,
                password=self._password or None,
                use_tls=self._use_tls,
                start_tls=self._start_tls,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            transient = _classify_smtp_error(e)
            logger.warning("smtp_send_failed",
                           message_id=message.id,
                           error=str(e),
                           transient=transient)
            if transient:
                raise TransientDeliveryError(f"SMTP error: {e}", self.channel) from e
            raise TerminalDeliveryError(f"SMTP rejected: {e}", self.channel) from e

        ref = mime["Message-ID"]
        logger.info("email_sent", message_id=message.id, to=message.recipient, provider_ref=ref)
        return ref
