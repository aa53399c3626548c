"""
Deliverer Factory — instantiates the configured provider per message class.

    providers:
      email: {provider: smtp,   credentials: {...}}
      sms:   {provider: twilio, credentials: {...}}

Classes whose provider is "none" get no deliverer and no worker pool.
"""
from __future__ import annotations

import structlog

from channels.base import Deliverer, DeliveryRegistry
from models.schemas import MessageClass

logger = structlog.get_logger()


def _build(message_class: MessageClass, provider: str) -> Deliverer:
    if provider == "mock":
        from channels.mock_adapter import MockDeliverer
        return MockDeliverer(message_class)
    if message_class == MessageClass.EMAIL and provider == "smtp":
        from channels.email_adapter import SmtpEmailDeliverer
        return SmtpEmailDeliverer()
    if message_class == MessageClass.SMS and provider == "twilio":
        from channels.sms_adapter import TwilioSmsDeliverer
        return TwilioSmsDeliverer()
    raise ValueError(f"Unsupported provider {provider!r} for {message_class.value}")


def create_deliverers(settings) -> DeliveryRegistry:
    """Build (not initialize) a DeliveryRegistry from Settings.providers."""
    registry = DeliveryRegistry()
    for message_class in MessageClass:
        cfg = settings.providers.get(message_class.value)
        if cfg is None or cfg.provider == "none":
            continue
        registry.register(_build(message_class, cfg.provider))
        logger.info("deliverer_registered",
                    message_class=message_class.value,
                    provider=cfg.provider)
    return registry
