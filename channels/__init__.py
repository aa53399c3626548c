"""Delivery channels for every supported message class."""
from channels.base import (
    Deliverer,
    DeliveryRegistry,
    DeliveryError,
    TransientDeliveryError,
    TerminalDeliveryError,
    CircuitOpenError,
    CircuitBreaker,
    DeliveryMetrics,
)
from channels.email_adapter import SmtpEmailDeliverer
from channels.sms_adapter import TwilioSmsDeliverer
from channels.mock_adapter import MockDeliverer
from channels.factory import create_deliverers

__all__ = [
    "Deliverer", "DeliveryRegistry",
    "DeliveryError", "TransientDeliveryError", "TerminalDeliveryError", "CircuitOpenError",
    "CircuitBreaker", "DeliveryMetrics",
    "SmtpEmailDeliverer", "TwilioSmsDeliverer", "MockDeliverer",
    "create_deliverers",
]
