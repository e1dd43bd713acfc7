"""Gateway adapters: the per-provider seams of the webhook pipeline.

The reconciliation core never looks at raw gateway fields. Each adapter
turns them into a PaymentNotification and answers three questions about
them: is the signature valid, what canonical status do they mean, which
quotes do they refer to.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from django.conf import settings

from .exceptions import ConfigurationError, MalformedPayload
from .statuses import PaymentStatus


KIND_PAYMENT = "payment"
KIND_REFUND = "refund"

# Amounts are stored as DECIMAL(12, 2).
MAX_AMOUNT = Decimal("1e10")
CENTS = Decimal("0.01")


@dataclass
class PaymentNotification:
    gateway: str
    transaction_id: str
    raw_status: str
    amount: Decimal
    currency: str
    kind: str = KIND_PAYMENT
    gateway_transaction_id: str = ""
    free_text: str = ""
    customer_email: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    guest_session_token: str = ""
    refund_amount: Decimal | None = None
    refund_reference: str = ""
    error_message: str = ""
    fields: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_refund(self) -> bool:
        return self.kind == KIND_REFUND

    def replay_key(self) -> str:
        return f"{self.gateway}:{self.transaction_id}:{self.raw_status}:{self.amount}:{self.refund_reference}"


def sha512_hex(raw: str) -> str:
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def compare_digest_ci(expected: str, provided) -> bool:
    """Case-insensitive constant-time comparison of hex digests."""
    if not provided:
        return False
    return hmac.compare_digest(expected.strip().lower(), str(provided).strip().lower())


def decimal_field(raw, name: str, *, required: bool) -> Decimal | None:
    """Parse a money amount, rejecting anything that does not fit the ledger columns."""
    raw = "" if raw is None else str(raw).strip()
    if not raw:
        if required:
            raise MalformedPayload(f"Missing required field: {name}")
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise MalformedPayload(f"Invalid decimal in field: {name}")
    if not value.is_finite() or value < 0 or value >= MAX_AMOUNT:
        raise MalformedPayload(f"Invalid decimal in field: {name}")
    if value != value.quantize(CENTS):
        raise MalformedPayload(f"Too many decimal places in field: {name}")
    return value


class GatewayAdapter:
    code = ""
    # Settings keys that must be present, otherwise the gateway fails closed.
    required_settings = ("salt",)

    def __init__(self, config: dict):
        self.config = config

    def verify_signature(self, fields: dict, *, headers=None, body: bytes = b"") -> bool:
        raise NotImplementedError

    def normalize(self, fields: dict) -> PaymentNotification:
        raise NotImplementedError

    def map_status(self, notification: PaymentNotification) -> PaymentStatus:
        raise NotImplementedError

    def extract_correlation_ids(self, notification: PaymentNotification) -> list[str]:
        raise NotImplementedError


_REGISTRY: dict[str, type[GatewayAdapter]] = {}


def register(adapter_cls: type[GatewayAdapter]) -> type[GatewayAdapter]:
    _REGISTRY[adapter_cls.code] = adapter_cls
    return adapter_cls


def registered_gateways() -> list[str]:
    _load_builtin_adapters()
    return sorted(_REGISTRY)


def gateway_config(code: str) -> dict:
    config = dict((getattr(settings, "PAYMENT_GATEWAYS", {}) or {}).get(code) or {})
    adapter_cls = _REGISTRY.get(code)
    required = adapter_cls.required_settings if adapter_cls else ("salt",)
    missing = [name for name in required if not str(config.get(name) or "").strip()]
    if missing:
        # Name the setting, never its value.
        raise ConfigurationError(f"Gateway '{code}' is missing configuration: {', '.join(missing)}")
    return config


def get_adapter(code: str) -> GatewayAdapter:
    _load_builtin_adapters()
    adapter_cls = _REGISTRY.get(code)
    if adapter_cls is None:
        raise ConfigurationError(f"Unknown payment gateway '{code}'")
    return adapter_cls(gateway_config(code))


def _load_builtin_adapters() -> None:
    from . import airwallex, payu  # noqa
