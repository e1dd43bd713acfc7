"""Airwallex payment intent and refund events.

Airwallex posts JSON events ({"id", "name", "data": {"object": {...}}}) and
signs them in the x-airwallex-signature header as "t=<unix ts>,v1=<hex>",
where the hex digest is HMAC-SHA256 of "<ts>.<raw body>" under the webhook
secret.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from decimal import Decimal

from .correlation import resolve_correlation_ids
from .exceptions import MalformedPayload
from .gateways import (
    KIND_PAYMENT,
    KIND_REFUND,
    GatewayAdapter,
    PaymentNotification,
    compare_digest_ci,
    decimal_field,
    register,
)
from .statuses import PaymentStatus


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-airwallex-signature"
DEFAULT_TOLERANCE_SECONDS = 300

AIRWALLEX_EVENT_MAP = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    # a settled attempt stands in for its intent
    "payment_attempt.settled": PaymentStatus.COMPLETED,
    "payment_intent.failed": PaymentStatus.FAILED,
    "payment_intent.cancelled": PaymentStatus.CANCELLED,
    "refund.succeeded": PaymentStatus.COMPLETED,
    "refund.failed": PaymentStatus.FAILED,
}


def parse_signature_header(value) -> tuple[str, str]:
    timestamp = signature = ""
    for element in str(value or "").split(","):
        key, _, part = element.strip().partition("=")
        if key == "t":
            timestamp = part
        elif key == "v1":
            signature = part
    return timestamp, signature


def _text(obj: dict, name: str) -> str:
    value = obj.get(name)
    return "" if value is None else str(value).strip()


@register
class AirwallexAdapter(GatewayAdapter):
    code = "airwallex"
    required_settings = ("webhook_secret",)

    def expected_signature(self, timestamp: str, body: bytes) -> str:
        secret = str(self.config["webhook_secret"]).encode("utf-8")
        return hmac.new(secret, timestamp.encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()

    def verify_signature(self, fields: dict, *, headers=None, body: bytes = b"") -> bool:
        headers = {str(k).lower(): v for k, v in (headers or {}).items()}
        timestamp, signature = parse_signature_header(headers.get(SIGNATURE_HEADER))
        if not timestamp or not signature:
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        tolerance = int(self.config.get("signature_tolerance_seconds") or DEFAULT_TOLERANCE_SECONDS)
        if abs(time.time() - sent_at) > tolerance:
            logger.warning("Airwallex signature timestamp %s is outside the %ss window", timestamp, tolerance)
            return False

        return compare_digest_ci(self.expected_signature(timestamp, body), signature)

    @staticmethod
    def event_object(fields: dict) -> dict:
        data = fields.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedPayload("Missing required field: data.object")
        return obj

    def normalize(self, fields: dict) -> PaymentNotification:
        event_name = _text(fields, "name")
        if not event_name:
            raise MalformedPayload("Missing required field: name")
        obj = self.event_object(fields)
        refund = event_name.startswith("refund.")

        if refund or event_name.startswith("payment_attempt."):
            intent_id = _text(obj, "payment_intent_id")
        else:
            intent_id = _text(obj, "id")
        if not intent_id:
            raise MalformedPayload("Missing payment intent id")

        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
        amount = decimal_field(obj.get("amount"), "amount", required=not refund) or Decimal("0")

        refund_amount = None
        refund_reference = ""
        if refund:
            refund_amount = amount
            refund_reference = _text(obj, "id")
            if not refund_reference:
                raise MalformedPayload("Missing required field: id")

        error_message = ""
        attempt = obj.get("latest_payment_attempt")
        if isinstance(attempt, dict) and attempt.get("failure_code"):
            error_message = str(attempt["failure_code"])[:500]
        elif obj.get("cancellation_reason"):
            error_message = str(obj["cancellation_reason"])[:500]

        return PaymentNotification(
            gateway=self.code,
            kind=KIND_REFUND if refund else KIND_PAYMENT,
            transaction_id=f"airwallex_{intent_id}",
            gateway_transaction_id=_text(fields, "id"),
            raw_status=event_name,
            amount=Decimal("0") if refund else amount,
            currency=(_text(obj, "currency") or str(self.config.get("currency") or "USD")).upper(),
            free_text=_text(metadata, "quote_ids"),
            customer_email=_text(metadata, "customer_email"),
            customer_name=_text(metadata, "customer_name"),
            guest_session_token=_text(metadata, "guest_session_token"),
            refund_amount=refund_amount,
            refund_reference=refund_reference,
            error_message=error_message,
            fields=dict(fields),
        )

    def map_status(self, notification: PaymentNotification) -> PaymentStatus:
        return AIRWALLEX_EVENT_MAP.get(notification.raw_status, PaymentStatus.UNKNOWN)

    def extract_correlation_ids(self, notification: PaymentNotification) -> list[str]:
        # metadata.quote_ids is "id1,id2"; older checkouts only set merchant_order_id
        obj = self.event_object(notification.fields)
        return resolve_correlation_ids(notification.free_text, _text(obj, "merchant_order_id"))
