from decimal import Decimal
from functools import partial

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
    sha512_hex,
)
from .statuses import PaymentStatus


PAYU_STATUS_MAP = {
    "success": PaymentStatus.COMPLETED,
    "failure": PaymentStatus.FAILED,
    "bounced": PaymentStatus.FAILED,
    "pending": PaymentStatus.PENDING,
    "in progress": PaymentStatus.PROCESSING,
    "cancel": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "usercancelled": PaymentStatus.CANCELLED,
    "dropped": PaymentStatus.EXPIRED,
}

# PayU reports "no error" with these codes.
_NO_ERROR_CODES = {"", "e000", "no error"}


def _field(fields: dict, name: str) -> str:
    value = fields.get(name)
    if value is None:
        return ""
    return str(value)


def _decimal(fields: dict, name: str, *, required: bool) -> Decimal | None:
    return decimal_field(fields.get(name), name, required=required)


@register
class PayUAdapter(GatewayAdapter):
    """PayU (India) payment and refund notifications.

    Hash check follows PayU's reverse-hash formula. Field order is fixed by
    PayU and must not change:

        [additionalCharges|]salt|status||||||udf5|udf4|udf3|udf2|udf1|email|firstname|productinfo|amount|txnid|key

    Refund notifications are signed over
    salt|action|request_id|refund_amount|status|txnid|key.
    """

    code = "payu"
    required_settings = ("salt",)

    @staticmethod
    def is_refund_payload(fields: dict) -> bool:
        return _field(fields, "action").strip().lower() == "refund"

    def hash_string(self, fields: dict) -> str:
        salt = str(self.config["salt"])
        f = partial(_field, fields)

        if self.is_refund_payload(fields):
            parts = [salt, f("action"), f("request_id"), f("refund_amount"), f("status"), f("txnid"), f("key")]
        else:
            parts = [
                salt,
                f("status"),
                "", "", "", "", "",
                f("udf5"),
                f("udf4"),
                f("udf3"),
                f("udf2"),
                f("udf1"),
                f("email"),
                f("firstname"),
                f("productinfo"),
                f("amount"),
                f("txnid"),
                f("key"),
            ]
            if f("additionalCharges"):
                parts.insert(0, f("additionalCharges"))
        return "|".join(parts)

    def verify_signature(self, fields: dict, *, headers=None, body: bytes = b"") -> bool:
        merchant_key = str(self.config.get("merchant_key") or "").strip()
        if merchant_key and _field(fields, "key").strip() != merchant_key:
            return False
        return compare_digest_ci(sha512_hex(self.hash_string(fields)), fields.get("hash"))

    def normalize(self, fields: dict) -> PaymentNotification:
        txnid = _field(fields, "txnid").strip()
        if not txnid:
            raise MalformedPayload("Missing required field: txnid")

        refund = self.is_refund_payload(fields)
        amount = _decimal(fields, "amount", required=not refund) or Decimal("0")

        refund_amount = None
        refund_reference = ""
        if refund:
            refund_amount = _decimal(fields, "refund_amount", required=True)
            refund_reference = _field(fields, "request_id").strip()
            if not refund_reference:
                raise MalformedPayload("Missing required field: request_id")

        error_code = _field(fields, "error").strip()
        error_message = ""
        if error_code.lower() not in _NO_ERROR_CODES:
            error_message = f"{error_code}: {_field(fields, 'error_Message')}".strip()[:500]

        return PaymentNotification(
            gateway=self.code,
            kind=KIND_REFUND if refund else KIND_PAYMENT,
            transaction_id=txnid,
            gateway_transaction_id=_field(fields, "mihpayid").strip(),
            raw_status=_field(fields, "status").strip(),
            amount=amount,
            currency=str(self.config.get("currency") or "INR"),
            free_text=_field(fields, "productinfo"),
            customer_email=_field(fields, "email").strip(),
            customer_name=_field(fields, "firstname").strip(),
            customer_phone=_field(fields, "phone").strip(),
            # checkout puts the guest session token into udf1
            guest_session_token=_field(fields, "udf1").strip(),
            refund_amount=refund_amount,
            refund_reference=refund_reference,
            error_message=error_message,
            fields=dict(fields),
        )

    def map_status(self, notification: PaymentNotification) -> PaymentStatus:
        return PAYU_STATUS_MAP.get(notification.raw_status.lower(), PaymentStatus.UNKNOWN)

    def extract_correlation_ids(self, notification: PaymentNotification) -> list[str]:
        return resolve_correlation_ids(notification.free_text, notification.transaction_id)
