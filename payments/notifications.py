"""Best-effort notifications after a webhook has been reconciled.

Work is handed to a small thread pool and the webhook response never waits
for it. Every task runs inside its own error boundary: a Telegram or mail
outage is logged and forgotten, it cannot undo a committed payment.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from django.conf import settings
from django.core.mail import send_mail

from core.telegram_notify import notify_payment_failed, notify_payment_received, notify_refund

from .exceptions import DownstreamNotificationFailure


logger = logging.getLogger(__name__)

EVENT_PAID = "paid"
EVENT_FAILED = "failed"
EVENT_REFUNDED = "refunded"

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


@dataclass(frozen=True)
class PaymentNotice:
    """Plain data handed to the worker thread (no model instances)."""

    event: str
    gateway: str
    transaction_id: str
    status: str
    amount: str
    currency: str
    quote_ids: tuple = ()
    order_numbers: tuple = ()
    customer_email: str = ""
    reason: str = ""
    total_refunded: str = "0.00"
    fully_refunded: bool = False


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="payment-notify")
        return _executor


def _run_task(fn, *args, **kwargs) -> None:
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.exception("Notification task %s failed", getattr(fn, "__name__", fn))


def dispatch(fn, *args, **kwargs) -> None:
    """Run fn(*args, **kwargs) in the background; never raises."""
    if getattr(settings, "PAYMENT_NOTIFICATIONS_INLINE", False):
        _run_task(fn, *args, **kwargs)
        return
    try:
        _get_executor().submit(_run_task, fn, *args, **kwargs)
    except RuntimeError:
        # interpreter shutting down
        logger.warning("Notification executor unavailable, dropping %s", getattr(fn, "__name__", fn))


def _send_customer_receipt(notice: PaymentNotice) -> None:
    if not notice.customer_email:
        return
    lines = [
        "We have received your payment.",
        "",
        f"Amount: {notice.amount} {notice.currency}",
        f"Reference: {notice.transaction_id}",
    ]
    if notice.order_numbers:
        lines.append(f"Order: {', '.join(notice.order_numbers)}")
    try:
        send_mail(
            "Payment confirmation",
            "\n".join(lines),
            None,
            [notice.customer_email],
            fail_silently=False,
        )
    except Exception as exc:
        raise DownstreamNotificationFailure(f"Receipt e-mail for {notice.transaction_id} not sent") from exc


def deliver_payment_notice(notice: PaymentNotice) -> None:
    if notice.event == EVENT_PAID:
        notify_payment_received(
            gateway=notice.gateway,
            transaction_id=notice.transaction_id,
            amount=notice.amount,
            currency=notice.currency,
            quote_ids=notice.quote_ids,
            order_numbers=notice.order_numbers,
        )
        _send_customer_receipt(notice)
    elif notice.event == EVENT_FAILED:
        notify_payment_failed(
            gateway=notice.gateway,
            transaction_id=notice.transaction_id,
            status=notice.status,
            reason=notice.reason,
            quote_ids=notice.quote_ids,
        )
    elif notice.event == EVENT_REFUNDED:
        notify_refund(
            gateway=notice.gateway,
            transaction_id=notice.transaction_id,
            amount=notice.amount,
            currency=notice.currency,
            total_refunded=notice.total_refunded,
            fully_refunded=notice.fully_refunded,
        )


def dispatch_payment_notice(notice: PaymentNotice) -> None:
    dispatch(deliver_payment_notice, notice)
