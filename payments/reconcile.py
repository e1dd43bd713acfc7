"""Apply one verified, correlated notification to transactions, ledger and quotes.

Everything below runs in a single database transaction. Either the payment
transaction, its ledger entries, the quotes, the guest session and the
orders all move together, or nothing is written and the gateway retries.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from functools import partial

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.utils import timezone

from ledger.services import record_capture, record_refund
from quotes.models import Quote
from quotes.services import (
    STALE,
    UPDATED,
    apply_payment_status,
    complete_guest_session,
    create_order_for_quote,
    expire_guest_session,
    lock_guest_session,
    lock_quotes,
    session_matches,
)

from .exceptions import (
    OutOfOrderState,
    ProcessingTimeout,
    ReconciliationFailure,
    RefundExceedsBalance,
    UnresolvableCorrelation,
    WebhookError,
)
from .gateways import PaymentNotification
from .models import PaymentTransaction
from .notifications import EVENT_FAILED, EVENT_PAID, EVENT_REFUNDED, PaymentNotice, dispatch_payment_notice
from .statuses import PaymentStatus, allowed, is_failure


logger = logging.getLogger(__name__)

QUOTE_TARGETS = {
    PaymentStatus.PENDING: Quote.Status.PAYMENT_PENDING,
    PaymentStatus.PROCESSING: Quote.Status.PAYMENT_PENDING,
    PaymentStatus.COMPLETED: Quote.Status.PAID,
    # back to approved so the customer can pay again
    PaymentStatus.FAILED: Quote.Status.APPROVED,
    PaymentStatus.CANCELLED: Quote.Status.APPROVED,
    PaymentStatus.EXPIRED: Quote.Status.APPROVED,
}

# Backend messages for a row lock wait that ran into the lock timeout.
LOCK_TIMEOUT_MARKERS = ("lock wait timeout", "lock timeout", "database is locked")


class Deadline:
    """Per-request processing budget, checked between stages."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @classmethod
    def from_settings(cls):
        return cls(float(getattr(settings, "PAYMENT_WEBHOOK_TIMEOUT_SECONDS", 30)))

    def elapsed(self) -> float:
        return self._clock() - self._started

    def check(self, stage: str) -> None:
        if self.elapsed() > self.seconds:
            raise ProcessingTimeout(f"Processing exceeded {self.seconds:g}s (at {stage})")


@dataclass
class ReconcileOutcome:
    transaction_id: str
    status: str
    message: str = "Webhook processed"
    changed: bool = False
    stale: bool = False
    quote_ids: list[str] = field(default_factory=list)
    order_numbers: list[str] = field(default_factory=list)
    notice: PaymentNotice | None = None


def reconcile(
    notification: PaymentNotification,
    status: str,
    correlation_ids,
    *,
    deadline: Deadline | None = None,
) -> ReconcileOutcome:
    deadline = deadline or Deadline.from_settings()
    try:
        with transaction.atomic():
            if notification.is_refund:
                outcome = _apply_refund(notification, status, deadline)
            else:
                outcome = _apply_payment(notification, status, list(correlation_ids), deadline)
            deadline.check("commit")
            if outcome.notice is not None:
                transaction.on_commit(partial(dispatch_payment_notice, outcome.notice))
    except WebhookError:
        raise
    except DatabaseError as exc:
        if is_lock_timeout(exc):
            logger.warning("Lock wait timed out while reconciling %s:%s", notification.gateway, notification.transaction_id)
            raise ProcessingTimeout("Timed out waiting for a database lock") from exc
        logger.exception("Database error while reconciling %s:%s", notification.gateway, notification.transaction_id)
        raise ReconciliationFailure("Database error while reconciling payment") from exc
    return outcome


def is_lock_timeout(exc: DatabaseError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in LOCK_TIMEOUT_MARKERS)


def _lock_referenced_quotes(quote_ids: list[str]) -> list[Quote]:
    if not quote_ids:
        raise UnresolvableCorrelation("No quote identifiers found in payload")
    quotes = lock_quotes(quote_ids)
    found = {str(q.pk) for q in quotes}
    missing = [q for q in quote_ids if q not in found]
    if missing:
        raise UnresolvableCorrelation(f"Unknown quote ids: {', '.join(missing)}")
    return quotes


def _gateway_response(notification: PaymentNotification) -> dict:
    return {k: v for k, v in notification.fields.items() if k != "hash"}


def _move_transaction(tx: PaymentTransaction, status: str, notification: PaymentNotification, *, created: bool) -> bool:
    """Returns True on a fresh transition, False when the status is already current."""
    if not created:
        if tx.status == status:
            return False
        if not allowed(tx.status, status):
            raise OutOfOrderState(f"{tx.status} -> {status}")

    tx.status = status
    if notification.amount > 0:
        tx.amount = notification.amount
    tx.currency = notification.currency or tx.currency
    if notification.gateway_transaction_id:
        tx.gateway_transaction_id = notification.gateway_transaction_id
    if notification.customer_email:
        tx.customer_email = notification.customer_email
    tx.error_message = notification.error_message if is_failure(status) else ""
    tx.gateway_response = _gateway_response(notification)
    if status == PaymentStatus.COMPLETED:
        tx.completed_at = timezone.now()
    tx.save()
    return True


def _apply_payment(notification: PaymentNotification, status: str, quote_ids: list[str], deadline: Deadline):
    quotes = _lock_referenced_quotes(quote_ids)
    deadline.check("quotes")

    tx, created = PaymentTransaction.objects.get_or_create(
        gateway=notification.gateway,
        transaction_id=notification.transaction_id,
        defaults={"amount": notification.amount, "currency": notification.currency},
    )
    tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)

    outcome = ReconcileOutcome(transaction_id=tx.transaction_id, status=status, quote_ids=quote_ids)
    try:
        changed = _move_transaction(tx, status, notification, created=created)
    except OutOfOrderState as exc:
        logger.info("Stale event for %s:%s ignored (%s)", tx.gateway, tx.transaction_id, exc)
        outcome.status = tx.status
        outcome.stale = True
        outcome.message = "Stale event ignored"
        return outcome
    if not changed:
        outcome.message = "Already processed"
        return outcome
    outcome.changed = True
    tx.quotes.add(*quotes)

    if status == PaymentStatus.COMPLETED and tx.amount > 0:
        record_capture(tx, tx.amount, note=notification.gateway_transaction_id)
    deadline.check("ledger")

    session = lock_guest_session(notification.guest_session_token)
    if notification.guest_session_token and session is None:
        logger.warning("Guest session token on %s does not match any session", tx.transaction_id)
    guest_checkout = session is not None and session_matches(session, quote_ids)

    target = QUOTE_TARGETS.get(status)
    if guest_checkout and is_failure(status):
        # the shared checkout link stays payable
        target = None
        logger.info("Guest payment %s %s, quotes left as they are", tx.transaction_id, status)
    newly_paid = []
    for quote in (quotes if target else ()):
        result = apply_payment_status(quote, target)
        if result == STALE:
            logger.info("Quote %s left at %s (event %s)", quote.pk, quote.status, status)
        elif result == UPDATED and target == Quote.Status.PAID:
            newly_paid.append(quote)
    deadline.check("quotes_status")

    if guest_checkout:
        if status == PaymentStatus.COMPLETED:
            complete_guest_session(session, quote_ids=quote_ids)
        elif is_failure(status):
            expire_guest_session(session, quote_ids=quote_ids)
    deadline.check("guest_session")

    if status == PaymentStatus.COMPLETED and getattr(settings, "PAYMENT_CREATE_ORDERS", True):
        for quote in newly_paid:
            # guest binding may have changed the customer fields
            quote.refresh_from_db()
            order, _ = create_order_for_quote(quote)
            outcome.order_numbers.append(order.order_number)
    deadline.check("orders")

    if status == PaymentStatus.COMPLETED:
        customer_email = tx.customer_email or next((q.customer_email for q in quotes if q.customer_email), "")
        outcome.notice = _notice(EVENT_PAID, tx, outcome, customer_email=customer_email)
    elif is_failure(status):
        outcome.notice = _notice(EVENT_FAILED, tx, outcome, reason=tx.error_message)
    return outcome


def _apply_refund(notification: PaymentNotification, status: str, deadline: Deadline):
    # Same lock order as payments: quotes first, then the transaction row.
    tx = PaymentTransaction.objects.filter(
        gateway=notification.gateway,
        transaction_id=notification.transaction_id,
    ).first()
    if tx is None:
        raise UnresolvableCorrelation(f"No payment transaction {notification.transaction_id} to refund")

    quote_ids = [str(pk) for pk in tx.quotes.order_by("id").values_list("id", flat=True)]
    outcome = ReconcileOutcome(transaction_id=tx.transaction_id, status=tx.status, quote_ids=quote_ids)

    if status != PaymentStatus.COMPLETED:
        logger.info("Refund %s on %s reported as %s, nothing recorded", notification.refund_reference, tx.transaction_id, status)
        outcome.message = f"Refund {status}, nothing recorded"
        return outcome

    quotes = lock_quotes(quote_ids)
    deadline.check("quotes")
    tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)

    try:
        _, created = record_refund(
            tx,
            notification.refund_amount,
            reference=notification.refund_reference,
            note=notification.gateway_transaction_id,
        )
    except ValidationError as exc:
        raise RefundExceedsBalance("; ".join(exc.messages)) from exc
    deadline.check("ledger")

    if not created:
        outcome.message = "Refund already recorded"
        return outcome
    outcome.changed = True
    outcome.message = "Refund recorded"

    tx.gateway_response = _gateway_response(notification)
    tx.save(update_fields=["gateway_response", "updated_at"])

    fully_refunded = tx.is_fully_refunded
    if fully_refunded:
        for quote in quotes:
            if apply_payment_status(quote, Quote.Status.REFUNDED) == STALE:
                logger.info("Quote %s is %s, not marking refunded", quote.pk, quote.status)
    deadline.check("quotes_status")

    outcome.notice = _notice(
        EVENT_REFUNDED,
        tx,
        outcome,
        amount=notification.refund_amount,
        fully_refunded=fully_refunded,
    )
    return outcome


def _notice(event: str, tx: PaymentTransaction, outcome: ReconcileOutcome, *, amount=None, **extra) -> PaymentNotice:
    return PaymentNotice(
        event=event,
        gateway=tx.gateway,
        transaction_id=tx.transaction_id,
        status=str(tx.status),
        amount=str(Decimal(amount if amount is not None else tx.amount)),
        currency=tx.currency,
        quote_ids=tuple(outcome.quote_ids),
        order_numbers=tuple(outcome.order_numbers),
        total_refunded=str(tx.total_refunded),
        **extra,
    )
