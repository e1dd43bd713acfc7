from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Sum

from .models import PaymentLedgerEntry


MONEY = Decimal("0.01")
ZERO = Decimal("0.00")

CAPTURE_REFERENCE = "capture"


def _money(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(MONEY, rounding=ROUND_HALF_UP)


def _sum(tx, entry_type: str) -> Decimal:
    total = (
        PaymentLedgerEntry.objects
        .filter(transaction=tx, entry_type=entry_type)
        .aggregate(total=Sum("amount"))
        .get("total")
    )
    return _money(total)


def captured_amount(tx) -> Decimal:
    return _sum(tx, PaymentLedgerEntry.EntryType.CAPTURE)


def refunded_amount(tx) -> Decimal:
    return -_sum(tx, PaymentLedgerEntry.EntryType.REFUND)


def refundable_amount(tx) -> Decimal:
    remaining = captured_amount(tx) - refunded_amount(tx)
    return remaining if remaining > ZERO else ZERO


@transaction.atomic
def record_capture(tx, amount, *, reference: str = CAPTURE_REFERENCE, note: str = ""):
    """Append the positive capture entry for a transaction.

    Idempotent per reference: a second call returns the existing entry.
    """
    amount = _money(amount)
    if amount <= ZERO:
        raise ValidationError("Capture amount must be positive")

    return PaymentLedgerEntry.objects.get_or_create(
        transaction=tx,
        entry_type=PaymentLedgerEntry.EntryType.CAPTURE,
        reference=reference,
        defaults={"amount": amount, "currency": tx.currency, "note": note},
    )


@transaction.atomic
def record_refund(tx, amount, *, reference: str, note: str = ""):
    """Append a negative refund entry if it fits the refundable balance.

    Returns (entry, created). A refund reference seen before returns the
    existing entry without re-checking the balance.
    """
    amount = _money(amount)
    if amount <= ZERO:
        raise ValidationError("Refund amount must be positive")
    if not reference:
        raise ValidationError("Refund reference is required")

    # Lock the transaction row so two refunds cannot both pass the balance check.
    type(tx).objects.select_for_update().get(pk=tx.pk)

    existing = PaymentLedgerEntry.objects.filter(
        transaction=tx,
        entry_type=PaymentLedgerEntry.EntryType.REFUND,
        reference=reference,
    ).first()
    if existing:
        return existing, False

    remaining = refundable_amount(tx)
    if amount > remaining:
        raise ValidationError(f"Refund {amount} exceeds refundable balance {remaining}")

    # post_save signal moves total_refunded / refund_count on the transaction.
    entry = PaymentLedgerEntry.objects.create(
        transaction=tx,
        entry_type=PaymentLedgerEntry.EntryType.REFUND,
        amount=-amount,
        currency=tx.currency,
        reference=reference,
        note=note,
    )
    tx.refresh_from_db(fields=["total_refunded", "refund_count"])
    return entry, True
