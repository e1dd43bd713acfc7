from __future__ import annotations

import logging

from django.db import transaction
from django.utils import timezone

from .models import GuestCheckoutSession, Order, Quote


logger = logging.getLogger(__name__)

UPDATED = "updated"
UNCHANGED = "unchanged"
STALE = "stale"


def lock_quotes(quote_ids) -> list[Quote]:
    """Lock the quotes in primary key order so concurrent webhooks never deadlock."""
    return list(Quote.objects.select_for_update().filter(id__in=list(quote_ids)).order_by("id"))


def apply_payment_status(quote: Quote, new_status: str) -> str:
    """Move a locked quote to new_status if the current status allows it.

    Returns UPDATED, UNCHANGED (already there) or STALE (an out-of-order event
    tried to move the quote backwards).
    """
    if quote.status == new_status:
        return UNCHANGED
    if not quote.can_transition_to(new_status):
        return STALE

    quote.status = new_status
    update_fields = ["status", "updated_at"]
    if new_status == Quote.Status.PAID:
        quote.paid_at = timezone.now()
        update_fields.append("paid_at")
    quote.save(update_fields=update_fields)
    return UPDATED


def lock_guest_session(session_token: str) -> GuestCheckoutSession | None:
    if not session_token:
        return None
    return (
        GuestCheckoutSession.objects
        .select_for_update()
        .select_related("quote")
        .filter(session_token=session_token)
        .first()
    )


def session_matches(session: GuestCheckoutSession, quote_ids) -> bool:
    if str(session.quote_id) in {str(q) for q in quote_ids}:
        return True
    logger.warning("Guest session %s is bound to another quote (%s)", session.pk, session.quote_id)
    return False


def complete_guest_session(session: GuestCheckoutSession, *, quote_ids) -> bool:
    """Copy the guest's identity onto the quote and close the session.

    Only an active, unexpired session bound to one of the paid quotes is used.
    """
    if session.status != GuestCheckoutSession.Status.ACTIVE:
        logger.warning("Guest session %s is %s, not binding", session.pk, session.status)
        return False

    if session.is_expired():
        session.status = GuestCheckoutSession.Status.EXPIRED
        session.save(update_fields=["status", "updated_at"])
        logger.warning("Guest session %s expired before payment confirmation", session.pk)
        return False

    if not session_matches(session, quote_ids):
        return False

    quote = Quote.objects.select_for_update().get(pk=session.quote_id)
    quote.customer_name = session.guest_name
    quote.customer_email = session.guest_email
    quote.customer_phone = session.guest_phone
    quote.shipping_address = session.shipping_address or {}
    quote.save(update_fields=[
        "customer_name",
        "customer_email",
        "customer_phone",
        "shipping_address",
        "updated_at",
    ])

    session.status = GuestCheckoutSession.Status.COMPLETED
    session.save(update_fields=["status", "updated_at"])
    return True


def expire_guest_session(session: GuestCheckoutSession, *, quote_ids) -> bool:
    # The quote is left alone so the shared checkout link still works for a retry.
    if session.status != GuestCheckoutSession.Status.ACTIVE:
        return False
    if not session_matches(session, quote_ids):
        return False
    session.status = GuestCheckoutSession.Status.EXPIRED
    session.save(update_fields=["status", "updated_at"])
    return True


def order_number_for(quote: Quote) -> str:
    return f"ORD-{quote.pk.hex[:12].upper()}"


@transaction.atomic
def create_order_for_quote(quote: Quote) -> tuple[Order, bool]:
    """Create the downstream order for a paid quote.

    Idempotent: the quote has at most one order. Totals are copied from the
    quote as priced at checkout; the pricing calculator is not consulted here.
    """
    if quote.status != Quote.Status.PAID:
        raise ValueError(f"Quote {quote.pk} is not paid")

    return Order.objects.get_or_create(
        quote=quote,
        defaults={
            "order_number": order_number_for(quote),
            "customer_name": quote.customer_name,
            "customer_email": quote.customer_email,
            "shipping_address": quote.shipping_address or {},
            "total_amount": quote.total_amount,
            "currency": quote.currency,
        },
    )
