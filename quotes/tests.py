from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from .models import GuestCheckoutSession, Order, Quote, quote_transition_allowed
from .services import (
    STALE,
    UNCHANGED,
    UPDATED,
    apply_payment_status,
    complete_guest_session,
    create_order_for_quote,
    expire_guest_session,
)


class QuoteTransitionTableTests(SimpleTestCase):
    def test_payment_moves_forward(self):
        self.assertTrue(quote_transition_allowed(Quote.Status.APPROVED, Quote.Status.PAYMENT_PENDING))
        self.assertTrue(quote_transition_allowed(Quote.Status.PAYMENT_PENDING, Quote.Status.PAID))
        self.assertTrue(quote_transition_allowed(Quote.Status.SENT, Quote.Status.PAID))

    def test_paid_only_goes_to_refunded(self):
        for status in Quote.Status:
            expected = status == Quote.Status.REFUNDED
            self.assertEqual(quote_transition_allowed(Quote.Status.PAID, status), expected, status)

    def test_closed_quotes_do_not_move(self):
        for current in (Quote.Status.DRAFT, Quote.Status.CANCELLED, Quote.Status.EXPIRED, Quote.Status.REFUNDED):
            self.assertFalse(quote_transition_allowed(current, Quote.Status.PAID), current)


class QuoteServicesTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user(username="buyer", password="pass12345")
        self.quote = Quote.objects.create(
            user=self.user,
            status=Quote.Status.PAYMENT_PENDING,
            customer_name="Asha",
            customer_email="asha@example.com",
            total_amount=Decimal("25.50"),
        )

    def test_apply_payment_status(self):
        self.assertEqual(apply_payment_status(self.quote, Quote.Status.PAID), UPDATED)
        self.assertIsNotNone(self.quote.paid_at)
        self.assertEqual(apply_payment_status(self.quote, Quote.Status.PAID), UNCHANGED)
        self.assertEqual(apply_payment_status(self.quote, Quote.Status.PAYMENT_PENDING), STALE)

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_order_needs_paid_quote(self):
        with self.assertRaises(ValueError):
            create_order_for_quote(self.quote)

    def test_order_created_once(self):
        apply_payment_status(self.quote, Quote.Status.PAID)

        order, created = create_order_for_quote(self.quote)
        again, created_again = create_order_for_quote(self.quote)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(order.id, again.id)
        self.assertEqual(order.total_amount, Decimal("25.50"))
        self.assertEqual(order.customer_email, "asha@example.com")
        self.assertEqual(Order.objects.count(), 1)


class GuestSessionTests(TestCase):
    def setUp(self):
        self.quote = Quote.objects.create(status=Quote.Status.PAID, total_amount=Decimal("10.00"))
        self.session = GuestCheckoutSession.objects.create(
            session_token="tok-1",
            quote=self.quote,
            guest_name="Ravi Kumar",
            guest_email="ravi@example.com",
            shipping_address={"city": "Pune"},
            expires_at=timezone.now() + timedelta(hours=1),
        )

    def test_complete_binds_identity(self):
        self.assertTrue(complete_guest_session(self.session, quote_ids=[str(self.quote.pk)]))

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.customer_name, "Ravi Kumar")
        self.assertEqual(self.quote.shipping_address, {"city": "Pune"})
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.COMPLETED)

    def test_completed_session_is_never_rebound(self):
        complete_guest_session(self.session, quote_ids=[str(self.quote.pk)])
        self.quote.customer_name = "Someone else"
        self.quote.save()

        self.assertFalse(complete_guest_session(self.session, quote_ids=[str(self.quote.pk)]))
        self.assertFalse(expire_guest_session(self.session, quote_ids=[str(self.quote.pk)]))
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.customer_name, "Someone else")

    def test_session_for_another_quote_is_ignored(self):
        other = Quote.objects.create(status=Quote.Status.PAID)

        self.assertFalse(complete_guest_session(self.session, quote_ids=[str(other.pk)]))
        self.session.refresh_from_db()
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.ACTIVE)

    def test_expired_session_is_marked_expired(self):
        self.session.expires_at = timezone.now() - timedelta(seconds=1)
        self.session.save()

        self.assertFalse(complete_guest_session(self.session, quote_ids=[str(self.quote.pk)]))
        self.session.refresh_from_db()
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.EXPIRED)

    def test_expire_leaves_quote_alone(self):
        self.assertTrue(expire_guest_session(self.session, quote_ids=[str(self.quote.pk)]))

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.customer_name, "")
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.EXPIRED)

    def test_failure_for_another_quote_does_not_expire_session(self):
        other = Quote.objects.create(status=Quote.Status.APPROVED)

        with self.assertLogs("quotes.services", level="WARNING"):
            self.assertFalse(expire_guest_session(self.session, quote_ids=[str(other.pk)]))

        self.session.refresh_from_db()
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.ACTIVE)
