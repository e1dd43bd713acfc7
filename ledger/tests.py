from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from payments.models import PaymentTransaction
from payments.statuses import PaymentStatus

from .models import PaymentLedgerEntry
from .services import captured_amount, record_capture, record_refund, refundable_amount, refunded_amount


class LedgerTests(TestCase):
    def setUp(self):
        self.tx = PaymentTransaction.objects.create(
            gateway="payu",
            transaction_id="ORDER-1",
            amount=Decimal("100.00"),
            status=PaymentStatus.COMPLETED,
        )

    def test_capture_is_idempotent_per_reference(self):
        first, created = record_capture(self.tx, Decimal("100.00"))
        second, created_again = record_capture(self.tx, Decimal("100.00"))

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        self.assertEqual(captured_amount(self.tx), Decimal("100.00"))

    def test_capture_must_be_positive(self):
        with self.assertRaises(ValidationError):
            record_capture(self.tx, Decimal("0"))

    def test_refunds_never_exceed_capture(self):
        record_capture(self.tx, Decimal("100.00"))
        record_refund(self.tx, Decimal("40.00"), reference="RF-1")

        with self.assertRaises(ValidationError):
            record_refund(self.tx, Decimal("70.00"), reference="RF-2")

        self.assertEqual(refunded_amount(self.tx), Decimal("40.00"))
        self.assertEqual(refundable_amount(self.tx), Decimal("60.00"))
        self.assertEqual(PaymentLedgerEntry.objects.filter(transaction=self.tx).count(), 2)

    def test_refund_updates_transaction_totals(self):
        record_capture(self.tx, Decimal("100.00"))

        entry, created = record_refund(self.tx, Decimal("25.005"), reference="RF-1")

        self.assertTrue(created)
        self.assertEqual(entry.amount, Decimal("-25.01"))
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.total_refunded, Decimal("25.01"))
        self.assertEqual(self.tx.refund_count, 1)

    def test_same_refund_reference_is_not_counted_twice(self):
        record_capture(self.tx, Decimal("100.00"))
        record_refund(self.tx, Decimal("40.00"), reference="RF-1")

        entry, created = record_refund(self.tx, Decimal("40.00"), reference="RF-1")

        self.assertFalse(created)
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.total_refunded, Decimal("40.00"))
        self.assertEqual(self.tx.refund_count, 1)

    def test_refund_without_capture_is_rejected(self):
        with self.assertRaises(ValidationError):
            record_refund(self.tx, Decimal("1.00"), reference="RF-1")

    def test_entries_are_append_only(self):
        entry, _ = record_capture(self.tx, Decimal("100.00"))

        entry.note = "edited"
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()
