import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from smtplib import SMTPException
from unittest import mock
from urllib.parse import urlencode

from django.core import mail
from django.core.management import call_command
from django.db import DatabaseError, OperationalError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from ledger.models import PaymentLedgerEntry
from quotes.models import GuestCheckoutSession, Order, Quote
from quotes.services import lock_quotes

from .airwallex import parse_signature_header
from .correlation import ids_from_trailing_parens, resolve_correlation_ids, uuids_in_text
from .exceptions import ConfigurationError, DownstreamNotificationFailure, MalformedPayload, ProcessingTimeout
from .gateways import get_adapter
from .models import PaymentTransaction, WebhookLog, WebhookReplay
from .notifications import EVENT_PAID, PaymentNotice, deliver_payment_notice, dispatch
from .reconcile import Deadline, reconcile
from .replay import DatabaseReplayGuard, MemoryReplayGuard, get_replay_guard, reset_replay_guard
from .statuses import PaymentStatus, allowed


SALT = "test-salt"
KEY = "test-key"
AIRWALLEX_SECRET = "whsec-test"
TEST_GATEWAYS = {
    "payu": {
        "merchant_key": KEY,
        "salt": SALT,
        "base_url": "https://test.payu.in",
        "currency": "INR",
    },
    "airwallex": {
        "webhook_secret": AIRWALLEX_SECRET,
        "currency": "USD",
    },
}
QUOTE_ID = "11111111-1111-1111-1111-111111111111"
OTHER_QUOTE_ID = "22222222-2222-2222-2222-222222222222"


def payu_payment(*, salt=SALT, **overrides):
    fields = {
        "key": KEY,
        "txnid": "ORDER-1",
        "amount": "25.50",
        "productinfo": f"Blue mug ({QUOTE_ID})",
        "firstname": "Asha",
        "email": "asha@example.com",
        "phone": "9999999999",
        "status": "success",
        "mihpayid": "403993715520",
        "udf1": "",
        "udf2": "",
        "udf3": "",
        "udf4": "",
        "udf5": "",
        "error": "E000",
        "error_Message": "No Error",
    }
    fields.update(overrides)
    sequence = [
        salt,
        fields["status"],
        "", "", "", "", "",
        fields["udf5"],
        fields["udf4"],
        fields["udf3"],
        fields["udf2"],
        fields["udf1"],
        fields["email"],
        fields["firstname"],
        fields["productinfo"],
        fields["amount"],
        fields["txnid"],
        fields["key"],
    ]
    fields["hash"] = hashlib.sha512("|".join(sequence).encode("utf-8")).hexdigest()
    return fields


def payu_refund(request_id, refund_amount, *, txnid="ORDER-1", status="success", salt=SALT):
    fields = {
        "key": KEY,
        "action": "refund",
        "txnid": txnid,
        "request_id": request_id,
        "refund_amount": refund_amount,
        "status": status,
        "mihpayid": "403993715520",
    }
    sequence = [salt, "refund", request_id, refund_amount, status, txnid, KEY]
    fields["hash"] = hashlib.sha512("|".join(sequence).encode("utf-8")).hexdigest()
    return fields


def payment_intent(**overrides):
    obj = {
        "id": "int_1",
        "amount": 25.5,
        "currency": "usd",
        "merchant_order_id": "ORDER-1",
        "status": "SUCCEEDED",
        "metadata": {"quote_ids": QUOTE_ID, "customer_email": "asha@example.com"},
    }
    obj.update(overrides)
    return obj


def airwallex_event(name, obj, *, secret=AIRWALLEX_SECRET, timestamp=None):
    """Returns (raw body, x-airwallex-signature header) for a signed event."""
    body = json.dumps({"id": "evt_1", "name": name, "account_id": "acct_1", "data": {"object": obj}})
    timestamp = str(int(time.time()) if timestamp is None else timestamp)
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={digest}"


@override_settings(
    PAYMENT_GATEWAYS=TEST_GATEWAYS,
    PAYMENT_WEBHOOK_REPLAY_BACKEND="memory",
    PAYMENT_NOTIFICATIONS_INLINE=True,
    PAYMENT_CREATE_ORDERS=True,
    TELEGRAM_NOTIFICATIONS=False,
)
class WebhookTestCase(TestCase):
    def setUp(self):
        reset_replay_guard()
        self.url = reverse("payments:payu_webhook")
        self.quote = Quote.objects.create(
            id=QUOTE_ID,
            status=Quote.Status.APPROVED,
            product_name="Blue mug",
            customer_name="Asha",
            customer_email="asha@example.com",
            total_amount=Decimal("25.50"),
        )

    def tearDown(self):
        reset_replay_guard()

    def post_form(self, fields):
        return self.client.post(self.url, urlencode(fields), content_type="application/x-www-form-urlencoded")

    def last_log(self) -> WebhookLog:
        return WebhookLog.objects.order_by("-id").first()


class PayUWebhookTests(WebhookTestCase):
    def test_signed_success_marks_quote_paid_and_captures_once(self):
        resp = self.post_form(payu_payment())

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertIn("requestId", body)
        self.assertIn("processingTimeMs", body)

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        self.assertIsNotNone(self.quote.paid_at)

        tx = PaymentTransaction.objects.get(gateway="payu", transaction_id="ORDER-1")
        self.assertEqual(tx.status, PaymentStatus.COMPLETED)
        self.assertEqual(tx.amount, Decimal("25.50"))
        self.assertEqual(tx.gateway_transaction_id, "403993715520")
        self.assertEqual([str(pk) for pk in tx.quotes.values_list("id", flat=True)], [QUOTE_ID])

        entries = PaymentLedgerEntry.objects.filter(transaction=tx)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().amount, Decimal("25.50"))

        self.assertEqual(WebhookLog.objects.count(), 1)
        log = self.last_log()
        self.assertEqual(log.status, WebhookLog.Status.SUCCESS)
        self.assertEqual(log.http_status, 200)
        self.assertEqual(log.transaction_id, "ORDER-1")
        self.assertEqual(log.correlation_ids, [QUOTE_ID])
        self.assertEqual(str(log.request_id), body["requestId"])
        self.assertEqual(len(log.payload_fingerprint), 64)

        order = Order.objects.get(quote=self.quote)
        self.assertTrue(order.order_number.startswith("ORD-"))

    def test_json_body_is_accepted(self):
        resp = self.client.post(self.url, json.dumps(payu_payment()), content_type="application/json")

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_wrong_salt_is_rejected_without_mutation(self):
        resp = self.post_form(payu_payment(salt="not-the-salt"))

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.assertFalse(PaymentLedgerEntry.objects.exists())

        self.assertEqual(WebhookLog.objects.count(), 1)
        log = self.last_log()
        self.assertEqual(log.status, WebhookLog.Status.FAILED)
        self.assertIn("hash mismatch", log.error_message)
        self.assertNotIn(SALT, log.error_message)

    def test_hash_compare_ignores_case(self):
        fields = payu_payment()
        fields["hash"] = fields["hash"].upper()

        resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 200)

    def test_wrong_merchant_key_is_rejected(self):
        resp = self.post_form(payu_payment(key="someone-else"))

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(PaymentTransaction.objects.exists())

    def test_additional_charges_change_the_hash(self):
        fields = payu_payment()
        fields["additionalCharges"] = "10.00"

        resp = self.post_form(fields)
        self.assertEqual(resp.status_code, 400)

        base = payu_payment()
        sequence = "|".join([
            "10.00", SALT, base["status"], "", "", "", "", "", "", "", "", "", "",
            base["email"], base["firstname"], base["productinfo"], base["amount"], base["txnid"], KEY,
        ])
        base["additionalCharges"] = "10.00"
        base["hash"] = hashlib.sha512(sequence.encode("utf-8")).hexdigest()

        resp = self.post_form(base)
        self.assertEqual(resp.status_code, 200)

    def test_replayed_payload_is_applied_once(self):
        fields = payu_payment()

        for _ in range(3):
            resp = self.post_form(fields)
            self.assertEqual(resp.status_code, 200)

        self.assertEqual(PaymentTransaction.objects.count(), 1)
        self.assertEqual(PaymentLedgerEntry.objects.count(), 1)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(WebhookLog.objects.filter(message="Duplicate request ignored").count(), 2)

    def test_redelivery_after_window_is_still_idempotent(self):
        fields = payu_payment()
        self.post_form(fields)
        reset_replay_guard()

        resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Already processed")
        self.assertEqual(PaymentLedgerEntry.objects.count(), 1)

    def test_unresolvable_correlation_keeps_payload(self):
        fields = payu_payment(productinfo="Blue mug", txnid="ORDER-9")

        resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(PaymentTransaction.objects.exists())
        log = self.last_log()
        self.assertEqual(log.status, WebhookLog.Status.FAILED)
        self.assertEqual(log.payload["txnid"], "ORDER-9")
        self.assertEqual(log.payload["productinfo"], "Blue mug")

    def test_unknown_quote_id_is_unresolvable(self):
        resp = self.post_form(payu_payment(productinfo=f"Blue mug ({OTHER_QUOTE_ID})"))

        self.assertEqual(resp.status_code, 400)
        self.assertIn(OTHER_QUOTE_ID, self.last_log().error_message)

    def test_multiple_quotes_are_all_or_nothing(self):
        missing = "33333333-3333-3333-3333-333333333333"
        resp = self.post_form(payu_payment(productinfo=f"Batch ({QUOTE_ID}, {missing})"))

        self.assertEqual(resp.status_code, 400)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)

        other = Quote.objects.create(id=missing, status=Quote.Status.APPROVED, total_amount=Decimal("10.00"))
        reset_replay_guard()
        resp = self.post_form(payu_payment(productinfo=f"Batch ({QUOTE_ID}, {missing})"))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        self.assertEqual(other.status, Quote.Status.PAID)
        self.assertEqual(Order.objects.count(), 2)

    def test_stale_pending_after_completed_is_ignored(self):
        self.post_form(payu_payment())

        with self.assertLogs("payments.reconcile", level="INFO") as logs:
            resp = self.post_form(payu_payment(status="pending"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Stale event ignored")
        self.assertTrue(any("Stale event" in line for line in logs.output))
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        tx = PaymentTransaction.objects.get()
        self.assertEqual(tx.status, PaymentStatus.COMPLETED)

    def test_stale_event_does_not_link_new_quotes(self):
        other = Quote.objects.create(id=OTHER_QUOTE_ID, status=Quote.Status.APPROVED, total_amount=Decimal("10.00"))
        self.post_form(payu_payment())

        resp = self.post_form(payu_payment(status="pending", productinfo=f"Batch ({QUOTE_ID}, {OTHER_QUOTE_ID})"))

        self.assertEqual(resp.json()["message"], "Stale event ignored")
        tx = PaymentTransaction.objects.get()
        self.assertEqual([str(pk) for pk in tx.quotes.values_list("id", flat=True)], [QUOTE_ID])
        other.refresh_from_db()
        self.assertEqual(other.status, Quote.Status.APPROVED)

    def test_amount_too_large_for_ledger_is_rejected(self):
        resp = self.post_form(payu_payment(amount="123456789012345.00"))

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(self.last_log().status, WebhookLog.Status.REJECTED)
        self.assertIn("amount", self.last_log().error_message)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)

    def test_pending_then_completed_moves_forward(self):
        self.post_form(payu_payment(status="pending"))
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAYMENT_PENDING)
        self.assertFalse(PaymentLedgerEntry.objects.exists())

        self.post_form(payu_payment())

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        self.assertEqual(PaymentLedgerEntry.objects.count(), 1)

    def test_failure_then_late_capture(self):
        self.post_form(payu_payment(status="failure", error="E308", error_Message="Bank declined"))

        tx = PaymentTransaction.objects.get()
        self.assertEqual(tx.status, PaymentStatus.FAILED)
        self.assertIn("Bank declined", tx.error_message)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)

        self.post_form(payu_payment())

        tx.refresh_from_db()
        self.assertEqual(tx.status, PaymentStatus.COMPLETED)
        self.assertEqual(tx.error_message, "")
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    @mock.patch("payments.views.notify_webhook_alert")
    def test_unknown_status_changes_nothing_and_alerts(self, alert):
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self.post_form(payu_payment(status="on-hold"))

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)
        alert.assert_called_once()
        self.assertIn("on-hold", alert.call_args.kwargs["text"])

    def test_get_is_not_allowed(self):
        resp = self.client.get(self.url)

        self.assertEqual(resp.status_code, 405)
        self.assertEqual(resp["Allow"], "POST")
        self.assertEqual(self.last_log().status, WebhookLog.Status.REJECTED)

    def test_malformed_json_is_rejected(self):
        resp = self.client.post(self.url, "{not json", content_type="application/json")

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.last_log().status, WebhookLog.Status.REJECTED)

    def test_json_array_is_rejected(self):
        resp = self.client.post(self.url, "[1, 2]", content_type="application/json")

        self.assertEqual(resp.status_code, 400)

    def test_unsupported_content_type_is_rejected(self):
        resp = self.client.post(self.url, "txnid=ORDER-1", content_type="text/plain")

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.last_log().status, WebhookLog.Status.REJECTED)

    @override_settings(PAYMENT_WEBHOOK_MAX_BODY_BYTES=100)
    def test_oversized_body_is_rejected(self):
        resp = self.client.post(self.url, json.dumps(payu_payment()), content_type="application/json")

        self.assertEqual(resp.status_code, 400)
        self.assertIn("exceeds", self.last_log().error_message)
        self.assertFalse(PaymentTransaction.objects.exists())

    def test_missing_txnid_is_malformed(self):
        fields = payu_payment(txnid="")

        resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.last_log().status, WebhookLog.Status.REJECTED)

    @override_settings(PAYMENT_GATEWAYS={"payu": {"merchant_key": KEY, "salt": ""}})
    @mock.patch("payments.views.notify_webhook_alert")
    def test_missing_salt_fails_closed(self, alert):
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self.post_form(payu_payment())

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Payment gateway is not configured")
        self.assertFalse(PaymentTransaction.objects.exists())
        log = self.last_log()
        self.assertEqual(log.status, WebhookLog.Status.FAILED)
        self.assertIn("salt", log.error_message)
        alert.assert_called_once()

    def test_database_error_returns_500_and_allows_retry(self):
        fields = payu_payment()

        with mock.patch("payments.reconcile.record_capture", side_effect=DatabaseError("boom")):
            with self.assertLogs("payments.reconcile", level="ERROR"):
                resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 500)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.assertEqual(self.last_log().status, WebhookLog.Status.FAILED)

        resp = self.post_form(fields)

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_unexpected_error_is_logged_and_answered_with_500(self):
        with mock.patch("payments.views.reconcile", side_effect=RuntimeError("surprise")):
            with self.assertLogs("payments.views", level="ERROR"):
                resp = self.post_form(payu_payment())

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Internal error")
        self.assertIn("surprise", self.last_log().error_message)

    def test_authorization_header_is_not_logged(self):
        self.client.post(
            self.url,
            urlencode(payu_payment()),
            content_type="application/x-www-form-urlencoded",
            HTTP_AUTHORIZATION="Bearer secret",
            HTTP_X_TRACE="abc",
        )

        headers = {k.lower(): v for k, v in self.last_log().request_headers.items()}
        self.assertNotIn("authorization", headers)
        self.assertEqual(headers.get("x-trace"), "abc")


class GuestCheckoutWebhookTests(WebhookTestCase):
    def setUp(self):
        super().setUp()
        self.quote.customer_name = ""
        self.quote.customer_email = ""
        self.quote.save()
        self.session = GuestCheckoutSession.objects.create(
            session_token="guest-token-1",
            quote=self.quote,
            guest_name="Ravi Kumar",
            guest_email="ravi@example.com",
            guest_phone="9876543210",
            shipping_address={"city": "Pune", "pin": "411001"},
            expires_at=timezone.now() + timedelta(hours=2),
        )

    def test_success_binds_guest_to_quote(self):
        resp = self.post_form(payu_payment(udf1="guest-token-1"))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.session.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        self.assertEqual(self.quote.customer_name, "Ravi Kumar")
        self.assertEqual(self.quote.customer_email, "ravi@example.com")
        self.assertEqual(self.quote.shipping_address["city"], "Pune")
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.COMPLETED)

        order = Order.objects.get(quote=self.quote)
        self.assertEqual(order.customer_name, "Ravi Kumar")

    def test_failure_expires_session_and_leaves_quote(self):
        resp = self.post_form(payu_payment(udf1="guest-token-1", status="failure"))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.session.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)
        self.assertEqual(self.quote.customer_name, "")
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.EXPIRED)

    def test_failure_keeps_pending_quote_payable(self):
        self.quote.status = Quote.Status.PAYMENT_PENDING
        self.quote.save()

        resp = self.post_form(payu_payment(udf1="guest-token-1", status="failure"))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.session.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAYMENT_PENDING)
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.EXPIRED)
        self.assertEqual(PaymentTransaction.objects.get().status, PaymentStatus.FAILED)

    def test_failure_for_other_quote_keeps_session(self):
        other = Quote.objects.create(id=OTHER_QUOTE_ID, status=Quote.Status.PAYMENT_PENDING)

        resp = self.post_form(
            payu_payment(udf1="guest-token-1", status="failure", productinfo=f"Mug ({OTHER_QUOTE_ID})")
        )

        self.assertEqual(resp.status_code, 200)
        self.session.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.ACTIVE)
        self.assertEqual(other.status, Quote.Status.APPROVED)

    def test_expired_session_is_not_bound(self):
        self.session.expires_at = timezone.now() - timedelta(minutes=1)
        self.session.save()

        resp = self.post_form(payu_payment(udf1="guest-token-1"))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.session.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)
        self.assertEqual(self.quote.customer_name, "")
        self.assertEqual(self.session.status, GuestCheckoutSession.Status.EXPIRED)


class RefundWebhookTests(WebhookTestCase):
    def setUp(self):
        super().setUp()
        self.quote.total_amount = Decimal("100.00")
        self.quote.save()
        self.post_form(payu_payment(amount="100.00"))
        self.tx = PaymentTransaction.objects.get()

    def test_second_refund_over_balance_is_rejected(self):
        resp = self.post_form(payu_refund("RF-1", "40.00"))
        self.assertEqual(resp.status_code, 200)

        resp = self.post_form(payu_refund("RF-2", "70.00"))

        self.assertEqual(resp.status_code, 400)
        self.assertIn("exceeds refundable balance", self.last_log().error_message)
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.total_refunded, Decimal("40.00"))
        self.assertEqual(self.tx.refund_count, 1)
        self.assertFalse(PaymentLedgerEntry.objects.filter(reference="RF-2").exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_full_refund_marks_quote_refunded(self):
        self.post_form(payu_refund("RF-1", "40.00"))
        resp = self.post_form(payu_refund("RF-3", "60.00"))

        self.assertEqual(resp.status_code, 200)
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.total_refunded, Decimal("100.00"))
        self.assertTrue(self.tx.is_fully_refunded)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.REFUNDED)

    def test_refund_reference_is_recorded_once(self):
        self.post_form(payu_refund("RF-1", "40.00"))
        reset_replay_guard()

        resp = self.post_form(payu_refund("RF-1", "40.00"))

        self.assertEqual(resp.json()["message"], "Refund already recorded")
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.refund_count, 1)

    def test_failed_refund_records_nothing(self):
        resp = self.post_form(payu_refund("RF-1", "40.00", status="failure"))

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(PaymentLedgerEntry.objects.filter(entry_type=PaymentLedgerEntry.EntryType.REFUND).exists())

    def test_refund_for_unknown_transaction_is_unresolvable(self):
        resp = self.post_form(payu_refund("RF-1", "10.00", txnid="ORDER-404"))

        self.assertEqual(resp.status_code, 400)

    def test_refund_locks_quotes_before_transaction(self):
        order = []
        real_lock_quotes = lock_quotes
        real_select_for_update = PaymentTransaction.objects.select_for_update

        def lock_quotes_spy(ids):
            order.append("quotes")
            return real_lock_quotes(ids)

        def select_for_update_spy(*args, **kwargs):
            order.append("transaction")
            return real_select_for_update(*args, **kwargs)

        with mock.patch("payments.reconcile.lock_quotes", side_effect=lock_quotes_spy):
            with mock.patch.object(PaymentTransaction.objects, "select_for_update", side_effect=select_for_update_spy):
                resp = self.post_form(payu_refund("RF-1", "100.00"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(order[0], "quotes")
        self.assertIn("transaction", order)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.REFUNDED)


class NotificationTests(WebhookTestCase):
    @mock.patch("payments.notifications.notify_payment_received")
    def test_payment_notice_dispatched_after_commit(self, notify):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            resp = self.post_form(payu_payment())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(callbacks), 1)
        notify.assert_called_once()
        self.assertEqual(notify.call_args.kwargs["transaction_id"], "ORDER-1")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["asha@example.com"])

    @mock.patch("payments.notifications.notify_payment_received", side_effect=RuntimeError("telegram down"))
    def test_notification_failure_does_not_undo_payment(self, notify):
        with self.assertLogs("payments.notifications", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                resp = self.post_form(payu_payment())

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_no_dispatch_when_nothing_changed(self):
        with self.captureOnCommitCallbacks() as callbacks:
            self.post_form(payu_payment(productinfo="nothing here", txnid="ORDER-9"))

        self.assertEqual(callbacks, [])

    @mock.patch("payments.notifications.notify_payment_received")
    @mock.patch("payments.notifications.send_mail", side_effect=SMTPException("mail down"))
    def test_receipt_mail_failure_is_contained(self, send, notify):
        notice = PaymentNotice(
            event=EVENT_PAID,
            gateway="payu",
            transaction_id="ORDER-1",
            status="completed",
            amount="25.50",
            currency="INR",
            customer_email="asha@example.com",
        )

        with self.assertLogs("payments.notifications", level="ERROR") as logs:
            dispatch(deliver_payment_notice, notice)

        self.assertIs(logs.records[0].exc_info[0], DownstreamNotificationFailure)


@override_settings(PAYMENT_GATEWAYS=TEST_GATEWAYS)
class ReconcileTests(TestCase):
    def setUp(self):
        self.quote = Quote.objects.create(id=QUOTE_ID, status=Quote.Status.APPROVED, total_amount=Decimal("25.50"))

    def test_deadline_overrun_rolls_back(self):
        adapter = get_adapter("payu")
        notification = adapter.normalize(payu_payment())
        # started, five stage checks pass, the commit check is late
        clock = iter([0, 0, 0, 0, 0, 0, 100]).__next__
        deadline = Deadline(30, clock=clock)

        with self.assertRaises(ProcessingTimeout):
            reconcile(notification, PaymentStatus.COMPLETED, [QUOTE_ID], deadline=deadline)

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.assertFalse(PaymentLedgerEntry.objects.exists())

    def test_lock_wait_timeout_is_a_processing_timeout(self):
        notification = get_adapter("payu").normalize(payu_payment())
        error = OperationalError(1205, "Lock wait timeout exceeded; try restarting transaction")

        with mock.patch("payments.reconcile.lock_quotes", side_effect=error):
            with self.assertLogs("payments.reconcile", level="WARNING"):
                with self.assertRaises(ProcessingTimeout):
                    reconcile(notification, PaymentStatus.COMPLETED, [QUOTE_ID])

        self.assertFalse(PaymentTransaction.objects.exists())

    @override_settings(PAYMENT_CREATE_ORDERS=False)
    def test_orders_can_be_switched_off(self):
        notification = get_adapter("payu").normalize(payu_payment())

        outcome = reconcile(notification, PaymentStatus.COMPLETED, [QUOTE_ID])

        self.assertTrue(outcome.changed)
        self.assertEqual(outcome.order_numbers, [])
        self.assertFalse(Order.objects.exists())


class PayUAdapterTests(SimpleTestCase):
    @override_settings(PAYMENT_GATEWAYS=TEST_GATEWAYS)
    def test_status_mapping(self):
        adapter = get_adapter("payu")
        cases = {
            "success": PaymentStatus.COMPLETED,
            "failure": PaymentStatus.FAILED,
            "pending": PaymentStatus.PENDING,
            "in progress": PaymentStatus.PROCESSING,
            "userCancelled": PaymentStatus.CANCELLED,
            "dropped": PaymentStatus.EXPIRED,
            "something-new": PaymentStatus.UNKNOWN,
        }
        for raw, expected in cases.items():
            notification = adapter.normalize(payu_payment(status=raw))
            self.assertEqual(adapter.map_status(notification), expected, raw)

    @override_settings(PAYMENT_GATEWAYS=TEST_GATEWAYS)
    def test_invalid_amount_is_malformed(self):
        with self.assertRaises(MalformedPayload):
            get_adapter("payu").normalize(payu_payment(amount="twenty"))

    @override_settings(PAYMENT_GATEWAYS=TEST_GATEWAYS)
    def test_amount_must_fit_two_decimal_places(self):
        adapter = get_adapter("payu")

        with self.assertRaises(MalformedPayload):
            adapter.normalize(payu_payment(amount="25.505"))
        with self.assertRaises(MalformedPayload):
            adapter.normalize(payu_payment(amount="10000000000.00"))
        self.assertEqual(adapter.normalize(payu_payment(amount="9999999999.99")).amount, Decimal("9999999999.99"))

    def test_unknown_gateway(self):
        with self.assertRaises(ConfigurationError):
            get_adapter("stripe")


class AirwallexWebhookTests(WebhookTestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("payments:airwallex_webhook")

    def post_event(self, body, signature=None):
        extra = {"HTTP_X_AIRWALLEX_SIGNATURE": signature} if signature is not None else {}
        return self.client.post(self.url, body, content_type="application/json", **extra)

    def test_succeeded_intent_marks_quote_paid(self):
        resp = self.post_event(*airwallex_event("payment_intent.succeeded", payment_intent()))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

        tx = PaymentTransaction.objects.get(gateway="airwallex")
        self.assertEqual(tx.transaction_id, "airwallex_int_1")
        self.assertEqual(tx.status, PaymentStatus.COMPLETED)
        self.assertEqual(tx.amount, Decimal("25.50"))
        self.assertEqual(tx.currency, "USD")
        self.assertEqual(PaymentLedgerEntry.objects.filter(transaction=tx).count(), 1)
        self.assertEqual(self.last_log().gateway, "airwallex")

    def test_wrong_secret_is_rejected(self):
        resp = self.post_event(*airwallex_event("payment_intent.succeeded", payment_intent(), secret="other"))

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(PaymentTransaction.objects.exists())
        self.assertEqual(self.last_log().status, WebhookLog.Status.FAILED)

    def test_old_timestamp_is_rejected(self):
        body, signature = airwallex_event(
            "payment_intent.succeeded", payment_intent(), timestamp=int(time.time()) - 3600
        )

        resp = self.post_event(body, signature)

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(PaymentTransaction.objects.exists())

    def test_missing_signature_header_is_rejected(self):
        body, _ = airwallex_event("payment_intent.succeeded", payment_intent())

        resp = self.post_event(body)

        self.assertEqual(resp.status_code, 400)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)

    def test_merchant_order_id_is_used_without_metadata(self):
        obj = payment_intent(metadata={}, merchant_order_id=QUOTE_ID)

        resp = self.post_event(*airwallex_event("payment_intent.succeeded", obj))

        self.assertEqual(resp.status_code, 200)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.PAID)

    def test_cancelled_intent_keeps_quote_payable(self):
        obj = payment_intent(cancellation_reason="requested_by_customer")

        self.post_event(*airwallex_event("payment_intent.cancelled", obj))

        tx = PaymentTransaction.objects.get()
        self.assertEqual(tx.status, PaymentStatus.CANCELLED)
        self.assertEqual(tx.error_message, "requested_by_customer")
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.APPROVED)

    def test_refund_succeeded_after_payment(self):
        self.post_event(*airwallex_event("payment_intent.succeeded", payment_intent()))
        refund = {"id": "rfd_1", "payment_intent_id": "int_1", "amount": 25.5, "currency": "usd"}

        resp = self.post_event(*airwallex_event("refund.succeeded", refund))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Refund recorded")
        tx = PaymentTransaction.objects.get()
        self.assertEqual(tx.total_refunded, Decimal("25.50"))
        self.assertTrue(PaymentLedgerEntry.objects.filter(reference="rfd_1").exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.Status.REFUNDED)

    @mock.patch("payments.views.notify_webhook_alert")
    def test_dispute_event_changes_nothing(self, alert):
        dispute = {"id": "dsp_1", "amount": 25.5, "currency": "usd", "metadata": {"quote_ids": QUOTE_ID}}

        with self.assertLogs("payments.views", level="ERROR"):
            resp = self.post_event(*airwallex_event("dispute.created", dispute))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Unknown payment status, no changes applied")
        self.assertFalse(PaymentTransaction.objects.exists())
        alert.assert_called_once()

    @override_settings(PAYMENT_GATEWAYS={"airwallex": {"webhook_secret": ""}})
    @mock.patch("payments.views.notify_webhook_alert")
    def test_missing_secret_fails_closed(self, alert):
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self.post_event(*airwallex_event("payment_intent.succeeded", payment_intent()))

        self.assertEqual(resp.status_code, 500)
        self.assertIn("webhook_secret", self.last_log().error_message)
        self.assertFalse(PaymentTransaction.objects.exists())


@override_settings(PAYMENT_GATEWAYS=TEST_GATEWAYS)
class AirwallexAdapterTests(SimpleTestCase):
    def test_event_mapping(self):
        adapter = get_adapter("airwallex")
        cases = {
            "payment_intent.succeeded": PaymentStatus.COMPLETED,
            "payment_intent.failed": PaymentStatus.FAILED,
            "payment_intent.cancelled": PaymentStatus.CANCELLED,
            "payment_intent.created": PaymentStatus.UNKNOWN,
        }
        for name, expected in cases.items():
            notification = adapter.normalize(json.loads(airwallex_event(name, payment_intent())[0]))
            self.assertEqual(adapter.map_status(notification), expected, name)

    def test_settled_attempt_points_at_its_intent(self):
        attempt = {"id": "att_1", "payment_intent_id": "int_9", "amount": 10, "currency": "usd"}
        adapter = get_adapter("airwallex")

        notification = adapter.normalize(json.loads(airwallex_event("payment_attempt.settled", attempt)[0]))

        self.assertEqual(notification.transaction_id, "airwallex_int_9")
        self.assertEqual(adapter.map_status(notification), PaymentStatus.COMPLETED)

    def test_quote_ids_from_metadata(self):
        adapter = get_adapter("airwallex")
        obj = payment_intent(metadata={"quote_ids": f"{QUOTE_ID},{OTHER_QUOTE_ID}"})

        notification = adapter.normalize(json.loads(airwallex_event("payment_intent.succeeded", obj)[0]))

        self.assertEqual(adapter.extract_correlation_ids(notification), [QUOTE_ID, OTHER_QUOTE_ID])

    def test_event_without_object_is_malformed(self):
        with self.assertRaises(MalformedPayload):
            get_adapter("airwallex").normalize({"id": "evt_1", "name": "payment_intent.succeeded", "data": {}})

    def test_signature_header_parsing(self):
        self.assertEqual(parse_signature_header("t=1700000000,v1=abc123"), ("1700000000", "abc123"))
        self.assertEqual(parse_signature_header(None), ("", ""))


class CorrelationTests(SimpleTestCase):
    def test_trailing_parens_win(self):
        text = f"Mug {OTHER_QUOTE_ID} (  {QUOTE_ID.upper()} , not-an-id, {QUOTE_ID})"

        self.assertEqual(ids_from_trailing_parens(text), [QUOTE_ID])
        self.assertEqual(resolve_correlation_ids(text, ""), [QUOTE_ID])

    def test_uuid_anywhere_in_free_text(self):
        text = f"Quote {QUOTE_ID} and {OTHER_QUOTE_ID}"

        self.assertEqual(uuids_in_text(text), [QUOTE_ID, OTHER_QUOTE_ID])
        self.assertEqual(resolve_correlation_ids(text, ""), [QUOTE_ID, OTHER_QUOTE_ID])

    def test_falls_back_to_transaction_reference(self):
        self.assertEqual(resolve_correlation_ids("Mug", f"TXN-{OTHER_QUOTE_ID}"), [OTHER_QUOTE_ID])

    def test_nothing_found(self):
        self.assertEqual(resolve_correlation_ids("Mug (abc)", "ORDER-1"), [])


class StatusTransitionTests(SimpleTestCase):
    def test_forward_moves(self):
        self.assertTrue(allowed(PaymentStatus.PENDING, PaymentStatus.COMPLETED))
        self.assertTrue(allowed(PaymentStatus.PROCESSING, PaymentStatus.FAILED))
        self.assertTrue(allowed(PaymentStatus.FAILED, PaymentStatus.COMPLETED))

    def test_no_regression_from_completed(self):
        for status in PaymentStatus:
            self.assertFalse(allowed(PaymentStatus.COMPLETED, status))

    def test_unknown_never_applies(self):
        for status in PaymentStatus:
            self.assertFalse(allowed(status, PaymentStatus.UNKNOWN))


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class MemoryReplayGuardTests(SimpleTestCase):
    def test_duplicate_inside_window(self):
        clock = FakeClock()
        guard = MemoryReplayGuard(300, clock=clock)

        self.assertTrue(guard.claim("payu:ORDER-1:success"))
        self.assertFalse(guard.claim("payu:ORDER-1:success"))

        clock.now += 301
        self.assertTrue(guard.claim("payu:ORDER-1:success"))

    def test_release_allows_retry(self):
        guard = MemoryReplayGuard(300)
        guard.claim("k")
        guard.release("k")

        self.assertTrue(guard.claim("k"))

    def test_oldest_entry_evicted_when_full(self):
        guard = MemoryReplayGuard(300, max_entries=2)
        guard.claim("a")
        guard.claim("b")
        guard.claim("c")

        self.assertEqual(len(guard), 2)
        self.assertTrue(guard.claim("a"))

    def test_prune_drops_expired(self):
        clock = FakeClock()
        guard = MemoryReplayGuard(60, clock=clock)
        guard.claim("a")
        clock.now += 61

        self.assertEqual(guard.prune(), 1)
        self.assertEqual(len(guard), 0)


class DatabaseReplayGuardTests(TestCase):
    def test_claim_release_and_expiry(self):
        guard = DatabaseReplayGuard(300)

        self.assertTrue(guard.claim("payu:ORDER-1"))
        self.assertFalse(guard.claim("payu:ORDER-1"))

        WebhookReplay.objects.filter(key="payu:ORDER-1").update(seen_at=timezone.now() - timedelta(seconds=600))
        self.assertTrue(guard.claim("payu:ORDER-1"))
        self.assertEqual(WebhookReplay.objects.count(), 1)

        guard.release("payu:ORDER-1")
        self.assertFalse(WebhookReplay.objects.exists())

    @override_settings(PAYMENT_WEBHOOK_REPLAY_BACKEND="database", PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS=120)
    def test_backend_from_settings(self):
        guard = get_replay_guard()

        self.assertIsInstance(guard, DatabaseReplayGuard)
        self.assertEqual(guard.window, 120)

    def test_prune_command(self):
        WebhookReplay.objects.create(key="old", seen_at=timezone.now() - timedelta(hours=1))
        WebhookReplay.objects.create(key="fresh", seen_at=timezone.now())
        out = StringIO()

        call_command("prune_webhook_replays", window=60, stdout=out)

        self.assertIn("Pruned 1 replay keys", out.getvalue())
        self.assertEqual(list(WebhookReplay.objects.values_list("key", flat=True)), ["fresh"])
