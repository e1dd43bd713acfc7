from unittest import mock

import requests
from django.test import SimpleTestCase, override_settings

from .telegram_notify import notify_payment_received, notify_webhook_alert, tg_send


@override_settings(TELEGRAM_NOTIFICATIONS=True, TELEGRAM_BOT_TOKEN="bot-token", TELEGRAM_CHAT_ID="42")
class TelegramNotifyTests(SimpleTestCase):
    @mock.patch("core.telegram_notify.requests.post")
    def test_send_posts_html_message(self, post):
        self.assertTrue(tg_send("hello"))

        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        self.assertIn("botbot-token/sendMessage", url)
        self.assertEqual(payload["chat_id"], "42")
        self.assertEqual(payload["parse_mode"], "HTML")

    @override_settings(TELEGRAM_NOTIFICATIONS=False)
    @mock.patch("core.telegram_notify.requests.post")
    def test_disabled(self, post):
        self.assertFalse(tg_send("hello"))
        post.assert_not_called()

    @override_settings(TELEGRAM_CHAT_ID="")
    @mock.patch("core.telegram_notify.requests.post")
    def test_not_configured(self, post):
        self.assertFalse(tg_send("hello"))
        post.assert_not_called()

    @mock.patch("core.telegram_notify.requests.post", side_effect=requests.ConnectionError("down"))
    def test_request_error_is_logged(self, post):
        with self.assertLogs("core.telegram_notify", level="WARNING"):
            self.assertFalse(tg_send("hello"))

    @mock.patch("core.telegram_notify.tg_send", return_value=True)
    def test_payment_message_escapes_fields(self, send):
        notify_payment_received(
            gateway="payu",
            transaction_id="<ORDER-1>",
            amount="25.50",
            currency="INR",
            quote_ids=["a", "b", "c", "d"],
            order_numbers=["ORD-1"],
        )

        text = send.call_args.args[0]
        self.assertIn("&lt;ORDER-1&gt;", text)
        self.assertIn("a, b, c +1", text)
        self.assertIn("ORD-1", text)

    @mock.patch("core.telegram_notify.tg_send", return_value=True)
    def test_alert_includes_request_id(self, send):
        notify_webhook_alert(gateway="payu", text="Unknown status 'x'", request_id="req-1")

        self.assertIn("req-1", send.call_args.args[0])
