import logging

import requests
from django.conf import settings
from django.utils.html import escape


logger = logging.getLogger(__name__)


def tg_send(text: str) -> bool:
    if not getattr(settings, "TELEGRAM_NOTIFICATIONS", True):
        return False

    token = getattr(settings, "TELEGRAM_BOT_TOKEN", "")
    chat_id = getattr(settings, "TELEGRAM_CHAT_ID", "")

    if not token or not chat_id:
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }

    try:
        r = requests.post(url, json=payload, timeout=5)
        r.raise_for_status()
    except requests.RequestException:
        logger.warning("Telegram message was not sent due to a request error")
        return False
    return True


def _quotes_line(quote_ids) -> str:
    ids = [str(q) for q in quote_ids or []]
    if not ids:
        return "-"
    shown = ", ".join(ids[:3])
    if len(ids) > 3:
        shown += f" +{len(ids) - 3}"
    return escape(shown)


def notify_payment_received(*, gateway: str, transaction_id: str, amount, currency: str, quote_ids=(), order_numbers=()):
    orders_line = f"\nOrders: <b>{escape(', '.join(order_numbers))}</b>" if order_numbers else ""
    return tg_send(
        "💳 <b>Payment received</b>\n"
        f"Gateway: <b>{escape(gateway)}</b>\n"
        f"Transaction: <b>{escape(transaction_id)}</b>\n"
        f"Amount: <b>{escape(str(amount))} {escape(currency)}</b>\n"
        f"Quotes: <b>{_quotes_line(quote_ids)}</b>"
        f"{orders_line}"
    )


def notify_payment_failed(*, gateway: str, transaction_id: str, status: str, reason: str = "", quote_ids=()):
    reason_line = f"\nReason: <b>{escape(reason)}</b>" if reason else ""
    return tg_send(
        "❌ <b>Payment not completed</b>\n"
        f"Gateway: <b>{escape(gateway)}</b>\n"
        f"Transaction: <b>{escape(transaction_id)}</b>\n"
        f"Status: <b>{escape(status)}</b>\n"
        f"Quotes: <b>{_quotes_line(quote_ids)}</b>"
        f"{reason_line}"
    )


def notify_refund(*, gateway: str, transaction_id: str, amount, currency: str, total_refunded, fully_refunded: bool):
    title = "Full refund" if fully_refunded else "Partial refund"
    return tg_send(
        f"↩️ <b>{title}</b>\n"
        f"Gateway: <b>{escape(gateway)}</b>\n"
        f"Transaction: <b>{escape(transaction_id)}</b>\n"
        f"Amount: <b>{escape(str(amount))} {escape(currency)}</b>\n"
        f"Refunded in total: <b>{escape(str(total_refunded))} {escape(currency)}</b>"
    )


def notify_webhook_alert(*, gateway: str, text: str, request_id: str = ""):
    request_line = f"\nRequest: <code>{escape(request_id)}</code>" if request_id else ""
    return tg_send(
        "⚠️ <b>Payment webhook needs attention</b>\n"
        f"Gateway: <b>{escape(gateway)}</b>\n"
        f"{escape(text)}"
        f"{request_line}"
    )
