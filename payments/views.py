import json
import logging

from django.conf import settings
from django.core.exceptions import RequestDataTooBig
from django.http import HttpRequest, JsonResponse
from django.http.multipartparser import MultiPartParserError
from django.views.decorators.csrf import csrf_exempt

from core.telegram_notify import notify_webhook_alert

from .audit import WebhookAudit, fingerprint, safe_headers
from .exceptions import ConfigurationError, InvalidSignature, MalformedPayload, WebhookError
from .gateways import get_adapter
from .models import WebhookLog
from .notifications import dispatch
from .reconcile import Deadline, reconcile
from .replay import get_replay_guard
from .statuses import PaymentStatus


logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def read_webhook_fields(request: HttpRequest) -> tuple[dict, bytes]:
    """Request gate: size, content type and parsing. Returns (fields, raw body)."""
    max_bytes = int(getattr(settings, "PAYMENT_WEBHOOK_MAX_BODY_BYTES", 10 * 1024 * 1024))

    content_type = (request.content_type or "").lower()
    if content_type != JSON_CONTENT_TYPE and content_type not in FORM_CONTENT_TYPES:
        raise MalformedPayload(f"Unsupported content type: {content_type or 'none'}")

    try:
        declared = int(request.META.get("CONTENT_LENGTH") or 0)
    except ValueError:
        raise MalformedPayload("Invalid Content-Length header")
    if declared > max_bytes:
        raise MalformedPayload(f"Request body exceeds {max_bytes} bytes")

    try:
        body = request.body
    except RequestDataTooBig:
        raise MalformedPayload(f"Request body exceeds {max_bytes} bytes")
    if len(body) > max_bytes:
        raise MalformedPayload(f"Request body exceeds {max_bytes} bytes")

    if content_type == JSON_CONTENT_TYPE:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise MalformedPayload("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise MalformedPayload("JSON body must be an object")
        return data, body

    try:
        # first value wins for repeated keys
        return {key: values[0] for key, values in request.POST.lists() if values}, body
    except (MultiPartParserError, RequestDataTooBig):
        raise MalformedPayload("Request body is not a valid form")


def _respond(audit: WebhookAudit, http_status: int, *, success: bool, message: str, log_status: str,
             error: str = "", payload=None, transaction_id: str = "", correlation_ids=()):
    audit.finish(
        log_status,
        http_status=http_status,
        message=message,
        error=error,
        payload=payload,
        transaction_id=transaction_id,
        correlation_ids=correlation_ids,
    )
    return JsonResponse(
        {
            "success": success,
            "message": message,
            "requestId": str(audit.request_id),
            "processingTimeMs": audit.elapsed_ms(),
        },
        status=http_status,
    )


def _public_message(exc: WebhookError) -> str:
    if isinstance(exc, ConfigurationError):
        return "Payment gateway is not configured"
    if exc.http_status >= 500:
        return "Webhook processing failed, please retry"
    return str(exc)


@csrf_exempt
def gateway_webhook(request: HttpRequest, gateway: str):
    deadline = Deadline.from_settings()
    audit = WebhookAudit(gateway, headers=safe_headers(request))
    audit.begin()

    if request.method != "POST":
        response = _respond(
            audit,
            405,
            success=False,
            message="Method not allowed",
            log_status=WebhookLog.Status.REJECTED,
            error=f"{request.method} is not allowed",
        )
        response["Allow"] = "POST"
        return response

    fields = None
    notification = None
    correlation_ids = []
    guard = None
    replay_key = ""

    def txn_ref():
        if notification is not None:
            return notification.transaction_id
        return str((fields or {}).get("txnid") or "")

    try:
        fields, body = read_webhook_fields(request)
        audit.fingerprint = fingerprint(body)

        adapter = get_adapter(gateway)
        if not adapter.verify_signature(fields, headers=request.headers, body=body):
            logger.warning("Rejected %s webhook for %s: hash mismatch", gateway, txn_ref() or "-")
            raise InvalidSignature("Signature verification failed: hash mismatch")

        notification = adapter.normalize(fields)

        guard = get_replay_guard()
        if not guard.claim(notification.replay_key()):
            logger.info("Duplicate %s webhook for %s ignored", gateway, notification.transaction_id)
            return _respond(
                audit,
                200,
                success=True,
                message="Duplicate request ignored",
                log_status=WebhookLog.Status.SUCCESS,
                payload=fields,
                transaction_id=notification.transaction_id,
            )
        replay_key = notification.replay_key()

        status = adapter.map_status(notification)
        if status == PaymentStatus.UNKNOWN:
            logger.error(
                "Unknown %s status %r for %s, nothing applied",
                gateway,
                notification.raw_status,
                notification.transaction_id,
            )
            dispatch(
                notify_webhook_alert,
                gateway=gateway,
                text=f"Unknown status '{notification.raw_status}' for {notification.transaction_id}",
                request_id=str(audit.request_id),
            )
            return _respond(
                audit,
                200,
                success=True,
                message="Unknown payment status, no changes applied",
                log_status=WebhookLog.Status.SUCCESS,
                payload=fields,
                transaction_id=notification.transaction_id,
            )

        if not notification.is_refund:
            correlation_ids = adapter.extract_correlation_ids(notification)
        deadline.check("correlation")

        outcome = reconcile(notification, status, correlation_ids, deadline=deadline)
        return _respond(
            audit,
            200,
            success=True,
            message=outcome.message,
            log_status=WebhookLog.Status.SUCCESS,
            payload=fields,
            transaction_id=outcome.transaction_id,
            correlation_ids=outcome.quote_ids,
        )

    except WebhookError as exc:
        if replay_key:
            guard.release(replay_key)
        if isinstance(exc, ConfigurationError):
            logger.error("%s webhook rejected: %s", gateway, exc)
            dispatch(notify_webhook_alert, gateway=gateway, text=str(exc), request_id=str(audit.request_id))
        elif exc.http_status >= 500:
            logger.error("%s webhook for %s failed: %s", gateway, txn_ref() or "-", exc)
        else:
            logger.warning("%s webhook for %s rejected: %s", gateway, txn_ref() or "-", exc)
        return _respond(
            audit,
            exc.http_status,
            success=False,
            message=_public_message(exc),
            log_status=exc.log_status,
            error=str(exc),
            payload=fields,
            transaction_id=txn_ref(),
            correlation_ids=correlation_ids,
        )

    except Exception as exc:
        if replay_key:
            guard.release(replay_key)
        logger.exception("Unexpected error in %s webhook for %s", gateway, txn_ref() or "-")
        return _respond(
            audit,
            500,
            success=False,
            message="Internal error",
            log_status=WebhookLog.Status.FAILED,
            error=f"{type(exc).__name__}: {exc}",
            payload=fields,
            transaction_id=txn_ref(),
            correlation_ids=correlation_ids,
        )
