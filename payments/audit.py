from __future__ import annotations

import hashlib
import logging
import time
import uuid

from django.db import DatabaseError
from django.utils import timezone

from .models import WebhookLog


logger = logging.getLogger(__name__)

ERROR_MAX_LENGTH = 1000
MESSAGE_MAX_LENGTH = 255

# never stored
_SECRET_HEADERS = {"authorization", "cookie", "proxy-authorization"}


def safe_headers(request) -> dict:
    return {
        name: value
        for name, value in request.headers.items()
        if name.lower() not in _SECRET_HEADERS
    }


def fingerprint(body: bytes) -> str:
    return hashlib.sha256(body or b"").hexdigest()


class WebhookAudit:
    """The WebhookLog row of one request: opened as started, closed exactly once.

    Writing the log must never decide the outcome of a webhook, so every
    database error here is logged and swallowed.
    """

    def __init__(self, gateway: str, *, headers: dict | None = None, clock=time.monotonic):
        self.request_id = uuid.uuid4()
        self.gateway = gateway
        self.headers = headers or {}
        self.fingerprint = ""
        self._clock = clock
        self._started = clock()
        self._row_id = None
        self.finished = False

    def elapsed_ms(self) -> int:
        return max(0, int((self._clock() - self._started) * 1000))

    def begin(self) -> None:
        try:
            row = WebhookLog.objects.create(
                request_id=self.request_id,
                gateway=self.gateway,
                status=WebhookLog.Status.STARTED,
                request_headers=self.headers,
            )
        except DatabaseError:
            logger.exception("Could not open webhook log for %s", self.request_id)
            return
        self._row_id = row.pk

    def finish(
        self,
        status: str,
        *,
        http_status: int,
        message: str = "",
        error: str = "",
        payload=None,
        transaction_id: str = "",
        correlation_ids=(),
    ) -> None:
        if self.finished:
            return
        self.finished = True

        values = {
            "status": status,
            "http_status": http_status,
            "message": (message or "")[:MESSAGE_MAX_LENGTH],
            "error_message": (error or "")[:ERROR_MAX_LENGTH],
            "payload": payload,
            "payload_fingerprint": self.fingerprint,
            "transaction_id": (transaction_id or "")[:128],
            "correlation_ids": list(correlation_ids or []),
            "processing_time_ms": self.elapsed_ms(),
            "finished_at": timezone.now(),
        }
        try:
            if self._row_id is not None:
                WebhookLog.objects.filter(pk=self._row_id).update(**values)
            else:
                # the started row could not be written, keep at least the outcome
                WebhookLog.objects.create(
                    request_id=self.request_id,
                    gateway=self.gateway,
                    request_headers=self.headers,
                    **values,
                )
        except DatabaseError:
            logger.exception("Could not close webhook log for %s (%s)", self.request_id, status)
