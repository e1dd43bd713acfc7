"""Errors raised along the inbound webhook path.

Each WebhookError knows the HTTP status the gateway gets back and the
terminal status written to the webhook log.
"""


class WebhookError(Exception):
    http_status = 500
    log_status = "failed"


class MalformedPayload(WebhookError):
    http_status = 400
    log_status = "rejected"


class InvalidSignature(WebhookError):
    http_status = 400


class UnresolvableCorrelation(WebhookError):
    http_status = 400


class RefundExceedsBalance(WebhookError):
    http_status = 400


class ConfigurationError(WebhookError):
    """Gateway secret or settings missing. Fails closed."""


class ReconciliationFailure(WebhookError):
    """Transactional failure; the gateway is expected to retry."""


class ProcessingTimeout(ReconciliationFailure):
    pass


class OutOfOrderState(Exception):
    """A stale event that would move a record backwards. Ignored, not an error."""


class DownstreamNotificationFailure(Exception):
    """Notification dispatch failed. Never propagates past the worker."""
