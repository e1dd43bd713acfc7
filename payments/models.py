import uuid

from django.db import models

from .statuses import PaymentStatus


class PaymentTransaction(models.Model):
    gateway = models.CharField(max_length=32)
    transaction_id = models.CharField("Merchant transaction id", max_length=128)
    gateway_transaction_id = models.CharField(max_length=128, blank=True, default="", db_index=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=12, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True)

    total_refunded = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    refund_count = models.PositiveIntegerField(default=0)

    customer_email = models.EmailField(blank=True, default="")
    error_message = models.CharField(max_length=500, blank=True, default="")
    gateway_response = models.JSONField(default=dict, blank=True)

    quotes = models.ManyToManyField("quotes.Quote", related_name="payment_transactions", blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Payment transaction"
        verbose_name_plural = "Payment transactions"
        constraints = [
            models.UniqueConstraint(
                fields=["gateway", "transaction_id"],
                name="uniq_payment_tx_gateway_txn",
            )
        ]

    def __str__(self):
        return f"{self.gateway}:{self.transaction_id} {self.status} {self.amount} {self.currency}"

    @property
    def is_fully_refunded(self) -> bool:
        return self.status == PaymentStatus.COMPLETED and self.amount > 0 and self.total_refunded >= self.amount


class WebhookLog(models.Model):
    """One row per inbound webhook request. Never deleted."""

    class Status(models.TextChoices):
        STARTED = "started", "Started"
        SUCCESS = "success", "Success"
        FAILED = "failed", "Failed"
        REJECTED = "rejected", "Rejected"

    request_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    gateway = models.CharField(max_length=32, db_index=True)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.STARTED, db_index=True)
    http_status = models.PositiveSmallIntegerField(null=True, blank=True)

    message = models.CharField(max_length=255, blank=True, default="")
    error_message = models.TextField(blank=True, default="")

    request_headers = models.JSONField(default=dict, blank=True)
    payload = models.JSONField(null=True, blank=True)
    payload_fingerprint = models.CharField(max_length=64, blank=True, default="", db_index=True)
    transaction_id = models.CharField(max_length=128, blank=True, default="", db_index=True)
    correlation_ids = models.JSONField(default=list, blank=True)

    processing_time_ms = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Webhook log"
        verbose_name_plural = "Webhook logs"
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=["gateway", "status", "created_at"], name="webhooklog_gw_status_idx"),
        ]

    def __str__(self):
        return f"{self.gateway} {self.request_id} {self.status}"


class WebhookReplay(models.Model):
    """Replay-guard keys shared by every app instance."""

    key = models.CharField(max_length=255, unique=True)
    seen_at = models.DateTimeField(db_index=True)

    def __str__(self):
        return self.key
