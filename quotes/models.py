import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class Quote(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SENT = "sent", "Sent"
        APPROVED = "approved", "Approved"
        PAYMENT_PENDING = "payment_pending", "Awaiting payment confirmation"
        PAID = "paid", "Paid"
        REFUNDED = "refunded", "Refunded"
        CANCELLED = "cancelled", "Cancelled"
        EXPIRED = "expired", "Expired"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="quotes",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    product_name = models.CharField(max_length=255, blank=True, default="")
    customer_name = models.CharField(max_length=255, blank=True, default="")
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=32, blank=True, default="")
    shipping_address = models.JSONField(default=dict, blank=True)

    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="INR")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"Quote {self.id} ({self.status})"

    def can_transition_to(self, new_status: str) -> bool:
        return quote_transition_allowed(self.status, new_status)


# Payment-driven edges only. paid -> refunded is the single way back from paid.
QUOTE_TRANSITIONS = {
    Quote.Status.SENT: {Quote.Status.PAYMENT_PENDING, Quote.Status.PAID},
    Quote.Status.APPROVED: {Quote.Status.PAYMENT_PENDING, Quote.Status.PAID},
    Quote.Status.PAYMENT_PENDING: {Quote.Status.PAID, Quote.Status.APPROVED},
    Quote.Status.PAID: {Quote.Status.REFUNDED},
}


def quote_transition_allowed(current: str, new: str) -> bool:
    return new in QUOTE_TRANSITIONS.get(current, set())


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING_FULFILLMENT = "pending_fulfillment", "Pending fulfillment"
        FULFILLED = "fulfilled", "Fulfilled"
        CANCELLED = "cancelled", "Cancelled"

    quote = models.OneToOneField(Quote, on_delete=models.PROTECT, related_name="order")
    order_number = models.CharField(max_length=32, unique=True)
    status = models.CharField(max_length=24, choices=Status.choices, default=Status.PENDING_FULFILLMENT)

    customer_name = models.CharField(max_length=255, blank=True, default="")
    customer_email = models.EmailField(blank=True, default="")
    shipping_address = models.JSONField(default=dict, blank=True)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="INR")

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Order {self.order_number}"


class GuestCheckoutSession(models.Model):
    """Guest buyer details held aside until the payment for the quote is confirmed."""

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        COMPLETED = "completed", "Completed"
        EXPIRED = "expired", "Expired"

    session_token = models.CharField(max_length=128, unique=True)
    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name="guest_sessions")

    guest_name = models.CharField(max_length=255)
    guest_email = models.EmailField()
    guest_phone = models.CharField(max_length=32, blank=True, default="")
    shipping_address = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=12, choices=Status.choices, default=Status.ACTIVE, db_index=True)
    expires_at = models.DateTimeField()

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Guest checkout session"
        verbose_name_plural = "Guest checkout sessions"

    def __str__(self):
        return f"GuestCheckoutSession({self.quote_id}) {self.status}"

    def is_expired(self, now=None) -> bool:
        return self.expires_at <= (now or timezone.now())
