from django.db import models


class PaymentLedgerEntry(models.Model):
    class EntryType(models.TextChoices):
        CAPTURE = "capture", "Capture"
        REFUND = "refund", "Refund"

    transaction = models.ForeignKey(
        "payments.PaymentTransaction",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    entry_type = models.CharField(max_length=12, choices=EntryType.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)  # capture > 0, refund < 0
    currency = models.CharField(max_length=3)
    reference = models.CharField(max_length=128)
    note = models.CharField(max_length=255, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Ledger entry"
        verbose_name_plural = "Ledger entries"
        ordering = ("created_at", "id")
        constraints = [
            models.UniqueConstraint(
                fields=["transaction", "entry_type", "reference"],
                name="uniq_ledger_entry_reference",
            )
        ]

    def __str__(self):
        return f"{self.entry_type} {self.amount} {self.currency} (tx {self.transaction_id})"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValueError("Ledger entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Ledger entries are append-only")
