from django.db.models import F
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import PaymentLedgerEntry


@receiver(post_save, sender=PaymentLedgerEntry)
def apply_refund_entry(sender, instance: PaymentLedgerEntry, created, **kwargs):
    """Keep the refund totals on the transaction in step with its ledger.

    Entries are never updated, so only the insert is applied.
    """
    if not created or instance.entry_type != PaymentLedgerEntry.EntryType.REFUND:
        return

    instance.transaction.__class__.objects.filter(pk=instance.transaction_id).update(
        total_refunded=F("total_refunded") - instance.amount,
        refund_count=F("refund_count") + 1,
    )
