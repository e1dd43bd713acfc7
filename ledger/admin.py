from django.contrib import admin

from .models import PaymentLedgerEntry


@admin.register(PaymentLedgerEntry)
class PaymentLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("id", "transaction", "entry_type", "amount", "currency", "reference", "created_at")
    list_filter = ("entry_type", "currency", "created_at")
    search_fields = ("transaction__transaction_id", "reference")
    ordering = ("-created_at",)

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
