from django.contrib import admin

from ledger.models import PaymentLedgerEntry

from .models import PaymentTransaction, WebhookLog, WebhookReplay


class PaymentLedgerEntryInline(admin.TabularInline):
    model = PaymentLedgerEntry
    extra = 0
    can_delete = False
    fields = ("entry_type", "amount", "currency", "reference", "note", "created_at")
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = (
        "transaction_id",
        "gateway",
        "status",
        "amount",
        "total_refunded",
        "currency",
        "created_at",
        "completed_at",
    )
    list_filter = ("gateway", "status", "currency")
    search_fields = ("transaction_id", "gateway_transaction_id", "customer_email", "quotes__id")
    readonly_fields = (
        "gateway",
        "transaction_id",
        "gateway_transaction_id",
        "amount",
        "currency",
        "status",
        "total_refunded",
        "refund_count",
        "error_message",
        "gateway_response",
        "created_at",
        "updated_at",
        "completed_at",
    )
    filter_horizontal = ("quotes",)
    inlines = [PaymentLedgerEntryInline]


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
    list_display = ("request_id", "gateway", "status", "http_status", "transaction_id", "processing_time_ms", "created_at")
    list_filter = ("gateway", "status", "http_status")
    search_fields = ("request_id", "transaction_id", "payload_fingerprint")
    ordering = ("-created_at",)

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(WebhookReplay)
class WebhookReplayAdmin(admin.ModelAdmin):
    list_display = ("key", "seen_at")
    search_fields = ("key",)
    ordering = ("-seen_at",)
