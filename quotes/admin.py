from django.contrib import admin

from .models import GuestCheckoutSession, Order, Quote


class GuestCheckoutSessionInline(admin.TabularInline):
    model = GuestCheckoutSession
    extra = 0
    fields = ("session_token", "guest_name", "guest_email", "status", "expires_at")
    readonly_fields = ("session_token",)


@admin.register(Quote)
class QuoteAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "customer_name", "customer_email", "total_amount", "currency", "paid_at")
    list_filter = ("status", "currency")
    search_fields = ("id", "customer_name", "customer_email")
    readonly_fields = ("created_at", "updated_at", "paid_at")
    inlines = [GuestCheckoutSessionInline]


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "quote", "status", "total_amount", "currency", "created_at")
    list_filter = ("status",)
    search_fields = ("order_number", "quote__id", "customer_email")
    readonly_fields = ("created_at",)


@admin.register(GuestCheckoutSession)
class GuestCheckoutSessionAdmin(admin.ModelAdmin):
    list_display = ("id", "quote", "guest_name", "guest_email", "status", "expires_at")
    list_filter = ("status",)
    search_fields = ("session_token", "guest_email", "quote__id")
    readonly_fields = ("created_at", "updated_at")
