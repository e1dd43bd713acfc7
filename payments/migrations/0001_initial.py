import uuid

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True
    dependencies = [("quotes", "0001_initial")]
    operations = [
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway", models.CharField(max_length=32)),
                ("transaction_id", models.CharField(max_length=128, verbose_name="Merchant transaction id")),
                ("gateway_transaction_id", models.CharField(blank=True, db_index=True, default="", max_length=128)),
                ("amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("currency", models.CharField(default="INR", max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("cancelled", "Cancelled"), ("expired", "Expired"), ("unknown", "Unknown")], db_index=True, default="pending", max_length=12)),
                ("total_refunded", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("refund_count", models.PositiveIntegerField(default=0)),
                ("customer_email", models.EmailField(blank=True, default="", max_length=254)),
                ("error_message", models.CharField(blank=True, default="", max_length=500)),
                ("gateway_response", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("quotes", models.ManyToManyField(blank=True, related_name="payment_transactions", to="quotes.quote")),
            ],
            options={
                "verbose_name": "Payment transaction",
                "verbose_name_plural": "Payment transactions",
            },
        ),
        migrations.AddConstraint(
            model_name="paymenttransaction",
            constraint=models.UniqueConstraint(fields=("gateway", "transaction_id"), name="uniq_payment_tx_gateway_txn"),
        ),
        migrations.CreateModel(
            name="WebhookLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("request_id", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("gateway", models.CharField(db_index=True, max_length=32)),
                ("status", models.CharField(choices=[("started", "Started"), ("success", "Success"), ("failed", "Failed"), ("rejected", "Rejected")], db_index=True, default="started", max_length=10)),
                ("http_status", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("message", models.CharField(blank=True, default="", max_length=255)),
                ("error_message", models.TextField(blank=True, default="")),
                ("request_headers", models.JSONField(blank=True, default=dict)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("payload_fingerprint", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("transaction_id", models.CharField(blank=True, db_index=True, default="", max_length=128)),
                ("correlation_ids", models.JSONField(blank=True, default=list)),
                ("processing_time_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Webhook log",
                "verbose_name_plural": "Webhook logs",
                "ordering": ("-created_at",),
                "indexes": [models.Index(fields=["gateway", "status", "created_at"], name="webhooklog_gw_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="WebhookReplay",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(max_length=255, unique=True)),
                ("seen_at", models.DateTimeField(db_index=True)),
            ],
        ),
    ]
