import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True
    dependencies = [("payments", "0001_initial")]
    operations = [
        migrations.CreateModel(
            name="PaymentLedgerEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("entry_type", models.CharField(choices=[("capture", "Capture"), ("refund", "Refund")], max_length=12)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("reference", models.CharField(max_length=128)),
                ("note", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("transaction", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="ledger_entries", to="payments.paymenttransaction")),
            ],
            options={
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "ordering": ("created_at", "id"),
            },
        ),
        migrations.AddConstraint(
            model_name="paymentledgerentry",
            constraint=models.UniqueConstraint(fields=("transaction", "entry_type", "reference"), name="uniq_ledger_entry_reference"),
        ),
    ]
