from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    dependencies = [
        ("event", "0001_initial"),
        ("payment", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Ticket",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("ticket_number", models.CharField(max_length=40, unique=True)),
                ("buyer_email", models.EmailField(max_length=254)),
                ("buyer_name", models.CharField(blank=True, max_length=255)),
                ("buyer_phone", models.CharField(blank=True, max_length=20)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("total_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("status", models.CharField(choices=[("ACTIVE", "Active"), ("USED", "Used"), ("CANCELLED", "Cancelled")], default="ACTIVE", max_length=20)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("event", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="tickets", to="event.event")),
                ("payment", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="ticket", to="payment.payment")),
                ("ticket_type", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="tickets", to="event.tickettype")),
            ],
        ),
        migrations.AddIndex(
            model_name="ticket",
            index=models.Index(fields=["event", "status"], name="event_ticke_event_i_6d1842_idx"),
        ),
    ]
