from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0002_add_celery_beat_schedules"),
    ]

    operations = [
        migrations.AddField(
            model_name="escrowtransaction",
            name="requires_manual_intervention",
            field=models.BooleanField(
                db_index=True,
                default=False,
                help_text="Set when the provider reported a payment the engine cannot reconcile",
            ),
        ),
        migrations.AddField(
            model_name="escrowtransaction",
            name="review_reason",
            field=models.TextField(
                blank=True,
                default="",
                help_text="Why the transaction was held for manual review",
            ),
        ),
    ]
