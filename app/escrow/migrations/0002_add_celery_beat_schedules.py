"""
Add Celery Beat schedules for escrow background work.

This migration creates periodic task schedules for:
- The deadline sweep (auto-transitions, payment reconciliation)
- Payout and refund instruction dispatch retries
- Gateway event retries and stuck-record cleanup
"""

from django.db import migrations

TASK_NAMES = [
    "Escrow: Sweep Deadlines",
    "Escrow: Dispatch Due Instructions",
    "Escrow: Retry Failed Gateway Events",
    "Escrow: Cleanup Stuck Gateway Events",
]


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for escrow processing."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    # =========================================================================
    # Interval Schedules
    # =========================================================================

    schedule_1min, _ = IntervalSchedule.objects.get_or_create(
        every=1,
        period="minutes",
    )

    schedule_5min, _ = IntervalSchedule.objects.get_or_create(
        every=5,
        period="minutes",
    )

    schedule_15min, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )

    # =========================================================================
    # Periodic Tasks - Deadlines
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Escrow: Sweep Deadlines",
        defaults={
            "task": "escrow.workers.deadline_scheduler.sweep_escrow_deadlines",
            "interval": schedule_1min,
            "enabled": True,
            "description": (
                "Expires unaccepted and unpaid transactions, auto-confirms delivery, "
                "auto-releases after the dispute window and reconciles pending payments."
            ),
        },
    )

    # =========================================================================
    # Periodic Tasks - Money Movement
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Escrow: Dispatch Due Instructions",
        defaults={
            "task": "escrow.workers.payout_executor.dispatch_due_instructions",
            "interval": schedule_1min,
            "enabled": True,
            "description": (
                "Queues pending payout and refund instructions whose next attempt "
                "time has passed (first attempts and backoff retries)."
            ),
        },
    )

    # =========================================================================
    # Periodic Tasks - Gateway Events
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Escrow: Retry Failed Gateway Events",
        defaults={
            "task": "escrow.tasks.retry_failed_gateway_events",
            "interval": schedule_5min,
            "enabled": True,
            "description": (
                "Re-queues failed gateway events below the retry limit and "
                "recorded events that were never queued."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Escrow: Cleanup Stuck Gateway Events",
        defaults={
            "task": "escrow.tasks.cleanup_stuck_gateway_events",
            "interval": schedule_15min,
            "enabled": True,
            "description": (
                "Resets gateway events stuck in processing for more than 30 minutes. "
                "Handles worker crashes mid-apply."
            ),
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove all escrow periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name__in=TASK_NAMES).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
