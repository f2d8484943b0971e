"""
Add celery-beat schedules for the settlement sweeps.

Creates two periodic tasks:
- reconcile_open_settlements every 15 minutes
- extend_stalled_deadlines every hour
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Reconcile Open Settlements",
        "task": "settlement.tasks.reconcile_open_settlements",
        "every": 15,
        "period": "minutes",
        "description": (
            "Resolves partial-commit reconciliation records against "
            "processor state."
        ),
    },
    {
        "name": "Extend Stalled Order Deadlines",
        "task": "settlement.tasks.extend_stalled_deadlines",
        "every": 1,
        "period": "hours",
        "description": "Extends the deadline of active orders past due, once per order.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the settlement periodic tasks."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for task in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=task["every"],
            period=task["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=task["name"],
            defaults={
                "task": task["task"],
                "interval": schedule,
                "enabled": True,
                "description": task["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[task["name"] for task in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("settlement", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
