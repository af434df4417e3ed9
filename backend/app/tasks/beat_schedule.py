# backend/app/tasks/beat_schedule.py
"""
Celery Beat schedule for the booking sweeps.

Every sweep is idempotent, so overlapping or repeated ticks only skip work
another tick already did.
"""

from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab


def get_beat_schedule(sweep_interval_minutes: int = 60) -> Dict[str, Dict[str, Any]]:
    interval = timedelta(minutes=sweep_interval_minutes)
    return {
        "detect-storage-overstays": {
            "task": "app.tasks.booking_sweeps.detect_storage_overstays",
            "schedule": interval,
            "options": {"queue": "sweeps", "expires": interval.total_seconds()},
        },
        "auto-clear-checkout-reviews": {
            "task": "app.tasks.booking_sweeps.auto_clear_checkout_reviews",
            "schedule": interval,
            "options": {"queue": "sweeps", "expires": interval.total_seconds()},
        },
        "expire-stale-authorizations": {
            "task": "app.tasks.booking_sweeps.expire_stale_authorizations",
            "schedule": crontab(minute=15),  # Hourly, offset from the other sweeps
            "options": {"queue": "sweeps"},
        },
        "expire-unanswered-damage-claims": {
            "task": "app.tasks.booking_sweeps.expire_unanswered_damage_claims",
            "schedule": interval,
            "options": {"queue": "sweeps", "expires": interval.total_seconds()},
        },
    }
