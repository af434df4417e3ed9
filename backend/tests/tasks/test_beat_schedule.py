from datetime import timedelta

from celery.schedules import crontab

from app.tasks import booking_sweeps
from app.tasks.beat_schedule import get_beat_schedule
from app.tasks.celery_app import celery_app

SWEEP_TASKS = {
    "app.tasks.booking_sweeps.detect_storage_overstays",
    "app.tasks.booking_sweeps.auto_clear_checkout_reviews",
    "app.tasks.booking_sweeps.expire_stale_authorizations",
    "app.tasks.booking_sweeps.expire_unanswered_damage_claims",
}


def test_every_sweep_is_scheduled_on_the_sweeps_queue():
    schedule = get_beat_schedule(30)

    assert {entry["task"] for entry in schedule.values()} == SWEEP_TASKS
    assert {entry["options"]["queue"] for entry in schedule.values()} == {"sweeps"}


def test_interval_sweeps_expire_before_the_next_tick():
    schedule = get_beat_schedule(30)

    overstays = schedule["detect-storage-overstays"]
    assert overstays["schedule"] == timedelta(minutes=30)
    assert overstays["options"]["expires"] == 1800
    assert isinstance(schedule["expire-stale-authorizations"]["schedule"], crontab)


def test_sweep_tasks_are_registered_and_routed():
    assert booking_sweeps.detect_storage_overstays.name in celery_app.tasks
    for name in SWEEP_TASKS:
        assert name in celery_app.tasks
    assert celery_app.conf.task_routes["app.tasks.booking_sweeps.*"] == {"queue": "sweeps"}
    assert set(celery_app.conf.beat_schedule) == set(get_beat_schedule())
