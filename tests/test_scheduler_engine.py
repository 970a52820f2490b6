"""
Tests for SchedulerEngine: job registration mirrors the schedule table, and
fired jobs go through the dispatcher.

The APScheduler BackgroundScheduler really runs here; the cron expressions
used fire at 08:00 so nothing triggers during a test run unless called directly
or given an overdue trigger.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import select

from conftest import OWNER, STRANGER, count_rows
from piston_server.database.models import Piston, ScheduleCreate, ScheduleUpdate, TelemetryEvent
from piston_server.services.errors import ErrorKind, TransportUnavailable
from piston_server.services.scheduler import SchedulerEngine

DAILY_8AM = "0 0 8 * * ?"


def _create(repository, device_id, **overrides):
    values = dict(
        name="Piston 3 morning",
        device_id=device_id,
        piston_number=3,
        action="ACTIVATE",
        cron_expression=DAILY_8AM,
        enabled=True,
    )
    values.update(overrides)
    return repository.create(OWNER, ScheduleCreate(**values)).value


def _fire(sched, schedule):
    return sched._fire(
        schedule_id=schedule.id,
        schedule_name=schedule.name,
        user_id=schedule.user_id,
        device_id=schedule.device_id,
        piston_number=schedule.piston_number,
        action=schedule.action,
    )


@pytest.fixture
def sched(repository, dispatcher, cron):
    sched = SchedulerEngine(repository, dispatcher, cron, timezone="UTC", max_workers=2)
    yield sched
    sched.stop(wait=False)


@pytest.fixture
def running(sched):
    sched.start()
    return sched


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_not_running_initially(self, sched):
        assert not sched.is_running
        assert sched.job_count == 0

    def test_start_loads_only_enabled_schedules(self, sched, repository, device):
        first = _create(repository, device.id, name="a")
        second = _create(repository, device.id, name="b", piston_number=4)
        _create(repository, device.id, name="off", enabled=False)

        loaded = sched.start()

        assert sched.is_running
        assert loaded == 2
        assert set(sched.scheduled_ids()) == {first.id, second.id}

    def test_start_twice_is_harmless(self, running):
        assert running.start() == running.job_count
        assert running.is_running

    def test_stop(self, running):
        running.stop(wait=False)
        assert not running.is_running

    def test_unbuildable_schedule_is_skipped_on_load(self, sched, repository, device):
        good = _create(repository, device.id)
        broken = _create(repository, device.id, name="broken")
        repository.list_enabled = MagicMock(return_value=[
            broken.model_copy(update={"cron_expression": "garbage"}),
            good,
        ])

        assert sched.start() == 1
        assert sched.scheduled_ids() == [good.id]


# ---------------------------------------------------------------------------
# Mirroring create / update / delete
# ---------------------------------------------------------------------------

class TestMirroring:

    def test_enable_disable_reenable(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        assert running.job_count == 1
        first_fire = running.next_fire_time(schedule.id)
        assert first_fire is not None
        assert first_fire > datetime.now(timezone.utc)

        disabled = repository.update(schedule.id, OWNER, ScheduleUpdate(enabled=False)).value
        running.update_schedule(disabled)

        assert running.job_count == 0
        assert running.next_fire_time(schedule.id) is None

        enabled = repository.update(schedule.id, OWNER, ScheduleUpdate(enabled=True)).value
        running.update_schedule(enabled)

        assert running.job_count == 1
        assert running.next_fire_time(schedule.id) > datetime.now(timezone.utc)

    def test_add_disabled_is_noop(self, running, repository, device):
        schedule = _create(repository, device.id, enabled=False)

        assert running.add_schedule(schedule) is False
        assert running.job_count == 0

    def test_add_twice_keeps_one_job(self, running, repository, device):
        schedule = _create(repository, device.id)

        running.add_schedule(schedule)
        running.add_schedule(schedule)

        assert running.job_count == 1

    def test_update_replaces_trigger(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        updated = repository.update(schedule.id, OWNER, ScheduleUpdate(cron_expression="0 0 8 1 1 ? 2099")).value
        running.update_schedule(updated)

        assert running.job_count == 1
        assert running.next_fire_time(schedule.id).year == 2099

    def test_update_carries_new_fields_into_job(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        updated = repository.update(schedule.id, OWNER, ScheduleUpdate(action="DEACTIVATE", piston_number=6)).value
        running.update_schedule(updated)

        job = running._scheduler.get_job(schedule.id)
        assert job.kwargs["action"] == "DEACTIVATE"
        assert job.kwargs["piston_number"] == 6

    def test_remove_is_idempotent(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        assert running.remove_schedule(schedule.id) is True
        assert running.remove_schedule(schedule.id) is False
        assert running.job_count == 0

    def test_stale_update_after_delete_does_not_resurrect_job(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        # a PUT commits, then a DELETE completes before the PUT mirrors its write
        updated = repository.update(schedule.id, OWNER, ScheduleUpdate(name="Renamed")).value
        repository.delete(schedule.id, OWNER)
        running.remove_schedule(schedule.id)
        registered = running.update_schedule(updated)

        assert registered is False
        assert running.scheduled_ids() == []

    def test_stale_add_after_delete_is_ignored(self, running, repository, device):
        schedule = _create(repository, device.id)
        repository.delete(schedule.id, OWNER)

        assert running.add_schedule(schedule) is False
        assert running.job_count == 0

    def test_stale_enabled_copy_of_disabled_row_is_ignored(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)
        repository.update(schedule.id, OWNER, ScheduleUpdate(enabled=False))

        assert running.update_schedule(schedule) is False
        assert running.job_count == 0

    def test_misfire_policy(self, running, repository, device):
        schedule = _create(repository, device.id)
        running.add_schedule(schedule)

        job = running._scheduler.get_job(schedule.id)
        assert job.coalesce is True
        assert job.misfire_grace_time is None
        assert job.max_instances == 1


# ---------------------------------------------------------------------------
# Reload
# ---------------------------------------------------------------------------

class TestReload:

    def test_reload_restores_cleared_jobs(self, running, repository, device):
        a = _create(repository, device.id, name="a")
        b = _create(repository, device.id, name="b")
        _create(repository, device.id, name="off", enabled=False)
        running.reload_all()

        running._scheduler.remove_all_jobs()
        assert running.job_count == 0

        assert running.reload_all() == 2
        assert sorted(running.scheduled_ids()) == sorted([a.id, b.id])

    def test_reload_drops_stray_jobs(self, running, repository, device):
        schedule = _create(repository, device.id)
        running._scheduler.add_job(lambda: None, "interval", hours=1, id="stray")

        running.reload_all()

        assert running.scheduled_ids() == [schedule.id]

    def test_reload_picks_up_rows_written_behind_its_back(self, running, repository, device):
        assert running.job_count == 0
        schedule = _create(repository, device.id)

        running.reload_all()

        assert running.scheduled_ids() == [schedule.id]


# ---------------------------------------------------------------------------
# Fired jobs
# ---------------------------------------------------------------------------

class TestFire:

    def test_fire_sends_command_and_records_state(self, sched, repository, device, transport, session_factory):
        schedule = _create(repository, device.id)

        result = _fire(sched, schedule)

        assert result.ok
        transport.publish_command.assert_called_once_with(device.id, "activate:3", use_binary=True)
        with session_factory() as session:
            piston = session.exec(select(Piston).where(Piston.device_id == device.id)).one()
            event = session.exec(select(TelemetryEvent)).one()
        assert piston.piston_number == 3
        assert piston.state == "active"
        assert event.event_type == "activated"
        assert event.payload["source"] == "schedule"

    def test_deactivate_action_is_lowercased(self, sched, repository, device, transport):
        schedule = _create(repository, device.id, action="DEACTIVATE", piston_number=8)

        _fire(sched, schedule)

        transport.publish_command.assert_called_once_with(device.id, "deactivate:8", use_binary=True)

    def test_transport_unavailable_is_contained(self, sched, repository, device, transport, session_factory):
        transport.publish_command.side_effect = TransportUnavailable("MQTT client is not running")
        schedule = _create(repository, device.id)

        result = _fire(sched, schedule)

        assert result.kind == ErrorKind.TRANSPORT
        assert count_rows(session_factory, Piston) == 0

    def test_dispatcher_exception_is_contained(self, sched, repository, device):
        schedule = _create(repository, device.id)
        sched.dispatcher = MagicMock()
        sched.dispatcher.control_piston.side_effect = RuntimeError("database went away")

        assert _fire(sched, schedule) is None

    def test_ownership_is_checked_at_fire_time(self, sched, repository, device, transport):
        schedule = _create(repository, device.id)

        result = _fire(sched, schedule.model_copy(update={"user_id": STRANGER}))

        assert result.kind == ErrorKind.NOT_FOUND
        transport.publish_command.assert_not_called()

    def test_one_failure_does_not_affect_other_schedules(self, sched, repository, device, transport):
        failing = _create(repository, device.id, name="failing", piston_number=1)
        healthy = _create(repository, device.id, name="healthy", piston_number=2)

        def publish(device_key, command, use_binary=True):
            if command.endswith(":1"):
                raise TransportUnavailable("gone")
            return MagicMock(rc=0)

        transport.publish_command.side_effect = publish

        assert _fire(sched, failing).kind == ErrorKind.TRANSPORT
        assert _fire(sched, healthy).ok


# ---------------------------------------------------------------------------
# Catch-up after a pause
# ---------------------------------------------------------------------------

class TestMisfire:

    def test_overdue_runs_collapse_into_one_fire(self, running, repository, device, transport):
        fired = threading.Event()
        transport.publish_command.side_effect = lambda *args, **kwargs: fired.set() or MagicMock(rc=0)
        # six occurrences fell due while "paused"; the next one is about five seconds away
        overdue = IntervalTrigger(seconds=10, start_date=datetime.now(timezone.utc) - timedelta(seconds=55))
        running.cron = MagicMock()
        running.cron.build_trigger.return_value = overdue

        running.add_schedule(_create(repository, device.id))

        assert fired.wait(5)
        time.sleep(0.5)
        running.stop(wait=True)

        assert transport.publish_command.call_count == 1
