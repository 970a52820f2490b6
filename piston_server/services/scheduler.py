# piston_server/services/scheduler.py
"""
Scheduler engine: keeps one APScheduler job per enabled schedule.

Job ids are schedule ids. The job set mirrors the schedule table through
add_schedule / update_schedule / remove_schedule, and reload_all() rebuilds
it from the table when the two have drifted apart.

Late fires are coalesced into a single catch-up run with no grace limit,
so a paused process fires each overdue schedule once on resume.
"""

import  threading
from    typing                              import List

from    apscheduler.events                  import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from    apscheduler.executors.pool          import ThreadPoolExecutor
from    apscheduler.jobstores.base          import JobLookupError
from    apscheduler.schedulers.background   import BackgroundScheduler

from    piston_server.database.models       import ScheduleRead
from    piston_server.services.cron         import CronEvaluator
from    piston_server.services.dispatcher   import CommandDispatcher
from    piston_server.services.schedules    import ScheduleRepository
from    piston_server.utils.logger          import getLogger

logger = getLogger("Scheduler")

JOB_DEFAULTS = {
    "coalesce":             True,
    "misfire_grace_time":   None,
    "max_instances":        1,
}


class SchedulerEngine:

    def __init__(
        self,
        repository: ScheduleRepository,
        dispatcher: CommandDispatcher,
        cron: CronEvaluator,
        timezone: str = "UTC",
        max_workers: int = 10,
        scheduler: BackgroundScheduler = None,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.cron       = cron
        self._scheduler = scheduler or BackgroundScheduler(
            executors       = {"default": ThreadPoolExecutor(max_workers)},
            job_defaults    = JOB_DEFAULTS,
            timezone        = timezone,
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._lock      = threading.RLock()
        self._running   = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def job_count(self) -> int:
        return len(self._scheduler.get_jobs())

    def scheduled_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def next_fire_time(self, schedule_id: str):
        job = self._scheduler.get_job(schedule_id)
        # pending jobs have no run time until the scheduler starts
        return getattr(job, "next_run_time", None) if job else None

    # Lifecycle

    def start(self) -> int:
        """Start the timer thread and register every enabled schedule."""
        with self._lock:
            if self._running:
                return self.job_count
            logger.info("Starting schedule engine...")
            self._scheduler.start()
            self._running = True
            loaded = self._load_enabled()
        logger.info(f"Schedule engine started with {loaded} job(s)")
        return loaded

    def stop(self, wait: bool = True):
        with self._lock:
            if not self._running:
                return
            logger.info("Stopping schedule engine...")
            self._scheduler.shutdown(wait=wait)
            self._running = False
        logger.info("Schedule engine stopped")

    # Mirroring the schedule table

    def add_schedule(self, schedule: ScheduleRead) -> bool:
        if not schedule.enabled:
            logger.info(f"Schedule '{schedule.name}' is disabled, not adding to scheduler")
            return False
        with self._lock:
            return self._sync(schedule)

    def update_schedule(self, schedule: ScheduleRead) -> bool:
        """Drop the current job, then register a fresh one only if the schedule is enabled."""
        with self._lock:
            self._unregister(schedule.id)
            return self._sync(schedule)

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            return self._unregister(schedule_id)

    def reload_all(self) -> int:
        """Clear every job and rebuild the set from the enabled schedules in the database."""
        with self._lock:
            logger.info("Reloading all schedules...")
            self._scheduler.remove_all_jobs()
            loaded = self._load_enabled()
        logger.info(f"Reloaded {loaded} schedule(s)")
        return loaded

    # Internals

    def _load_enabled(self) -> int:
        schedules = self.repository.list_enabled()
        if not schedules:
            logger.warning("No enabled schedules found, no jobs will be scheduled")
        loaded = 0
        for schedule in schedules:
            try:
                self._register(schedule)
                loaded += 1
            except Exception as e:
                logger.error(f"Failed to schedule '{schedule.name}' ({schedule.id}): {e}")
        return loaded

    def _sync(self, schedule: ScheduleRead) -> bool:
        # the caller's copy can be stale: a delete or disable may have committed since
        current = self.repository.find(schedule.id)
        if current is None:
            self._unregister(schedule.id)
            logger.info(f"Schedule {schedule.id} no longer exists, not scheduling")
            return False
        if not current.enabled:
            self._unregister(schedule.id)
            logger.info(f"Schedule '{current.name}' disabled, not scheduling")
            return False
        self._register(current)
        return True

    def _register(self, schedule: ScheduleRead):
        trigger = self.cron.build_trigger(schedule.cron_expression)
        job = self._scheduler.add_job(
            self._fire,
            trigger             = trigger,
            id                  = schedule.id,
            name                = schedule.name,
            replace_existing    = True,
            kwargs              = {
                "schedule_id":      schedule.id,
                "schedule_name":    schedule.name,
                "user_id":          schedule.user_id,
                "device_id":        schedule.device_id,
                "piston_number":    schedule.piston_number,
                "action":           schedule.action,
            },
        )
        logger.info(
            f"Scheduled '{schedule.name}': {schedule.action} piston {schedule.piston_number} "
            f"on device {schedule.device_id} [{schedule.cron_expression}] next={getattr(job, 'next_run_time', None)}"
        )

    def _unregister(self, schedule_id: str) -> bool:
        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            return False
        logger.info(f"Removed schedule {schedule_id}")
        return True

    def _fire(self, schedule_id, schedule_name, user_id, device_id, piston_number, action):
        logger.info(f"Schedule '{schedule_name}' ({schedule_id}) fired: {action} piston {piston_number} on device {device_id}")
        try:
            result = self.dispatcher.control_piston(user_id, device_id, piston_number, action.lower(), source="schedule")
        except Exception:
            # the next cron occurrence is the retry
            logger.exception(f"Schedule '{schedule_name}' ({schedule_id}) failed")
            return None

        if result.ok:
            logger.info(f"Schedule '{schedule_name}' executed: {result.message}")
        else:
            logger.error(f"Schedule '{schedule_name}' ({schedule_id}) rejected: {result.error}")
        return result

    def _on_job_event(self, event):
        if event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its run time {event.scheduled_run_time}")
        elif event.exception is not None:
            logger.error(f"Job {event.job_id} raised: {event.exception}")
