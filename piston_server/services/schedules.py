# piston_server/services/schedules.py

from    datetime                        import datetime, timezone
from    typing                          import Callable, List, Optional
from    sqlmodel                        import select

from    piston_server.config            import constants
from    piston_server.database.db       import session_scope
from    piston_server.database.models   import Schedule, ScheduleCreate, ScheduleRead, ScheduleUpdate
from    piston_server.services.cron     import CronEvaluator
from    piston_server.services.errors   import ErrorKind, Failure, Result, Success
from    piston_server.services.ownership import DeviceRegistry
from    piston_server.utils.logger      import getLogger

logger = getLogger("Schedules")

NOT_FOUND = "Schedule not found"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleRepository:
    """
    CRUD over schedule definitions.

    Every write runs the same validation pipeline, stopping at the first
    failure: action, piston number, cron syntax, and finally whether the
    cron expression will ever fire again. Schedules that belong to another
    user are reported as missing.
    """

    def __init__(self, cron: CronEvaluator, registry: DeviceRegistry, session_factory=None, clock: Callable[[], datetime] = _utcnow):
        self.cron               = cron
        self.registry           = registry
        self.session_factory    = session_factory
        self.clock              = clock

    def validate(self, action=None, piston_number=None, cron_expression=None) -> Optional[Failure]:
        """Check only the fields that were supplied; None means "not supplied"."""
        if action is not None and action not in constants.SCHEDULE_ACTIONS:
            return Failure(ErrorKind.INVALID_ACTION, "Invalid action. Must be ACTIVATE or DEACTIVATE")

        if piston_number is not None and not constants.MIN_PISTON_NUMBER <= piston_number <= constants.MAX_PISTON_NUMBER:
            return Failure(ErrorKind.INVALID_PISTON_NUMBER, "Invalid piston number. Must be between 1 and 8")

        if cron_expression is not None:
            if not self.cron.is_valid(cron_expression):
                return Failure(ErrorKind.INVALID_CRON_SYNTAX, f"Invalid cron expression: {cron_expression}")
            if self.cron.next_fire_after(cron_expression, self.clock()) is None:
                return Failure(ErrorKind.CRON_NEVER_FIRES, f"Cron expression will never fire: {cron_expression}")

        return None

    def create(self, user_id: str, payload: ScheduleCreate) -> Result:
        failure = self.validate(payload.action, payload.piston_number, payload.cron_expression)
        if failure:
            logger.warning(f"Rejected schedule '{payload.name}': {failure.error}")
            return failure

        if not self.registry.verify_ownership(user_id, payload.device_id):
            return Failure(ErrorKind.NOT_FOUND, "Device not found")

        with session_scope(self.session_factory) as session:
            now = datetime.utcnow()
            schedule = Schedule(**payload.model_dump(), user_id=user_id, created_at=now, updated_at=now)
            session.add(schedule)
            session.flush()
            created = ScheduleRead.model_validate(schedule)

        logger.info(f"Created schedule {created.id} for device {created.device_id}")
        return Success(created)

    def update(self, schedule_id: str, user_id: str, payload: ScheduleUpdate) -> Result:
        changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}

        failure = self.validate(changes.get("action"), changes.get("piston_number"), changes.get("cron_expression"))
        if failure:
            logger.warning(f"Rejected update of schedule {schedule_id}: {failure.error}")
            return failure

        with session_scope(self.session_factory) as session:
            schedule = self._owned(session, schedule_id, user_id)
            if schedule is None:
                return Failure(ErrorKind.NOT_FOUND, NOT_FOUND)

            for field, value in changes.items():
                setattr(schedule, field, value)
            schedule.updated_at = datetime.utcnow()
            session.add(schedule)
            session.flush()
            updated = ScheduleRead.model_validate(schedule)

        logger.info(f"Updated schedule {schedule_id}: {sorted(changes)}")
        return Success(updated)

    def delete(self, schedule_id: str, user_id: str) -> Result:
        with session_scope(self.session_factory) as session:
            schedule = self._owned(session, schedule_id, user_id)
            if schedule is None:
                return Failure(ErrorKind.NOT_FOUND, NOT_FOUND)
            deleted = ScheduleRead.model_validate(schedule)
            session.delete(schedule)

        logger.info(f"Deleted schedule {schedule_id}")
        return Success(deleted, message="Schedule deleted successfully")

    def get(self, schedule_id: str, user_id: str) -> Result:
        with session_scope(self.session_factory) as session:
            schedule = self._owned(session, schedule_id, user_id)
            if schedule is None:
                return Failure(ErrorKind.NOT_FOUND, NOT_FOUND)
            return Success(ScheduleRead.model_validate(schedule))

    def find(self, schedule_id: str) -> Optional[ScheduleRead]:
        """Current row regardless of owner, or None once deleted."""
        with session_scope(self.session_factory) as session:
            schedule = session.get(Schedule, schedule_id)
            return ScheduleRead.model_validate(schedule) if schedule else None

    def list_by_user(self, user_id: str) -> List[ScheduleRead]:
        return self._list(Schedule.user_id == user_id)

    def list_by_device(self, device_id: str, user_id: str) -> Result:
        if not self.registry.verify_ownership(user_id, device_id):
            return Failure(ErrorKind.NOT_FOUND, "Device not found")
        return Success(self._list(Schedule.device_id == device_id))

    def list_enabled(self) -> List[ScheduleRead]:
        return self._list(Schedule.enabled == True)  # noqa: E712

    def _list(self, condition) -> List[ScheduleRead]:
        with session_scope(self.session_factory) as session:
            rows = session.exec(select(Schedule).where(condition).order_by(Schedule.created_at.desc())).all()
            return [ScheduleRead.model_validate(row) for row in rows]

    @staticmethod
    def _owned(session, schedule_id: str, user_id: str) -> Optional[Schedule]:
        schedule = session.get(Schedule, schedule_id)
        if schedule is None or schedule.user_id != user_id:
            return None
        return schedule
