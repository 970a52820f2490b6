# piston_server/app/dependencies.py

from    fastapi                             import Depends, Header, HTTPException, status

from    piston_server.config.settings       import settings
from    piston_server.services.cron         import QuartzCronEvaluator
from    piston_server.services.dispatcher   import CommandDispatcher
from    piston_server.services.errors       import Failure, Result
from    piston_server.services.ownership    import DeviceRegistry
from    piston_server.services.schedules    import ScheduleRepository
from    piston_server.services.scheduler    import SchedulerEngine
from    piston_server.services.telemetry    import TelemetryRecorder
from    .mqtt_client                        import mqtt_client_instance

# Application-wide services, wired once
registry            = DeviceRegistry()
telemetry_recorder  = TelemetryRecorder()
cron_evaluator      = QuartzCronEvaluator(settings.scheduler_timezone)
dispatcher          = CommandDispatcher(
    mqtt_client_instance,
    registry,
    piston_store    = registry.pistons,
    telemetry       = telemetry_recorder,
    use_binary      = settings.use_binary_commands,
)
schedule_repository = ScheduleRepository(cron_evaluator, registry)
scheduler_engine    = SchedulerEngine(schedule_repository, dispatcher, cron_evaluator, timezone=settings.scheduler_timezone)

mqtt_client_instance.registry = registry


def get_registry() -> DeviceRegistry:
    return registry

def get_dispatcher() -> CommandDispatcher:
    return dispatcher

def get_telemetry() -> TelemetryRecorder:
    return telemetry_recorder

def get_schedule_repository() -> ScheduleRepository:
    return schedule_repository

def get_scheduler_engine() -> SchedulerEngine:
    return scheduler_engine

def get_current_user(x_user_id: str = Header(None)) -> str:
    # The authentication layer in front of the API resolves the token and forwards the user id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return x_user_id


def require_operator(user_id: str = Depends(get_current_user)) -> str:
    """Operator-only endpoints; operators are listed in OPERATOR_USER_IDS."""
    if user_id not in settings.operator_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    return user_id


def unwrap(result: Result):
    """Success -> its value, Failure -> HTTPException with the matching status code."""
    if isinstance(result, Failure):
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return result.value
