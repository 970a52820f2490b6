# piston_server/app/routes.py

from    typing                              import List, Optional
from    datetime                            import datetime
from    fastapi                             import APIRouter, Depends, Query, status

from    piston_server.config                import constants
from    piston_server.database.models       import (
    DeviceCreate, DeviceRead, DeviceWithPistons, PistonCommand, PistonControlResponse, PistonView,
    ScheduleCreate, ScheduleRead, ScheduleUpdate, TelemetryRead,
)
from    piston_server.services.dispatcher   import CommandDispatcher
from    piston_server.services.errors       import ErrorKind, Failure
from    piston_server.services.ownership    import DeviceRegistry
from    piston_server.services.schedules    import ScheduleRepository
from    piston_server.services.scheduler    import SchedulerEngine
from    piston_server.services.telemetry    import TelemetryRecorder
from    piston_server.utils.logger          import getLogger
from    .dependencies                       import (
    get_current_user, get_dispatcher, get_registry, get_schedule_repository, get_scheduler_engine,
    get_telemetry, require_operator, unwrap,
)

logger          = getLogger("Routes")
router          = APIRouter()

# API Endpoints

# Devices

@router.post("/devices", response_model=DeviceRead, status_code=status.HTTP_201_CREATED)
def create_device(
    payload: DeviceCreate,
    user_id: str = Depends(get_current_user),
    registry: DeviceRegistry = Depends(get_registry),
):
    logger.info(f"create device -> payload: {payload.model_dump_json()}")
    return unwrap(registry.create_device(user_id, payload))


@router.get("/devices", response_model=List[DeviceWithPistons])
def list_devices(user_id: str = Depends(get_current_user), registry: DeviceRegistry = Depends(get_registry)):
    return unwrap(registry.list_devices(user_id))


@router.get("/devices/{device_id}", response_model=DeviceWithPistons)
def get_device(device_id: str, user_id: str = Depends(get_current_user), registry: DeviceRegistry = Depends(get_registry)):
    return unwrap(registry.get_device(user_id, device_id))


# Pistons

@router.get("/devices/{device_id}/pistons", response_model=List[PistonView])
def list_pistons(device_id: str, user_id: str = Depends(get_current_user), registry: DeviceRegistry = Depends(get_registry)):
    if not registry.verify_ownership(user_id, device_id):
        unwrap(Failure(ErrorKind.NOT_FOUND, "Device not found"))
    return registry.pistons.list_pistons(device_id)


@router.post("/devices/{device_id}/pistons/{piston_number}", response_model=PistonControlResponse)
def control_piston(
    device_id: str,
    piston_number: int,
    command: PistonCommand,
    user_id: str = Depends(get_current_user),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    logger.info(f"User {user_id}: {command.action} piston {piston_number} on device {device_id}")
    result = dispatcher.control_piston(user_id, device_id, piston_number, command.action)
    piston = unwrap(result)
    return PistonControlResponse(message=result.message, piston=piston)


# Telemetry

@router.get("/telemetry", response_model=List[TelemetryRead])
def get_telemetry(
    device_id: Optional[str] = None,
    piston_number: Optional[int] = Query(None, ge=constants.MIN_PISTON_NUMBER, le=constants.MAX_PISTON_NUMBER),
    action: Optional[str] = Query(None, pattern=f"^({constants.EVENT_ACTIVATED}|{constants.EVENT_DEACTIVATED})$"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(constants.TELEMETRY_DEFAULT_LIMIT, ge=1, le=constants.TELEMETRY_MAX_LIMIT),
    user_id: str = Depends(get_current_user),
    telemetry: TelemetryRecorder = Depends(get_telemetry),
):
    return telemetry.query(
        user_id,
        device_id       = device_id,
        piston_number   = piston_number,
        event_type      = action,
        start           = start_date,
        end             = end_date,
        limit           = limit,
    )


# Schedules

@router.post("/schedules", response_model=ScheduleRead, status_code=status.HTTP_201_CREATED)
def create_schedule(
    payload: ScheduleCreate,
    user_id: str = Depends(get_current_user),
    repository: ScheduleRepository = Depends(get_schedule_repository),
    engine: SchedulerEngine = Depends(get_scheduler_engine),
):
    schedule = unwrap(repository.create(user_id, payload))
    engine.add_schedule(schedule)
    return schedule


@router.get("/schedules", response_model=List[ScheduleRead])
def list_schedules(user_id: str = Depends(get_current_user), repository: ScheduleRepository = Depends(get_schedule_repository)):
    return repository.list_by_user(user_id)


@router.post("/schedules/reload")
def reload_schedules(user_id: str = Depends(require_operator), engine: SchedulerEngine = Depends(get_scheduler_engine)):
    # resyncs every user's jobs, so operators only
    logger.info(f"Operator {user_id} requested a schedule reload")
    loaded = engine.reload_all()
    return {"message": "Schedules reloaded", "scheduled": loaded}


@router.get("/schedules/device/{device_id}", response_model=List[ScheduleRead])
def list_device_schedules(
    device_id: str,
    user_id: str = Depends(get_current_user),
    repository: ScheduleRepository = Depends(get_schedule_repository),
):
    return unwrap(repository.list_by_device(device_id, user_id))


@router.get("/schedules/{schedule_id}", response_model=ScheduleRead)
def get_schedule(schedule_id: str, user_id: str = Depends(get_current_user), repository: ScheduleRepository = Depends(get_schedule_repository)):
    return unwrap(repository.get(schedule_id, user_id))


@router.put("/schedules/{schedule_id}", response_model=ScheduleRead)
def update_schedule(
    schedule_id: str,
    payload: ScheduleUpdate,
    user_id: str = Depends(get_current_user),
    repository: ScheduleRepository = Depends(get_schedule_repository),
    engine: SchedulerEngine = Depends(get_scheduler_engine),
):
    schedule = unwrap(repository.update(schedule_id, user_id, payload))
    engine.update_schedule(schedule)
    return schedule


@router.delete("/schedules/{schedule_id}")
def delete_schedule(
    schedule_id: str,
    user_id: str = Depends(get_current_user),
    repository: ScheduleRepository = Depends(get_schedule_repository),
    engine: SchedulerEngine = Depends(get_scheduler_engine),
):
    result = repository.delete(schedule_id, user_id)
    unwrap(result)
    engine.remove_schedule(schedule_id)
    logger.info(f"Deleted schedule id {schedule_id}")
    return {"schedule_id": schedule_id, "status": "deleted", "message": result.message}
