# piston_server/database/models.py

import  uuid
from    typing      import List, Optional
from    datetime    import datetime
from    sqlalchemy  import UniqueConstraint
from    sqlmodel    import SQLModel, Field, Column, JSON


def new_id() -> str:
    return str(uuid.uuid4())


class Device(SQLModel, table=True):
    id:                             str = Field(default_factory=new_id, primary_key=True)
    name:                           str = Field(nullable=False)
    owner_id:                       str = Field(nullable=False, index=True)
    mqtt_client_id:                 str = Field(nullable=False, unique=True)
    status:                         str = Field(default="offline")
    created_at: datetime =          Field(default_factory=datetime.utcnow)
    updated_at: datetime =          Field(default_factory=datetime.utcnow)


class Piston(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("device_id", "piston_number", name="uq_piston_device_number"),)

    id:                             str = Field(default_factory=new_id, primary_key=True)
    device_id:                      str = Field(foreign_key="device.id", index=True)
    piston_number:                  int = Field(nullable=False)
    state:                          str = Field(default="inactive")
    last_triggered:                 Optional[datetime] = None


class TelemetryEvent(SQLModel, table=True):
    id:                             Optional[int] = Field(default=None, primary_key=True)
    device_id:                      str = Field(index=True)
    piston_id:                      Optional[str] = Field(default=None, index=True)
    event_type:                     str = Field(nullable=False)                     # activated | deactivated
    payload:                        dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime =          Field(default_factory=datetime.utcnow, index=True)


class Schedule(SQLModel, table=True):
    id:                             str = Field(default_factory=new_id, primary_key=True)
    name:                           str = Field(nullable=False)
    device_id:                      str = Field(index=True)
    piston_number:                  int = Field(nullable=False)
    action:                         str = Field(nullable=False)                     # ACTIVATE | DEACTIVATE
    cron_expression:                str = Field(nullable=False)
    enabled:                        bool = Field(default=True, index=True)
    user_id:                        str = Field(index=True)
    created_at: datetime =          Field(default_factory=datetime.utcnow)
    updated_at: datetime =          Field(default_factory=datetime.utcnow)


# Pydantic Schemas (used in routes)
class DeviceCreate(SQLModel):
    name: str
    mqtt_client_id: str


class DeviceRead(SQLModel):
    id: str
    name: str
    mqtt_client_id: str
    status: str
    created_at: datetime


class PistonView(SQLModel):
    piston_number: int
    state: str
    last_triggered: Optional[datetime] = None


class DeviceWithPistons(DeviceRead):
    pistons: List[PistonView] = []


class PistonCommand(SQLModel):
    action: str                                                                     # activate | deactivate


class PistonSnapshot(SQLModel):
    id: str
    piston_number: int
    state: str
    last_triggered: datetime


class PistonControlResponse(SQLModel):
    message: str
    piston: PistonSnapshot


class TelemetryRead(SQLModel):
    id: int
    device_id: str
    piston_id: Optional[str]
    event_type: str
    payload: dict
    created_at: datetime


class ScheduleCreate(SQLModel):
    name: str
    device_id: str
    piston_number: int
    action: str
    cron_expression: str
    enabled: bool = True


class ScheduleUpdate(SQLModel):
    name: Optional[str] = None
    piston_number: Optional[int] = None
    action: Optional[str] = None
    cron_expression: Optional[str] = None
    enabled: Optional[bool] = None


class ScheduleRead(SQLModel):
    id: str
    name: str
    device_id: str
    piston_number: int
    action: str
    cron_expression: str
    enabled: bool
    user_id: str
    created_at: datetime
    updated_at: datetime
