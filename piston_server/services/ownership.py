# piston_server/services/ownership.py

from    datetime                        import datetime
from    typing                          import Optional
from    sqlalchemy.exc                  import IntegrityError
from    sqlmodel                        import select

from    piston_server.config            import constants
from    piston_server.database.db       import session_scope
from    piston_server.database.models   import Device, DeviceCreate, DeviceRead, DeviceWithPistons
from    piston_server.services.errors   import ErrorKind, Failure, Result, Success
from    piston_server.services.pistons  import PistonStore
from    piston_server.utils.logger      import getLogger

logger = getLogger("DeviceRegistry")


class DeviceRegistry:
    """Devices and their owners. Every device belongs to exactly one user."""

    def __init__(self, session_factory=None, piston_store: PistonStore = None):
        self.session_factory = session_factory
        self.pistons = piston_store or PistonStore(session_factory)

    def owner_of(self, device_id: str) -> Optional[str]:
        with session_scope(self.session_factory) as session:
            device = session.get(Device, device_id)
            return device.owner_id if device else None

    def verify_ownership(self, owner_id: str, device_id: str) -> bool:
        """True iff the device exists and belongs to owner_id."""
        owner = self.owner_of(device_id)
        return owner is not None and owner == owner_id

    def create_device(self, owner_id: str, payload: DeviceCreate) -> Result:
        try:
            with session_scope(self.session_factory) as session:
                existing = session.exec(
                    select(Device).where(Device.mqtt_client_id == payload.mqtt_client_id)
                ).first()
                if existing:
                    return Failure(ErrorKind.CONFLICT, "Device with this MQTT client ID already exists")

                device = Device(
                    name            = payload.name,
                    owner_id        = owner_id,
                    mqtt_client_id  = payload.mqtt_client_id,
                    status          = constants.DEVICE_OFFLINE,
                )
                session.add(device)
                session.flush()
                created = DeviceRead.model_validate(device)
        except IntegrityError:
            # lost a race with a concurrent create of the same client id
            return Failure(ErrorKind.CONFLICT, "Device with this MQTT client ID already exists")

        logger.info(f"Created device {created.id} ({created.mqtt_client_id}) for user {owner_id}")
        return Success(created)

    def list_devices(self, owner_id: str) -> Result:
        with session_scope(self.session_factory) as session:
            devices = session.exec(
                select(Device).where(Device.owner_id == owner_id).order_by(Device.created_at)
            ).all()
            reads = [DeviceRead.model_validate(d) for d in devices]
        return Success([self._with_pistons(d) for d in reads])

    def get_device(self, owner_id: str, device_id: str) -> Result:
        with session_scope(self.session_factory) as session:
            device = session.get(Device, device_id)
            if device is None or device.owner_id != owner_id:
                return Failure(ErrorKind.NOT_FOUND, "Device not found")
            read = DeviceRead.model_validate(device)
        return Success(self._with_pistons(read))

    def set_status(self, device_id: str, status: str) -> bool:
        with session_scope(self.session_factory) as session:
            device = session.get(Device, device_id)
            if device is None:
                logger.warning(f"Status '{status}' for unknown device {device_id}")
                return False
            device.status = status
            device.updated_at = datetime.utcnow()
            session.add(device)
        logger.info(f"Updated device {device_id} status to {status}")
        return True

    def _with_pistons(self, device: DeviceRead) -> DeviceWithPistons:
        return DeviceWithPistons(**device.model_dump(), pistons=self.pistons.list_pistons(device.id))
