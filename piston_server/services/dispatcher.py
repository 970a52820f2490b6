# piston_server/services/dispatcher.py
"""
Command dispatch for pistons.

control_piston() is the single path by which a piston changes state, used by
the HTTP API and by scheduled fires alike:

    validate -> verify ownership -> publish "<action>:<n>" -> upsert piston -> append telemetry

Publishing is fire-and-forget. The device never acknowledges a command, so
the stored piston state is the last *commanded* state, which can drift from
the physical one if the broker drops the message. Only a transport that
raises synchronously stops the database writes.
"""

import  threading
from    datetime                        import datetime
from    typing                          import Dict

from    piston_server.config            import constants
from    piston_server.database.db       import session_scope
from    piston_server.database.models   import PistonSnapshot
from    piston_server.services.errors   import ErrorKind, Failure, Result, Success
from    piston_server.services.ownership import DeviceRegistry
from    piston_server.services.pistons  import PistonStore
from    piston_server.services.telemetry import TelemetryRecorder
from    piston_server.utils.logger      import getLogger

logger = getLogger("Dispatcher")

COMMAND_STATES = {
    constants.COMMAND_ACTIVATE:     (constants.PISTON_ACTIVE,   constants.EVENT_ACTIVATED),
    constants.COMMAND_DEACTIVATE:   (constants.PISTON_INACTIVE, constants.EVENT_DEACTIVATED),
}


class DeviceLocks:
    """One lock per device id, created on first use."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    def for_device(self, device_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = self._locks[device_id] = threading.Lock()
            return lock


def build_command(action: str, piston_number: int) -> str:
    return f"{action}:{piston_number}"


class CommandDispatcher:

    def __init__(
        self,
        transport,
        registry: DeviceRegistry,
        session_factory=None,
        piston_store: PistonStore = None,
        telemetry: TelemetryRecorder = None,
        use_binary: bool = True,
        clock=datetime.utcnow,
    ):
        self.transport          = transport
        self.registry           = registry
        self.session_factory    = session_factory
        self.pistons            = piston_store or PistonStore(session_factory)
        self.telemetry          = telemetry or TelemetryRecorder(session_factory)
        self.use_binary         = use_binary
        self.clock              = clock
        self.locks              = DeviceLocks()

    def control_piston(self, owner_id: str, device_id: str, piston_number: int, action: str, source: str = "manual") -> Result:
        if isinstance(piston_number, bool) or not isinstance(piston_number, int) \
                or not constants.MIN_PISTON_NUMBER <= piston_number <= constants.MAX_PISTON_NUMBER:
            return Failure(ErrorKind.INVALID_PISTON_NUMBER, "Invalid piston number. Must be between 1 and 8")

        if action not in COMMAND_STATES:
            return Failure(ErrorKind.INVALID_ACTION, "Invalid action. Must be 'activate' or 'deactivate'")

        state, event_type = COMMAND_STATES[action]

        # locks exist only for owned devices, so unknown ids cannot grow the table
        if not self.registry.verify_ownership(owner_id, device_id):
            logger.warning(f"User {owner_id} tried to {action} piston {piston_number} on device {device_id} it does not own")
            return Failure(ErrorKind.NOT_FOUND, "Device not found")

        # verify, publish and persist as one unit per device
        with self.locks.for_device(device_id):
            if not self.registry.verify_ownership(owner_id, device_id):
                return Failure(ErrorKind.NOT_FOUND, "Device not found")

            command = build_command(action, piston_number)
            try:
                self.transport.publish_command(device_id, command, use_binary=self.use_binary)
            except Exception as e:
                logger.error(f"Failed to publish '{command}' to device {device_id}: {e}")
                return Failure(ErrorKind.TRANSPORT, f"Failed to send command to device: {e}")

            now = self.clock()
            with session_scope(self.session_factory) as session:
                piston = self.pistons.upsert(session, device_id, piston_number, state, now)
                self.telemetry.append(session, device_id, piston.id, event_type, piston_number, now, source=source)
                snapshot = PistonSnapshot(
                    id              = piston.id,
                    piston_number   = piston_number,
                    state           = state,
                    last_triggered  = now,
                )

        logger.info(f"[{source}] device {device_id} piston {piston_number} -> {state}")
        return Success(snapshot, message=f"Piston {event_type}")
