# piston_server/services/errors.py

from    enum        import Enum
from    dataclasses import dataclass
from    typing      import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_ACTION          = "invalid_action"
    INVALID_PISTON_NUMBER   = "invalid_piston_number"
    INVALID_CRON_SYNTAX     = "invalid_cron_syntax"
    CRON_NEVER_FIRES        = "cron_never_fires"
    NOT_FOUND               = "not_found"
    CONFLICT                = "conflict"
    TRANSPORT               = "transport"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]

    @property
    def is_validation(self) -> bool:
        return self.status_code == 400


_STATUS_CODES = {
    ErrorKind.INVALID_ACTION:           400,
    ErrorKind.INVALID_PISTON_NUMBER:    400,
    ErrorKind.INVALID_CRON_SYNTAX:      400,
    ErrorKind.CRON_NEVER_FIRES:         400,
    ErrorKind.NOT_FOUND:                404,
    ErrorKind.CONFLICT:                 409,
    ErrorKind.TRANSPORT:                502,
}


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    message: str = ""

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    error: str

    @property
    def ok(self) -> bool:
        return False

    @property
    def status_code(self) -> int:
        return self.kind.status_code


Result = Union[Success[Any], Failure]


class TransportUnavailable(RuntimeError):
    """The MQTT client was never started or has been stopped."""


class PersistenceError(RuntimeError):
    """A database operation failed; surfaced to callers as an internal error."""
