# piston_server/config/settings.py

import  os
from    typing      import List, Optional
from    pydantic    import BaseModel

from    .           import credentials                                  # loads variables.env before the reads below


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url:           str = os.getenv("DATABASE_URL", "sqlite:///" + os.path.join(os.getcwd(), "devices.db"))

    mqtt_broker:            str = os.getenv("MQTT_BROKER", "localhost")
    mqtt_port:              int = int(os.getenv("MQTT_PORT", "8883"))
    mqtt_keepalive:         int = int(os.getenv("MQTT_KEEPALIVE", "60"))
    mqtt_client_id:         str = os.getenv("MQTT_CLIENT_ID", "piston-control-server")
    mqtt_username:          Optional[str] = credentials.MQTT_USERNAME
    mqtt_password:          Optional[str] = credentials.MQTT_PASSWORD
    mqtt_use_tls:           bool = _flag("MQTT_USE_TLS", "1")

    command_encoding:       str = os.getenv("COMMAND_ENCODING", "binary")            # binary | plain
    scheduler_timezone:     str = os.getenv("SCHEDULER_TIMEZONE", "UTC")
    log_level:              str = os.getenv("LOG_LEVEL", "INFO").upper()
    operator_ids:           List[str] = [u.strip() for u in os.getenv("OPERATOR_USER_IDS", "").split(",") if u.strip()]

    @property
    def use_binary_commands(self) -> bool:
        return self.command_encoding.lower() == "binary"


settings = Settings()
