# piston_server/app/mqtt_client.py

import  os
import  json
from    paho.mqtt                       import client as mqtt_client
from    piston_server.config            import constants, credentials
from    piston_server.config.settings   import settings
from    piston_server.services.errors   import TransportUnavailable
from    piston_server.utils.logger      import getLogger

logger      = getLogger("MQTTClient")

base_dir    = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def encode_command(command: str, use_binary: bool) -> bytes:
    """
    "activate:3" -> b"activate:3" (plain) or b"\\x01\\x03" (binary: opcode, piston number).
    """
    if not use_binary:
        return command.encode("utf-8")
    action, _, number = command.partition(":")
    if action not in constants.BINARY_OPCODES or not number.isdigit():
        raise ValueError(f"Cannot encode command '{command}'")
    return bytes([constants.BINARY_OPCODES[action], int(number)])


class MQTTClient:
    """
    Messaging transport between the server and the piston controllers.

    Commands are published on PistonControl/Downlink/<device_id> and never
    acknowledged. Devices report online/offline on PistonControl/Status/<device_id>
    (their last will is the offline message).
    """

    def __init__(self, registry=None):
        self.client     = None
        self.registry   = registry
        self.connected  = False

    def _build_client(self):
        client = mqtt_client.Client(
            callback_api_version    = mqtt_client.CallbackAPIVersion.VERSION2,
            client_id               = settings.mqtt_client_id,
        )
        if settings.mqtt_use_tls:
            client.tls_set(
                ca_certs    = os.path.join(base_dir, credentials.ROOT_CA),
                certfile    = os.path.join(base_dir, credentials.CLIENT_CERT),
                keyfile     = os.path.join(base_dir, credentials.PRIVATE_KEY),
            )
        if settings.mqtt_username and settings.mqtt_password:
            client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.on_connect       = self.on_connect
        client.on_disconnect    = self.on_disconnect
        client.on_message       = self.on_message
        return client

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            self.connected = True
            logger.info("Connected to MQTT Broker!")
            client.subscribe(constants.SERVER_SUB_TOPIC)
            logger.info(f"Subscribed to uplink topic: {constants.SERVER_SUB_TOPIC}")
            client.subscribe(constants.SERVER_LWT_TOPIC)
            logger.info(f"Subscribed to lwt topic: {constants.SERVER_LWT_TOPIC}")
        else:
            logger.error(f"Failed to connect, reason code {reason_code}")

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False
        logger.warning(f"Disconnected from MQTT Broker (reason {reason_code}), reconnecting...")

    def on_message(self, client, userdata, msg):
        # Called from paho's network thread
        topic = msg.topic
        payload = msg.payload.decode(errors="replace")
        logger.info(f"Received message on topic {topic}: {payload}")

        if topic.startswith(constants.DEVICE_LWT_TOPIC):
            self.handle_status_message(topic[len(constants.DEVICE_LWT_TOPIC):], payload)

        if topic.startswith(constants.DEVICE_UPLINK_TOPIC):
            self.handle_uplink_message(topic[len(constants.DEVICE_UPLINK_TOPIC):], payload)

    def handle_status_message(self, device_id: str, payload: str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            data = {"status": payload.strip().lower()}

        status = data.get("status") if isinstance(data, dict) else None
        if status not in (constants.DEVICE_ONLINE, constants.DEVICE_OFFLINE):
            logger.warning(f"Ignoring status message from {device_id}: {payload}")
            return
        if self.registry is None:
            return
        try:
            self.registry.set_status(device_id, status)
        except Exception as e:
            logger.error(f"Error updating device {device_id} status: {e}")

    def handle_uplink_message(self, device_id: str, payload: str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            data = {"message": payload}

        message = str(data.get("message", "")).lower() if isinstance(data, dict) else ""
        if message in ("hello", "greetings") and self.registry is not None:
            logger.info(f"Device {device_id} connected")
            try:
                self.registry.set_status(device_id, constants.DEVICE_ONLINE)
            except Exception as e:
                logger.error(f"Error updating device {device_id} status: {e}")

    def publish_command(self, device_key: str, command: str, use_binary: bool = True):
        """
        Fire-and-forget. Raises TransportUnavailable when the client is not
        running; a failed publish is only logged.
        """
        if self.client is None:
            raise TransportUnavailable("MQTT client is not running")

        downlink_topic = constants.SERVER_PUB_TOPIC + device_key
        result = self.client.publish(downlink_topic, encode_command(command, use_binary), qos=constants.COMMAND_QOS)
        if result.rc == mqtt_client.MQTT_ERR_SUCCESS:
            logger.info(f"Sent command to device {device_key} on topic {downlink_topic}: {command}")
        else:
            logger.error(f"Failed to send command '{command}' to topic {downlink_topic} (rc={result.rc})")
        return result

    def start(self):
        logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker}:{settings.mqtt_port}")
        self.client = self._build_client()
        # connect_async lets the API come up while the broker is unreachable
        self.client.connect_async(settings.mqtt_broker, settings.mqtt_port, settings.mqtt_keepalive)
        # Run the MQTT network loop in the background.
        self.client.loop_start()
        logger.info("MQTT client started successfully")

    def stop(self):
        if self.client is None:
            return
        self.client.loop_stop()
        self.client.disconnect()
        self.client = None
        self.connected = False
        logger.info("MQTT client stopped")


mqtt_client_instance = MQTTClient()                                                 # Create a single instance that can be imported elsewhere
