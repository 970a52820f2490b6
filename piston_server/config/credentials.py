# piston_server/config/credentials.py

import  os
from    dotenv import load_dotenv

load_dotenv("variables.env")                                            # load variables from .env file

ROOT_CA                     = os.getenv("MQTT_ROOT_CA", os.path.join("certs", "ca.crt"))
CLIENT_CERT                 = os.getenv("MQTT_CLIENT_CERT", os.path.join("certs", "client.crt"))
PRIVATE_KEY                 = os.getenv("MQTT_PRIVATE_KEY", os.path.join("certs", "client.key"))

MQTT_USERNAME               = os.getenv("MQTT_USERNAME") or None
MQTT_PASSWORD               = os.getenv("MQTT_PASSWORD") or None
