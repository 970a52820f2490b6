# piston_server/config/constants.py

# MQTT Topics
SERVER_PUB_TOPIC                    = "PistonControl/Downlink/"
SERVER_SUB_TOPIC                    = "PistonControl/Uplink/+"
SERVER_LWT_TOPIC                    = "PistonControl/Status/+"
DEVICE_LWT_TOPIC                    = "PistonControl/Status/"
DEVICE_UPLINK_TOPIC                 = "PistonControl/Uplink/"
COMMAND_QOS                         = 1

# Pistons
MIN_PISTON_NUMBER                   = 1
MAX_PISTON_NUMBER                   = 8
PISTON_ACTIVE                       = "active"
PISTON_INACTIVE                     = "inactive"

# Commands sent to devices ("activate:3")
COMMAND_ACTIVATE                    = "activate"
COMMAND_DEACTIVATE                  = "deactivate"
BINARY_OPCODES                      = {COMMAND_ACTIVATE: 0x01, COMMAND_DEACTIVATE: 0x00}

# Schedule actions as stored in the database
SCHEDULE_ACTIONS                    = ("ACTIVATE", "DEACTIVATE")

# Telemetry
EVENT_ACTIVATED                     = "activated"
EVENT_DEACTIVATED                   = "deactivated"
TELEMETRY_DEFAULT_LIMIT             = 100
TELEMETRY_MAX_LIMIT                 = 1000

# Devices
DEVICE_OFFLINE                      = "offline"
DEVICE_ONLINE                       = "online"
