# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines constants and enumerations for use across the azure-iotcentral-device
package
"""
import enum
from typing import Type, TypeVar, Any

VERSION = "1.0.0"
IOTC_IDENTIFIER = "azure-iotcentral-device-py"
IOTHUB_API_VERSION = "2020-09-30"
PROVISIONING_API_VERSION = "2018-09-01-preview"
PROVISIONING_GLOBAL_ENDPOINT = "global.azure-devices-provisioning.net"

# Key name used when signing a registration request with a symmetric key
PROVISIONING_SAS_KEY_NAME = "registration"
# Lifetime of the SAS token used for a registration request (6 hours)
DEFAULT_EXPIRATION_SECONDS = 21600
# Lifetime of the SAS tokens used to authenticate with the assigned hub
IOTHUB_SASTOKEN_TTL = 3600
DEFAULT_POLLING_INTERVAL = 2

TELEMETRY_MESSAGE_SIZE_LIMIT = 262144

# Application properties with meaning to IoT Central
CREATION_TIME_PROPERTY = "iothub-creation-time-utc"
MESSAGE_SCHEMA_PROPERTY = "iothub-message-schema"
COMMAND_NAME_PROPERTY = "iothub-command-name"
COMMAND_REQUEST_ID_PROPERTY = "iothub-command-request-id"
COMMAND_STATUS_CODE_PROPERTY = "iothub-command-statuscode"
ASYNC_COMMAND_RESULT_SCHEMA = "asyncResult"

# Status codes used when acknowledging commands and writable properties
STATUS_SUCCESS = 200
STATUS_ACCEPTED = 202
STATUS_ERROR = 500

DIGITAL_TWIN_QUERY_HEADER = "model-id"


class IOTCConnectType(enum.Enum):
    """Type of credential used to authenticate the device"""

    SYMM_KEY = "SYMM_KEY"  # Group enrollment key, device key is derived from it
    X509_CERT = "X509_CERT"
    DEVICE_KEY = "DEVICE_KEY"
    CONN_STRING = "CONN_STRING"


class IOTCProtocol(enum.Enum):
    HTTP = "HTTP"
    MQTT = "MQTT"
    AMQP = "AMQP"
    MQTT_WS = "MQTT_WS"
    AMQP_WS = "AMQP_WS"


class IOTCEvents(enum.Enum):
    PROPERTIES = "Properties"
    COMMANDS = "Commands"
    CONNECTION_STATUS = "ConnectionStatus"


class IOTCConnectionStatus(enum.Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class IOTCLogLevel(enum.Enum):
    DISABLED = "DISABLED"
    API_ONLY = "API_ONLY"
    ALL = "ALL"


class IOTCCommandResponse(enum.Enum):
    SUCCESS = STATUS_SUCCESS
    ERROR = STATUS_ERROR


class IoTCClientState(enum.Enum):
    CREATED = "CREATED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


_E = TypeVar("_E", bound=enum.Enum)


def parse_enum(enum_cls: Type[_E], value: Any) -> _E:
    """Return the member of an enumeration matching a given member, value or name.

    Names are matched case-insensitively.

    :raises: ValueError if the value does not correspond to a member of the enumeration
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()]
        except KeyError:
            pass
    raise ValueError("Invalid {}: {}".format(enum_cls.__name__, value))
