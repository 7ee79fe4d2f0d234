""" Azure IoT Central Device Library

This library provides a client and associated models for connecting a device to an Azure IoT
Central application.
"""

from .iotc_client import IoTCClient  # noqa: F401
from .constant import (  # noqa: F401
    IOTCConnectType,
    IOTCProtocol,
    IOTCEvents,
    IOTCConnectionStatus,
    IOTCLogLevel,
    IOTCCommandResponse,
    IoTCClientState,
)
from .exceptions import (  # noqa: F401
    IoTCError,
    IoTCClientError,
    CredentialError,
    NotConnectedError,
    UnsupportedOperationError,
    CommandReplyError,
    OperationTimeoutError,
    RegistrationError,
    TransportError,
)
from .config import ProxyOptions  # noqa: F401
from .credentials import derive_device_key  # noqa: F401
from .models import X509, Command, Property, FileUploadResult  # noqa: F401
from . import models  # noqa: F401
