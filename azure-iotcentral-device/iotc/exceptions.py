# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Define IoT Central user-facing exceptions to be shared across package"""
from typing import Optional, Union


class IoTCError(Exception):
    """Base class for failures raised by the IoT Central client"""

    pass


# Client Exceptions
class IoTCClientError(IoTCError):
    """Represents misuse of the client lifecycle (e.g. connecting twice)"""

    pass


class CredentialError(IoTCError):
    """Represents a failure from an invalid auth credential"""

    pass


class NotConnectedError(IoTCError):
    """Represents an operation attempted while the client is not connected"""

    pass


class UnsupportedOperationError(IoTCError):
    """Represents an operation that is not available with the current protocol"""

    pass


class CommandReplyError(IoTCError):
    """Represents an attempt to reply to a command more than once"""

    pass


# NOTE: This is also a TimeoutError so that callers expecting the builtin are satisfied
class OperationTimeoutError(IoTCError, TimeoutError):
    """Represents an operation that did not complete within the allotted time"""

    pass


# Service Exceptions
class RegistrationError(IoTCError):
    """Represents a failure reported by the Device Provisioning Service

    :ivar code: The error code reported by the service (or HTTP status if none was reported)
    :ivar str message: The error message reported by the service
    """

    def __init__(self, code: Optional[Union[int, str]], message: str) -> None:
        self.code = code
        self.message = message
        super().__init__("Registration failed ({}): {}".format(code, message))


class TransportError(IoTCError):
    """Represents a failure in the Transport used to communicate with IoT Hub"""

    pass
