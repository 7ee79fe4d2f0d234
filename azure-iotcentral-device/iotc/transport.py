# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines the contract between the IoT Central client and the transports that
carry its traffic to and from IoT Hub"""

import abc
import logging
from typing import Awaitable, Callable, List, Optional
from .custom_typing import Twin, TwinPatch
from .exceptions import UnsupportedOperationError
from . import models

logger = logging.getLogger(__name__)

ConnectedHandler = Callable[[], Awaitable[None]]
DisconnectedHandler = Callable[[Optional[Exception]], Awaitable[None]]
MethodRequestHandler = Callable[[models.DirectMethodRequest], Awaitable[None]]
TwinPatchHandler = Callable[[TwinPatch], Awaitable[None]]


class Transport(abc.ABC):
    """A connection to the IoT Hub a device was assigned to.

    Handlers are set by the owner of the transport and are invoked on the event loop, in the
    order events arrive:

    - on_connected(): The connection has been established
    - on_disconnected(cause): The connection was lost. Cause is None if the loss was requested
    - on_method_request(request): A DirectMethodRequest was received
    - on_twin_patch(patch): A desired properties patch was received

    All failures of the underlying protocol are raised as TransportError.
    """

    # Indicates whether device twin operations are available
    supports_twin = True
    # Indicates whether methods (commands) are available
    supports_methods = True

    def __init__(self) -> None:
        self.on_connected: Optional[ConnectedHandler] = None
        self.on_disconnected: Optional[DisconnectedHandler] = None
        self.on_method_request: Optional[MethodRequestHandler] = None
        self.on_twin_patch: Optional[TwinPatchHandler] = None

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        """True if the transport currently has an established connection"""
        pass

    @abc.abstractmethod
    async def open(self) -> None:
        """Establish the connection to IoT Hub

        :raises: TransportError if the connection cannot be established
        """
        pass

    @abc.abstractmethod
    async def close(self) -> None:
        """End the connection to IoT Hub. Does nothing if already closed."""
        pass

    @abc.abstractmethod
    async def send_event(self, message: models.Message) -> None:
        """Send a telemetry message

        :raises: TransportError if the message could not be sent
        """
        pass

    async def send_event_batch(self, messages: List[models.Message]) -> None:
        """Send telemetry messages in the order given

        :raises: TransportError if a message could not be sent. Messages following the failed
            one are not sent.
        """
        for message in messages:
            await self.send_event(message)

    async def get_twin(self) -> Twin:
        """Retrieve the full device twin

        :raises: TransportError if the twin could not be retrieved
        :raises: UnsupportedOperationError if the transport does not support twin operations
        """
        raise UnsupportedOperationError(
            "Device twin is not supported by {}".format(type(self).__name__)
        )

    async def update_reported_properties(self, patch: TwinPatch) -> None:
        """Update the reported properties of the device twin

        :raises: TransportError if the patch could not be sent or was rejected
        :raises: UnsupportedOperationError if the transport does not support twin operations
        """
        raise UnsupportedOperationError(
            "Device twin is not supported by {}".format(type(self).__name__)
        )

    async def enable_twin_patches(self) -> None:
        """Begin receiving desired property patches via .on_twin_patch

        :raises: TransportError if receiving could not be enabled
        :raises: UnsupportedOperationError if the transport does not support twin operations
        """
        raise UnsupportedOperationError(
            "Device twin is not supported by {}".format(type(self).__name__)
        )

    async def enable_methods(self) -> None:
        """Begin receiving method requests via .on_method_request

        :raises: TransportError if receiving could not be enabled
        :raises: UnsupportedOperationError if the transport does not support methods
        """
        raise UnsupportedOperationError(
            "Commands are not supported by {}".format(type(self).__name__)
        )

    async def send_method_response(self, method_response: models.DirectMethodResponse) -> None:
        """Send the response to a method request

        :raises: TransportError if the response could not be sent
        :raises: UnsupportedOperationError if the transport does not support methods
        """
        raise UnsupportedOperationError(
            "Commands are not supported by {}".format(type(self).__name__)
        )
