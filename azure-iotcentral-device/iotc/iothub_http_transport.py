# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import logging
from typing import List, Optional
from .exceptions import TransportError
from .transport import Transport
from .iothub_http_client import IoTHubHTTPClient
from . import config, models

logger = logging.getLogger(__name__)


class IoTHubHTTPTransport(Transport):
    """Transport to IoT Hub over HTTPS. Only supports sending telemetry.

    HTTP is connectionless, so the transport is considered connected from the time it is opened
    until it is closed.
    """

    supports_twin = False
    supports_methods = False

    def __init__(self, client_config: config.IoTHubClientConfig) -> None:
        """Instantiate the transport

        :param client_config: The config object for the transport
        :type client_config: :class:`IoTHubClientConfig`
        """
        super().__init__()
        self._client_config = client_config
        self._http_client: Optional[IoTHubHTTPClient] = None

    @property
    def connected(self) -> bool:
        return self._http_client is not None

    async def open(self) -> None:
        if self._http_client:
            logger.debug("Transport already open")
            return
        logger.debug("Opening HTTP session to IoTHub")
        self._http_client = IoTHubHTTPClient(self._client_config)
        if self.on_connected:
            await self.on_connected()

    async def close(self) -> None:
        if not self._http_client:
            logger.debug("Transport already closed")
            return
        http_client = self._http_client
        self._http_client = None
        try:
            await http_client.shutdown()
        finally:
            if self._client_config.sastoken_provider:
                await self._client_config.sastoken_provider.shutdown()

    async def send_event(self, message: models.Message) -> None:
        await self._get_http_client().send_message(message)

    async def send_event_batch(self, messages: List[models.Message]) -> None:
        if not messages:
            return
        await self._get_http_client().send_messages(messages)

    def _get_http_client(self) -> IoTHubHTTPClient:
        if not self._http_client:
            raise TransportError("HTTP session to IoT Hub is not open")
        return self._http_client
