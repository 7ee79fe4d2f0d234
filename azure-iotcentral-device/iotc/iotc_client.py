# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the client used by devices to communicate with IoT Central"""

import asyncio
import datetime
import functools
import logging
from types import TracebackType
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, Union
import deprecation
from .custom_typing import JSONSerializable, TwinPatch
from .exceptions import (
    CredentialError,
    IoTCClientError,
    NotConnectedError,
    OperationTimeoutError,
    TransportError,
    UnsupportedOperationError,
)
from .dispatcher import EventCallback, EventDispatcher
from .iothub_http_client import IoTHubHTTPClient
from .iothub_http_transport import IoTHubHTTPTransport
from .iothub_mqtt_transport import IoTHubMQTTTransport
from .provisioning import ProvisioningOrchestrator
from .transport import Transport
from .twin import TwinState, TwinSynchronizer
from . import config, constant, credentials, models
from . import connection_string as cs
from . import sastoken as st
from . import signing_mechanism as sm

logger = logging.getLogger(__name__)

PACKAGE_LOGGER_NAME = "iotc"

TransportFactory = Callable[
    [
        constant.IOTCProtocol,
        str,
        credentials.Credential,
        Optional[str],
        Optional[config.ProxyOptions],
    ],
    Awaitable[Transport],
]


async def create_client_config(
    protocol: constant.IOTCProtocol,
    connection_string: str,
    credential: credentials.Credential,
    model_id: Optional[str] = None,
    proxy_options: Optional[config.ProxyOptions] = None,
) -> config.IoTHubClientConfig:
    """Create the config for communicating with the hub described by a connection string.

    :raises: CredentialError if the connection string uses an unsupported authentication scheme
    """
    connection_string_obj = cs.ConnectionString(connection_string)
    hostname = connection_string_obj[cs.HOST_NAME]
    device_id = connection_string_obj[cs.DEVICE_ID]

    if connection_string_obj.get(cs.SHARED_ACCESS_SIGNATURE):
        raise CredentialError(
            "Connection strings containing a SharedAccessSignature are not supported"
        )

    ssl_context = credentials.create_ssl_context(credential)

    sastoken_provider = None
    shared_access_key = connection_string_obj.get(cs.SHARED_ACCESS_KEY)
    if shared_access_key:
        generator = st.SasTokenGenerator(
            signing_mechanism=sm.SymmetricKeySigningMechanism(shared_access_key),
            uri=_format_sas_uri(hostname, device_id),
            ttl=constant.IOTHUB_SASTOKEN_TTL,
        )
        sastoken_provider = await st.SasTokenProvider.create_from_generator(generator)

    return config.IoTHubClientConfig(
        device_id=device_id,
        model_id=model_id,
        hostname=hostname,
        ssl_context=ssl_context,
        sastoken_provider=sastoken_provider,
        proxy_options=proxy_options,
        websockets=protocol is constant.IOTCProtocol.MQTT_WS,
    )


async def create_transport(
    protocol: constant.IOTCProtocol,
    connection_string: str,
    credential: credentials.Credential,
    model_id: Optional[str] = None,
    proxy_options: Optional[config.ProxyOptions] = None,
) -> Transport:
    """Create the Transport for a protocol.

    :raises: UnsupportedOperationError if there is no Transport for the protocol
    :raises: CredentialError if the credential cannot be used
    """
    protocol = constant.parse_enum(constant.IOTCProtocol, protocol)
    if protocol in (constant.IOTCProtocol.AMQP, constant.IOTCProtocol.AMQP_WS):
        raise UnsupportedOperationError("{} is not supported".format(protocol.value))

    client_config = await create_client_config(
        protocol, connection_string, credential, model_id, proxy_options
    )
    if protocol is constant.IOTCProtocol.HTTP:
        logger.debug("Creating HTTP transport")
        return IoTHubHTTPTransport(client_config)
    else:
        logger.debug("Creating MQTT transport (websockets: {})".format(client_config.websockets))
        return IoTHubMQTTTransport(client_config)


def _requires_connection(f):
    """Decorator to indicate a method requires the client to be connected."""

    @functools.wraps(f)
    async def check_connection_wrapper(*args, **kwargs):
        this = args[0]  # a.k.a. self
        this._check_connection()
        return await f(*args, **kwargs)

    return check_connection_wrapper


class IoTCClient:
    """Client for a device connecting to an IoT Central application.

    The client is single use. Once disconnected (by request, or due to a loss of connection) it
    cannot be connected again. Create a new client instead.
    """

    def __init__(
        self,
        device_id: str,
        scope_id: str,
        auth_type: Union[constant.IOTCConnectType, str],
        options: Any,
        logger: Optional[logging.Logger] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        provisioning: Optional[ProvisioningOrchestrator] = None,
    ) -> None:
        """
        :param str device_id: The id of the device
        :param str scope_id: The ID scope of the IoT Central application
        :param auth_type: The kind of credential provided in options
        :type auth_type: :class:`IOTCConnectType` or str
        :param options: The group key, device key, X509 information or connection string,
            depending on the auth_type
        :param logger: Logger used for messages about API calls. If not provided, the logger of
            this module is used.
        :param transport_factory: Coroutine function creating the Transport (optional)
        :param provisioning: The ProvisioningOrchestrator used to register the device (optional)

        :raises: ValueError if the device id is empty, or the auth type is invalid
        :raises: CredentialError if the options are not valid for the auth type
        """
        if not isinstance(device_id, str) or not device_id.strip():
            raise ValueError("Device ID must be a non-empty string")
        self._device_id = device_id
        self._scope_id = scope_id
        self._logger = logger if logger else logging.getLogger(__name__)
        self._credential = credentials.resolve_credential(auth_type, options, device_id)

        # Settings
        self._model_id: Optional[str] = None
        self._protocol = constant.IOTCProtocol.MQTT
        self._global_endpoint = constant.PROVISIONING_GLOBAL_ENDPOINT
        self._proxy_options: Optional[config.ProxyOptions] = None

        self._transport_factory: TransportFactory = transport_factory or create_transport
        self._provisioning = provisioning
        self._dispatcher = EventDispatcher()

        # State
        self._state = constant.IoTCClientState.CREATED
        self._connection_string: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._twin: Optional[TwinSynchronizer] = None
        self._upload_client: Optional[IoTHubHTTPClient] = None
        self._upload_client_config: Optional[config.IoTHubClientConfig] = None
        self._close_task: Optional[asyncio.Task[None]] = None
        self._bg_tasks: Set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> "IoTCClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.disconnect()

    @property
    def state(self) -> constant.IoTCClientState:
        return self._state

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def scope_id(self) -> str:
        return self._scope_id

    @property
    def model_id(self) -> Optional[str]:
        return self._model_id

    @property
    def protocol(self) -> constant.IOTCProtocol:
        return self._protocol

    def is_connected(self) -> bool:
        return self._state is constant.IoTCClientState.CONNECTED

    def get_connection_string(self) -> Optional[str]:
        """Return the connection string for the hub the device was assigned to, or None if the
        device has not been registered"""
        return self._connection_string

    # Settings

    def set_model_id(self, model_id: Optional[str]) -> None:
        """Set the model id announced by the device. Only applied before connecting."""
        if self._can_apply_setting("model id"):
            self._model_id = model_id

    def set_global_endpoint(self, endpoint: str) -> None:
        """Set the hostname of the Device Provisioning Service. Only applied before connecting."""
        if self._can_apply_setting("global endpoint"):
            self._global_endpoint = endpoint

    def set_protocol(self, protocol: Union[constant.IOTCProtocol, str]) -> None:
        """Set the protocol used with IoT Hub. Only applied before connecting.

        :raises: ValueError if the protocol is not valid
        :raises: UnsupportedOperationError if the protocol is HTTP and a listener for commands
            or properties is registered
        """
        protocol = constant.parse_enum(constant.IOTCProtocol, protocol)
        if not self._can_apply_setting("protocol"):
            return
        if protocol is constant.IOTCProtocol.HTTP:
            for category in (constant.IOTCEvents.COMMANDS, constant.IOTCEvents.PROPERTIES):
                if self._dispatcher.get_listener(category) is not None:
                    raise UnsupportedOperationError(
                        "{} are not supported over HTTP".format(category.value)
                    )
        self._protocol = protocol

    def set_proxy(self, proxy_options: Optional[config.ProxyOptions]) -> None:
        """Set the proxy used to reach IoT Hub. Only applied before connecting."""
        if self._can_apply_setting("proxy"):
            self._proxy_options = proxy_options

    def set_logging(self, level: Union[constant.IOTCLogLevel, str]) -> None:
        """Set the verbosity of the logging of the package.

        DISABLED turns logging off, API_ONLY logs the API calls made on the client, and ALL also
        logs protocol level detail.

        :raises: ValueError if the level is not valid
        """
        level = constant.parse_enum(constant.IOTCLogLevel, level)
        if level is constant.IOTCLogLevel.DISABLED:
            python_level = logging.CRITICAL + 1
        elif level is constant.IOTCLogLevel.API_ONLY:
            python_level = logging.INFO
        else:
            python_level = logging.DEBUG
        logging.getLogger(PACKAGE_LOGGER_NAME).setLevel(python_level)
        if self._logger.name != PACKAGE_LOGGER_NAME and not self._logger.name.startswith(
            PACKAGE_LOGGER_NAME + "."
        ):
            self._logger.setLevel(python_level)

    def _can_apply_setting(self, name: str) -> bool:
        if self._state is constant.IoTCClientState.CREATED:
            return True
        self._logger.warning(
            "Cannot change {} of a client that has already connected. Ignoring".format(name)
        )
        return False

    # Events

    def on(
        self,
        category: Union[constant.IOTCEvents, str],
        callback: EventCallback,
        name_filter: Optional[str] = None,
    ) -> None:
        """Register the listener for a category of event. Replaces any previous listener.

        :param category: The category of event
        :type category: :class:`IOTCEvents` or str
        :param callback: Function or coroutine function invoked with each event. Receives a
            Property, Command, or IOTCConnectionStatus, depending on the category.
        :param str name_filter: If provided, only events for the property or command with
            this name are delivered

        :raises: UnsupportedOperationError if the category is not available with the protocol
        :raises: ValueError if the category is not valid
        """
        category = constant.parse_enum(constant.IOTCEvents, category)
        if self._protocol is constant.IOTCProtocol.HTTP and category in (
            constant.IOTCEvents.COMMANDS,
            constant.IOTCEvents.PROPERTIES,
        ):
            raise UnsupportedOperationError(
                "{} are not supported over HTTP".format(category.value)
            )
        self._dispatcher.on(category, callback, name_filter)
        self._logger.debug("Registered listener for {}".format(category.value))

        if self._state is not constant.IoTCClientState.CONNECTED:
            return
        if category is constant.IOTCEvents.COMMANDS and self._transport.supports_methods:  # type: ignore
            self._run_in_background(self._transport.enable_methods(), "enable commands")  # type: ignore
        elif category is constant.IOTCEvents.PROPERTIES and self._twin:
            self._twin.reconcile_desired()

    # Connection

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Register the device (if necessary) and connect to IoT Central.

        :param float timeout: Seconds to allow for the connection to complete (optional)

        :raises: IoTCClientError if the client has already been connected
        :raises: OperationTimeoutError if the connection does not complete in time
        :raises: RegistrationError if registration of the device fails
        :raises: TransportError if connecting to IoT Hub fails
        :raises: UnsupportedOperationError if the protocol is not supported
        :raises: CredentialError if the credential cannot be used
        """
        if self._state is not constant.IoTCClientState.CREATED:
            raise IoTCClientError(
                "Cannot connect a client in the {} state".format(self._state.value)
            )
        self._state = constant.IoTCClientState.CONNECTING
        self._logger.info("Connecting device {}...".format(self._device_id))
        try:
            if timeout is not None:
                try:
                    await asyncio.wait_for(self._do_connect(), timeout)
                except asyncio.TimeoutError as e:
                    raise OperationTimeoutError(
                        "Connection did not complete within {} seconds".format(timeout)
                    ) from e
            else:
                await self._do_connect()
        except (Exception, asyncio.CancelledError) as e:
            self._logger.error("Connecting device {} failed: {}".format(self._device_id, e))
            # Clean up, and allow another attempt
            await self._close_transport()
            self._state = constant.IoTCClientState.CREATED
            raise

    async def _do_connect(self) -> None:
        provisioning = self._provisioning or ProvisioningOrchestrator(self._global_endpoint)
        self._connection_string = await provisioning.register(
            self._scope_id, self._protocol, self._credential, self._device_id, self._model_id
        )
        self._logger.debug("Device {} registered".format(self._device_id))

        self._transport = await self._transport_factory(
            self._protocol,
            self._connection_string,
            self._credential,
            self._model_id,
            self._proxy_options,
        )
        self._transport.on_disconnected = self._on_transport_disconnected
        self._transport.on_method_request = self._on_method_request
        self._transport.on_twin_patch = self._on_twin_patch
        await self._transport.open()

        if self._transport.supports_twin:
            self._twin = TwinSynchronizer(
                self._transport, self._emit_property, check_connection=self._check_connection
            )
            await self._twin.fetch()
            await self._twin.subscribe_desired()
        if self._transport.supports_methods and self._dispatcher.get_listener(
            constant.IOTCEvents.COMMANDS
        ):
            await self._transport.enable_methods()

        self._state = constant.IoTCClientState.CONNECTED
        self._logger.info("Device {} connected".format(self._device_id))
        self._dispatcher.emit(
            constant.IOTCEvents.CONNECTION_STATUS, constant.IOTCConnectionStatus.CONNECTED
        )
        if self._twin and self._dispatcher.get_listener(constant.IOTCEvents.PROPERTIES):
            self._twin.reconcile_desired()

    async def disconnect(self) -> None:
        """Disconnect from IoT Central. Does nothing if not connected."""
        if self._state is constant.IoTCClientState.DISCONNECTED:
            if self._close_task:
                await asyncio.gather(self._close_task, return_exceptions=True)
            return
        if self._state is not constant.IoTCClientState.CONNECTED:
            self._logger.debug("Client not connected. Nothing to disconnect")
            return
        self._logger.info("Disconnecting device {}...".format(self._device_id))
        self._state = constant.IoTCClientState.DISCONNECTED
        try:
            await self._close_transport()
        finally:
            self._dispatcher.emit(
                constant.IOTCEvents.CONNECTION_STATUS, constant.IOTCConnectionStatus.DISCONNECTED
            )
        self._logger.info("Device {} disconnected".format(self._device_id))

    async def _close_transport(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        self._bg_tasks = set()
        transport = self._transport
        upload_client = self._upload_client
        upload_client_config = self._upload_client_config
        self._transport = None
        self._twin = None
        self._upload_client = None
        self._upload_client_config = None

        if transport:
            try:
                await transport.close()
            except Exception as e:
                logger.error("Unexpected error ({}) while closing transport".format(e))
        if upload_client:
            await upload_client.shutdown()
        if upload_client_config and upload_client_config.sastoken_provider:
            await upload_client_config.sastoken_provider.shutdown()

    def _check_connection(self) -> None:
        if self._state is not constant.IoTCClientState.CONNECTED or not self._transport:
            raise NotConnectedError(
                "Client is not connected (state: {})".format(self._state.value)
            )

    # Telemetry

    @_requires_connection
    async def send_telemetry(
        self,
        payload: JSONSerializable,
        properties: Optional[Dict[str, str]] = None,
        timestamp: Optional[Union[datetime.datetime, str]] = None,
    ) -> None:
        """Send telemetry to IoT Central

        :param payload: The JSON serializable telemetry
        :param dict properties: Application properties sent alongside the telemetry (optional)
        :param timestamp: The time the telemetry was created, sent as the creation time of the
            message (optional)
        :type timestamp: :class:`datetime.datetime` or str

        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if the telemetry could not be sent
        :raises: ValueError if the payload is too large
        """
        message = _create_message(payload, properties, timestamp)
        self._logger.debug("Sending telemetry (message id: {})".format(message.message_id))
        await self._transport.send_event(message)  # type: ignore
        self._logger.info("Telemetry sent")

    @_requires_connection
    async def send_telemetry_batch(
        self,
        payloads: List[JSONSerializable],
        properties: Optional[Dict[str, str]] = None,
    ) -> None:
        """Send multiple telemetry payloads, one message each, in the order given

        :param list payloads: The JSON serializable telemetry payloads
        :param dict properties: Application properties sent alongside each payload (optional)

        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if the telemetry could not be sent
        :raises: ValueError if any payload is too large
        """
        messages = [_create_message(payload, properties) for payload in payloads]
        await self._transport.send_event_batch(messages)  # type: ignore
        self._logger.info("Sent batch of {} telemetry messages".format(len(messages)))

    @deprecation.deprecated(
        deprecated_in="1.0.0",
        current_version=constant.VERSION,
        details="Use the .send_telemetry() method instead",
    )
    async def send_state(
        self,
        payload: JSONSerializable,
        properties: Optional[Dict[str, str]] = None,
        timestamp: Optional[Union[datetime.datetime, str]] = None,
    ) -> None:
        await self.send_telemetry(payload, properties, timestamp)

    @deprecation.deprecated(
        deprecated_in="1.0.0",
        current_version=constant.VERSION,
        details="Use the .send_telemetry() method instead",
    )
    async def send_event(
        self,
        payload: JSONSerializable,
        properties: Optional[Dict[str, str]] = None,
        timestamp: Optional[Union[datetime.datetime, str]] = None,
    ) -> None:
        await self.send_telemetry(payload, properties, timestamp)

    # Properties

    @_requires_connection
    async def send_property(self, payload: TwinPatch) -> None:
        """Update the reported properties of the device

        :param dict payload: The properties to report

        :raises: NotConnectedError if the client is not connected
        :raises: UnsupportedOperationError if the protocol does not support properties
        :raises: TransportError if the properties could not be sent
        :raises: TypeError if the payload is not a dict
        """
        if not isinstance(payload, dict):
            raise TypeError("Properties must be provided as a dict")
        twin = self._get_twin()
        await twin.send_reported(payload)
        self._logger.info("Properties sent")

    @_requires_connection
    async def fetch_twin(self) -> TwinState:
        """Retrieve the device twin

        :raises: NotConnectedError if the client is not connected
        :raises: UnsupportedOperationError if the protocol does not support properties
        :raises: TransportError if the twin could not be retrieved
        """
        twin = self._get_twin()
        return await twin.fetch()

    def _get_twin(self) -> TwinSynchronizer:
        if not self._twin:
            raise UnsupportedOperationError(
                "Properties are not supported over {}".format(self._protocol.value)
            )
        return self._twin

    def _emit_property(self, prop: models.Property) -> bool:
        return self._dispatcher.emit(constant.IOTCEvents.PROPERTIES, prop, name=prop.name)

    async def _on_twin_patch(self, patch: TwinPatch) -> None:
        if self._twin:
            self._twin.handle_desired_patch(patch)

    # Commands

    async def _on_method_request(self, request: models.DirectMethodRequest) -> None:
        command = models.Command(
            name=request.name,
            request_id=request.request_id,
            payload=request.payload,
            reply_fn=self._reply_to_command,
            update_fn=self._send_command_update,
        )
        self._logger.info("Received command '{}'".format(command.name))
        if not self._dispatcher.emit(constant.IOTCEvents.COMMANDS, command, name=command.name):
            self._logger.warning(
                "Command '{}' was not delivered to a listener".format(command.name)
            )

    @_requires_connection
    async def _reply_to_command(self, method_response: models.DirectMethodResponse) -> None:
        await self._transport.send_method_response(method_response)  # type: ignore

    @_requires_connection
    async def _send_command_update(
        self, payload: JSONSerializable, properties: Dict[str, str]
    ) -> None:
        await self._transport.send_event(_create_message(payload, properties))  # type: ignore

    # Files

    @_requires_connection
    async def upload_file(
        self,
        file_name: str,
        content_type: str,
        data: Union[str, bytes],
        encoding: str = "utf-8",
    ) -> models.FileUploadResult:
        """Upload a file to the storage account linked to the IoT Central application

        :param str file_name: The name of the file in storage
        :param str content_type: The content type of the file
        :param data: The content of the file
        :type data: str or bytes
        :param str encoding: The encoding used for str data (default utf-8)

        :returns: The outcome of the upload
        :rtype: :class:`FileUploadResult`

        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if IoT Hub or the storage account cannot be reached, or IoT Hub
            responds with failure
        """
        upload_client = await self._get_upload_client()
        storage_info = await upload_client.get_storage_info_for_blob(blob_name=file_name)
        correlation_id = storage_info["correlationId"]
        try:
            status_code = await upload_client.upload_blob(
                storage_info=storage_info, data=data, content_type=content_type, encoding=encoding
            )
        except TransportError as e:
            await upload_client.notify_blob_upload_status(
                correlation_id=correlation_id,
                is_success=False,
                status_code=constant.STATUS_ERROR,
                status_description=str(e),
            )
            raise
        is_success = 200 <= status_code < 300
        await upload_client.notify_blob_upload_status(
            correlation_id=correlation_id,
            is_success=is_success,
            status_code=status_code,
            status_description="Upload {}".format("succeeded" if is_success else "failed"),
        )
        self._logger.info(
            "Upload of file '{}' {}".format(file_name, "succeeded" if is_success else "failed")
        )
        return models.FileUploadResult(
            correlation_id=correlation_id,
            blob_name=storage_info["blobName"],
            is_success=is_success,
            status_code=status_code,
        )

    async def _get_upload_client(self) -> IoTHubHTTPClient:
        if not self._upload_client:
            self._upload_client_config = await create_client_config(
                constant.IOTCProtocol.HTTP,
                self._connection_string,  # type: ignore
                self._credential,
                self._model_id,
                self._proxy_options,
            )
            self._upload_client = IoTHubHTTPClient(self._upload_client_config)
        return self._upload_client

    # Transport events

    async def _on_transport_disconnected(self, cause: Optional[Exception]) -> None:
        if self._state is not constant.IoTCClientState.CONNECTED:
            return
        self._logger.warning("Device {} lost connection: {}".format(self._device_id, cause))
        self._state = constant.IoTCClientState.DISCONNECTED
        self._dispatcher.emit(
            constant.IOTCEvents.CONNECTION_STATUS, constant.IOTCConnectionStatus.DISCONNECTED
        )
        # NOTE: Closing is done in a separate task, as this handler runs within the transport
        self._close_task = asyncio.create_task(self._close_transport())

    def _run_in_background(self, coro: Awaitable[None], description: str) -> None:
        async def run() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("Failed to {}: {}".format(description, e))

        task = asyncio.create_task(run())
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)


def _create_message(
    payload: JSONSerializable,
    properties: Optional[Dict[str, str]] = None,
    timestamp: Optional[Union[datetime.datetime, str]] = None,
) -> models.Message:
    custom_properties = dict(properties) if properties else {}
    if timestamp is not None:
        custom_properties[constant.CREATION_TIME_PROPERTY] = _format_timestamp(timestamp)
    return models.Message(payload, custom_properties=custom_properties)


def _format_timestamp(timestamp: Union[datetime.datetime, str]) -> str:
    """Format a timestamp as an ISO 8601 UTC string with millisecond precision"""
    if isinstance(timestamp, str):
        return timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(datetime.timezone.utc)
    return timestamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _format_sas_uri(hostname: str, device_id: str) -> str:
    """Format the SAS URI for a device on a hub"""
    return "{hostname}/devices/{device_id}".format(hostname=hostname, device_id=device_id)
