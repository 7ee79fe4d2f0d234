# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Awaitable, Callable, List, Optional, TypeVar
from .custom_typing import TwinPatch, Twin
from .exceptions import TransportError
from .sastoken import SasToken
from .transport import Transport
from . import config, constant, user_agent, models
from . import request_response as rr
from . import mqtt_client as mqtt
from . import mqtt_topic_iothub as mqtt_topic

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class IoTHubMQTTTransport(Transport):
    """Transport to IoT Hub over MQTT (or MQTT over WebSockets)

    A dropped connection is not re-established. The loss is reported via .on_disconnected, and
    any operation in flight at that moment fails with TransportError.
    """

    def __init__(self, client_config: config.IoTHubClientConfig) -> None:
        """Instantiate the transport

        :param client_config: The config object for the transport
        :type client_config: :class:`IoTHubClientConfig`
        """
        super().__init__()
        # Identity
        self._device_id = client_config.device_id
        self._username = _format_username(
            hostname=client_config.hostname,
            device_id=self._device_id,
            model_id=client_config.model_id,
        )

        # SAS (Optional)
        self._sastoken_provider = client_config.sastoken_provider

        # MQTT Configuration
        self._mqtt_client = _create_mqtt_client(self._device_id, client_config)
        # NOTE: credentials are set upon `.open()`

        # Add filters for receive topics
        self._mqtt_client.add_incoming_message_filter(
            mqtt_topic.get_twin_response_topic_for_subscribe()
        )
        self._mqtt_client.add_incoming_message_filter(mqtt_topic.get_method_topic_for_subscribe())
        self._mqtt_client.add_incoming_message_filter(
            mqtt_topic.get_twin_patch_topic_for_subscribe()
        )

        # Internal request/response infrastructure
        self._request_ledger = rr.RequestLedger()
        self._twin_responses_enabled = False

        # State
        self._closing = False
        # Set while credentials are being updated via a reconnect. Resolves to the error that
        # prevented reconnection, or None if reconnection succeeded.
        self._pending_reauthorization: Optional[asyncio.Future[Optional[Exception]]] = None
        # Resolves to the cause of a connection loss. Used to interrupt operations in flight.
        self._connection_lost: Optional[asyncio.Future[Optional[Exception]]] = None

        # Background Tasks (Will be set upon `.open()`)
        self._bg_tasks: List[asyncio.Task[None]] = []
        self._monitor_connection_bg_task: Optional[asyncio.Task[None]] = None

    @property
    def connected(self) -> bool:
        return self._mqtt_client.is_connected()

    async def open(self) -> None:
        """Connect to IoT Hub and start processing incoming data

        :raises: TransportError if there is a failure connecting
        """
        # Start background tasks
        self._bg_tasks.append(asyncio.create_task(self._process_twin_responses()))
        self._bg_tasks.append(asyncio.create_task(self._process_method_requests()))
        self._bg_tasks.append(asyncio.create_task(self._process_twin_patches()))

        # Set credentials
        if self._sastoken_provider:
            logger.debug("Using SASToken as password")
            sastoken = self._sastoken_provider.get_current_sastoken()
            self._mqtt_client.set_credentials(self._username, str(sastoken))
            self._bg_tasks.append(asyncio.create_task(self._keep_credentials_fresh(sastoken)))
        else:
            logger.debug("No password used")
            self._mqtt_client.set_credentials(self._username, None)

        # Connect
        logger.debug("Connecting to IoTHub...")
        try:
            await self._mqtt_client.connect()
        except mqtt.MQTTConnectionFailedError as e:
            await self._stop()
            raise TransportError("Failed to connect to IoT Hub: {}".format(e)) from e
        except (Exception, asyncio.CancelledError):
            # Stop/cleanup if something goes wrong
            await self._stop()
            raise
        logger.debug("Connect succeeded")

        self._connection_lost = asyncio.get_running_loop().create_future()
        self._monitor_connection_bg_task = asyncio.create_task(self._monitor_connection())

        if self.on_connected:
            await self.on_connected()

    async def close(self) -> None:
        """Disconnect from IoT Hub and stop processing incoming data.

        If already closed, will not do anything.
        """
        if self._closing:
            logger.debug("Transport already closed")
            return
        self._closing = True
        logger.debug("Disconnecting from IoTHub...")
        await self._stop()
        logger.debug("Disconnect succeeded")

    async def _stop(self) -> None:
        cancelled_tasks = []
        for task in self._bg_tasks:
            task.cancel()
            cancelled_tasks.append(task)
        self._bg_tasks = []

        results = await asyncio.gather(
            *cancelled_tasks, asyncio.shield(self._mqtt_client.disconnect()), return_exceptions=True
        )

        if self._monitor_connection_bg_task:
            self._monitor_connection_bg_task.cancel()
            await asyncio.gather(self._monitor_connection_bg_task, return_exceptions=True)
            self._monitor_connection_bg_task = None
        if self._connection_lost and not self._connection_lost.done():
            self._connection_lost.set_result(None)
        if self._sastoken_provider:
            await self._sastoken_provider.shutdown()

        for result in results:
            # NOTE: Need to specifically exclude asyncio.CancelledError because it is not a
            # BaseException in Python 3.7
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                raise result

    async def send_event(self, message: models.Message) -> None:
        """Send a telemetry message to IoTHub.

        :param message: The Message to be sent
        :type message: :class:`models.Message`

        :raises: TransportError if there is an error sending the Message
        :raises: ValueError if the size of the Message payload is too large
        """
        # Format topic with message properties
        telemetry_topic = mqtt_topic.get_telemetry_topic_for_publish(self._device_id)
        topic = mqtt_topic.insert_message_properties_in_topic(
            topic=telemetry_topic,
            system_properties=message.get_system_properties_dict(),
            custom_properties=message.custom_properties,
        )
        byte_payload = message.encode_payload()
        logger.debug("Sending telemetry message to IoTHub...")
        await self._interruptible(self._mqtt_client.publish(topic, byte_payload))
        logger.debug("Sending telemetry message succeeded")

    async def send_method_response(self, method_response: models.DirectMethodResponse) -> None:
        """Send a method response to IoTHub.

        :param method_response: The DirectMethodResponse to be sent
        :type method_response: :class:`models.DirectMethodResponse`

        :raises: TransportError if there is an error sending the DirectMethodResponse
        """
        topic = mqtt_topic.get_method_topic_for_publish(
            method_response.request_id, method_response.status
        )
        payload = json.dumps(method_response.payload)
        logger.debug(
            "Sending method response to IoTHub... (rid: {})".format(method_response.request_id)
        )
        await self._interruptible(self._mqtt_client.publish(topic, payload))
        logger.debug(
            "Sending method response succeeded (rid: {})".format(method_response.request_id)
        )

    async def update_reported_properties(self, patch: TwinPatch) -> None:
        """Send a reported properties patch to IoTHub

        :param patch: The JSON patch to send
        :type patch: dict

        :raises: TransportError if there is an error sending the patch, or IoT Hub rejects it
        """
        response = await self._interruptible(
            self._send_twin_request(
                mqtt_topic.get_twin_patch_topic_for_publish, json.dumps(patch), "twin patch"
            )
        )
        if response.status >= 400:
            raise TransportError(
                "IoTHub responded to twin patch with a failed status - {}".format(response.status)
            )

    async def get_twin(self) -> Twin:
        """Request a full twin from IoTHub

        :returns: The full twin as a JSON object
        :rtype: dict

        :raises: TransportError if there is an error requesting the twin, or IoT Hub rejects
            the request
        """
        response = await self._interruptible(
            self._send_twin_request(
                mqtt_topic.get_twin_request_topic_for_publish, " ", "get twin request"
            )
        )
        if response.status >= 400:
            raise TransportError(
                "IoTHub responded to get twin request with a failed status - {}".format(
                    response.status
                )
            )
        logger.debug("Received twin from IoTHub (rid: {})".format(response.request_id))
        try:
            twin: Twin = json.loads(response.body)
        except ValueError as e:
            raise TransportError("Twin received from IoTHub could not be decoded") from e
        return twin

    async def enable_twin_patches(self) -> None:
        """Enable the ability to receive twin patches

        :raises: TransportError if there is an error enabling twin patch receive
        """
        logger.debug("Enabling receive for twin patches...")
        topic = mqtt_topic.get_twin_patch_topic_for_subscribe()
        await self._interruptible(self._mqtt_client.subscribe(topic))
        logger.debug("Twin patch receive enabled")

    async def enable_methods(self) -> None:
        """Enable the ability to receive method requests

        :raises: TransportError if there is an error enabling method request receive
        """
        logger.debug("Enabling receive for method requests...")
        topic = mqtt_topic.get_method_topic_for_subscribe()
        await self._interruptible(self._mqtt_client.subscribe(topic))
        logger.debug("Method request receive enabled")

    async def _enable_twin_responses(self) -> None:
        """Enable receiving of twin responses (for twin requests, or twin patches) from IoTHub"""
        logger.debug("Enabling receive of twin responses...")
        topic = mqtt_topic.get_twin_response_topic_for_subscribe()
        await self._mqtt_client.subscribe(topic)
        self._twin_responses_enabled = True
        logger.debug("Twin responses receive enabled")

    async def _send_twin_request(
        self, topic_fn: Callable[[str], str], payload: str, description: str
    ) -> rr.Response:
        """Publish a twin request on the topic given by topic_fn and wait for the matching
        response"""
        if not self._twin_responses_enabled:
            await self._enable_twin_responses()

        request = await self._request_ledger.create_request()
        try:
            topic = topic_fn(request.request_id)

            # Send the request to IoTHub
            try:
                logger.debug(
                    "Sending {} to IoTHub... (rid: {})".format(description, request.request_id)
                )
                await self._mqtt_client.publish(topic, payload)
            except asyncio.CancelledError:
                logger.warning(
                    "Attempt to send {} to IoTHub was cancelled while in flight. It may or may not have been received (rid: {})".format(
                        description, request.request_id
                    )
                )
                raise
            except Exception:
                logger.error(
                    "Sending {} to IoTHub failed (rid: {})".format(description, request.request_id)
                )
                raise

            # Wait for a response from IoTHub
            try:
                logger.debug(
                    "Waiting for response to the {} from IoTHub... (rid: {})".format(
                        description, request.request_id
                    )
                )
                response = await request.get_response()
            except asyncio.CancelledError:
                logger.debug(
                    "Attempt to send {} to IoTHub was cancelled while waiting for response. If the response arrives, it will be discarded (rid: {})".format(
                        description, request.request_id
                    )
                )
                raise
        finally:
            # If an exception caused exit before a pending request could be matched with a response
            # then manually delete to prevent leaks.
            if request.request_id in self._request_ledger:
                await self._request_ledger.delete_request(request.request_id)

        logger.debug(
            "Received {} response with status {} (rid: {})".format(
                description, response.status, request.request_id
            )
        )
        return response

    async def _interruptible(self, coro: Awaitable[_T]) -> _T:
        """Run a coroutine, raising TransportError if the connection is lost before it completes,
        or if it fails with an MQTT error
        """
        if self._connection_lost is None or self._connection_lost.done():
            # Close the coroutine so it is not left un-awaited
            coro.close()  # type: ignore
            raise TransportError("Not connected to IoT Hub")

        original_task = asyncio.create_task(coro)
        try:
            done, _ = await asyncio.wait(
                [original_task, self._connection_lost], return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            original_task.cancel()
            raise

        if self._connection_lost in done and not original_task.done():
            original_task.cancel()
            cause = self._connection_lost.result()
            raise TransportError("Connection to IoT Hub was lost") from cause
        elif original_task.cancelled():
            # Pending subscribes are cancelled by the MQTT client upon connection loss
            raise TransportError("Operation was interrupted by a loss of connection")
        try:
            return original_task.result()
        except mqtt.MQTTError as e:
            raise TransportError("MQTT operation failed: {}".format(e)) from e

    async def _monitor_connection(self) -> None:
        """Wait for the connection to be lost, then report it"""
        while True:
            cause: Optional[Exception] = await self._mqtt_client.wait_for_disconnect()
            if self._pending_reauthorization:
                logger.debug("Disconnect was caused by reauthorization. Waiting for reconnect")
                cause = await self._pending_reauthorization
                if cause is None:
                    continue
            break

        if self._closing:
            logger.debug("Connection to IoTHub closed")
        else:
            logger.info("Connection to IoTHub was lost: {}".format(cause))

        if self._connection_lost and not self._connection_lost.done():
            self._connection_lost.set_result(cause)

        if not self._closing and self.on_disconnected:
            try:
                await self.on_disconnected(cause)
            except Exception as e:
                logger.error("Unexpected error ({}) in disconnect handler. Ignoring".format(e))

    async def _reauthorize(self) -> None:
        """Reconnect using the current credentials"""
        self._pending_reauthorization = asyncio.get_running_loop().create_future()
        error: Optional[Exception] = None
        try:
            logger.debug("Reauthorizing connection to IoTHub...")
            await self._mqtt_client.disconnect()
            await self._mqtt_client.connect()
            logger.debug("Reauthorization succeeded")
        except mqtt.MQTTConnectionFailedError as e:
            logger.error("Reauthorization failed: {}".format(e))
            error = e
        finally:
            pending_reauthorization = self._pending_reauthorization
            self._pending_reauthorization = None
            if not pending_reauthorization.done():
                pending_reauthorization.set_result(error)

    async def _keep_credentials_fresh(self, applied_sastoken: SasToken) -> None:
        """Run indefinitely, updating MQTT credentials when new SAS Token is available

        :param applied_sastoken: The SAS Token the credentials were last set with
        """
        logger.debug("Starting the 'keep_credentials_fresh' background task")
        if not self._sastoken_provider:
            # NOTE: This should never execute, it's mostly just here to keep the
            # type checker happy
            logger.error("No SasTokenProvider. Cannot update credentials")
            return
        while True:
            try:
                logger.debug("Waiting for new SAS Token to become available")
                applied_sastoken = await self._sastoken_provider.wait_for_new_sastoken(
                    applied_sastoken
                )
                logger.debug("New SAS Token available, updating MQTTClient credentials")
                self._mqtt_client.set_credentials(self._username, str(applied_sastoken))
                if self._mqtt_client.is_connected() and not self._closing:
                    await self._reauthorize()
            except asyncio.CancelledError:
                # NOTE: In Python 3.7 this isn't a BaseException, so we must catch and re-raise
                raise
            except Exception as e:
                logger.error(
                    "Unexpected exception ({}) while keeping credentials fresh. Ignoring".format(e)
                )

    async def _process_twin_responses(self) -> None:
        """Run indefinitely, matching twin responses with request ID"""
        logger.debug("Starting the 'process_twin_responses' background task")
        twin_responses = self._mqtt_client.get_incoming_message_generator(
            mqtt_topic.get_twin_response_topic_for_subscribe()
        )

        async for mqtt_message in twin_responses:
            try:
                request_id = mqtt_topic.extract_request_id_from_twin_response_topic(
                    mqtt_message.topic
                )
                status_code = int(
                    mqtt_topic.extract_status_code_from_twin_response_topic(mqtt_message.topic)
                )
                # NOTE: The content of the body is interpreted by the coroutine waiting for the
                # response.
                response_body = mqtt_message.payload.decode("utf-8")
                logger.debug("Twin response received (rid: {})".format(request_id))
                response = rr.Response(
                    request_id=request_id, status=status_code, body=response_body
                )
            except Exception as e:
                logger.error(
                    "Unexpected error ({}) while translating Twin response. Dropping.".format(e)
                )
                continue
            try:
                await self._request_ledger.match_response(response)
            except asyncio.CancelledError:
                # NOTE: In Python 3.7 this isn't a BaseException, so we must catch and re-raise
                raise
            except KeyError:
                # NOTE: This should only happen in edge cases involving cancellation of
                # in-flight operations
                logger.warning(
                    "Twin response (rid: {}) does not match any request".format(request_id)
                )
            except Exception as e:
                logger.error(
                    "Unexpected error ({}) while matching Twin response (rid: {}). Dropping response".format(
                        e, request_id
                    )
                )

    async def _process_method_requests(self) -> None:
        """Run indefinitely, delivering method requests to the handler"""
        logger.debug("Starting the 'process_method_requests' background task")
        await self._process_incoming(
            mqtt_topic.get_method_topic_for_subscribe(),
            _create_method_request_from_mqtt_message,
            lambda: self.on_method_request,
            "method request",
        )

    async def _process_twin_patches(self) -> None:
        """Run indefinitely, delivering twin patches to the handler"""
        logger.debug("Starting the 'process_twin_patches' background task")
        await self._process_incoming(
            mqtt_topic.get_twin_patch_topic_for_subscribe(),
            _create_twin_patch_from_mqtt_message,
            lambda: self.on_twin_patch,
            "twin patch",
        )

    async def _process_incoming(
        self,
        topic: str,
        transform_fn: Callable[[Any], _T],
        get_handler: Callable[[], Optional[Callable[[_T], Awaitable[None]]]],
        description: str,
    ) -> None:
        incoming_mqtt_messages = self._mqtt_client.get_incoming_message_generator(topic)
        async for mqtt_message in incoming_mqtt_messages:
            try:
                item = transform_fn(mqtt_message)
            except Exception as e:
                logger.error("Failure transforming MQTTMessage: {}".format(e))
                logger.warning("Dropping {} that could not be transformed".format(description))
                continue
            handler = get_handler()
            if not handler:
                logger.warning("No handler set. Dropping {}".format(description))
                continue
            try:
                await handler(item)
            except asyncio.CancelledError:
                # NOTE: In Python 3.7 this isn't a BaseException, so we must catch and re-raise
                raise
            except Exception as e:
                logger.error(
                    "Unexpected error ({}) in {} handler. Ignoring".format(e, description)
                )


def _create_mqtt_client(
    client_id: str, client_config: config.IoTHubClientConfig
) -> mqtt.MQTTClient:
    logger.debug("Creating MQTTClient")

    logger.debug("Using {} as hostname".format(client_config.hostname))
    logger.debug("Using IoTHub Device. Client ID is {}".format(client_id))

    if client_config.websockets:
        logger.debug("Using MQTT over websockets")
        transport = "websockets"
        port = 443
        websockets_path = "/$iothub/websocket"
    else:
        logger.debug("Using MQTT over TCP")
        transport = "tcp"
        port = 8883
        websockets_path = None

    client = mqtt.MQTTClient(
        client_id=client_id,
        hostname=client_config.hostname,
        port=port,
        transport=transport,
        keep_alive=client_config.keep_alive,
        ssl_context=client_config.ssl_context,
        websockets_path=websockets_path,
        proxy_options=client_config.proxy_options,
    )

    return client


def _format_username(hostname: str, device_id: str, model_id: Optional[str] = None) -> str:
    query_param_seq = [
        ("api-version", constant.IOTHUB_API_VERSION),
        ("DeviceClientType", user_agent.get_iothub_user_agent()),
    ]
    if model_id:
        query_param_seq.append((constant.DIGITAL_TWIN_QUERY_HEADER, model_id))

    # NOTE: Neither the hostname nor the device id is URL encoded as part of the username.
    # The key/value property pairs (query_param_seq) however, MUST have all keys and values
    # URL encoded.
    # See: https://github.com/Azure/azure-iot-sdk-python/wiki/URL-Encoding-(MQTT)
    username = "{hostname}/{device_id}/?{query_params}".format(
        hostname=hostname,
        device_id=device_id,
        query_params=urllib.parse.urlencode(query_param_seq, quote_via=urllib.parse.quote),
    )
    return username


def _create_method_request_from_mqtt_message(
    mqtt_message: Any,
) -> models.DirectMethodRequest:
    """Given an MQTTMessage, create and return a DirectMethodRequest"""
    request_id = mqtt_topic.extract_request_id_from_method_request_topic(mqtt_message.topic)
    method_name = mqtt_topic.extract_name_from_method_request_topic(mqtt_message.topic)
    raw_payload = mqtt_message.payload.decode("utf-8")
    payload = json.loads(raw_payload) if raw_payload.strip() else None
    return models.DirectMethodRequest(request_id=request_id, name=method_name, payload=payload)


def _create_twin_patch_from_mqtt_message(mqtt_message: Any) -> TwinPatch:
    """Given an MQTTMessage, create and return a TwinPatch"""
    return json.loads(mqtt_message.payload.decode("utf-8"))
