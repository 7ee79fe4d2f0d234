# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""asyncio interface over a Paho MQTT client, for a single broker connection at QoS 1.

Paho runs its network loop in a worker thread. Every Paho callback is handed over to the event
loop with call_soon_threadsafe, so the state of the MQTTClient is only touched on the event loop,
in the order Paho reported it. A dropped connection is not re-established.
"""

import asyncio
import functools
import logging
import paho.mqtt.client as mqtt  # type: ignore
import ssl
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Union
from .config import ProxyOptions

logger = logging.getLogger(__name__)

QOS = 1
Payload = Union[str, bytes, int, float, None]


class MQTTError(Exception):
    """An MQTT operation failed with a Paho error code"""

    def __init__(self, rc: int) -> None:
        super().__init__(mqtt.error_string(rc))
        self.rc = rc


class MQTTConnectionFailedError(Exception):
    """A connection could not be established.

    Carries either the CONNACK code the broker refused with, or a message describing the failure
    """

    def __init__(self, rc: Optional[int] = None, message: Optional[str] = None) -> None:
        if (rc is None) == (message is None):
            raise ValueError("Provide exactly one of rc or message")
        super().__init__(mqtt.connack_string(rc) if rc is not None else message)
        self.rc = rc


class MQTTConnectionDroppedError(Exception):
    """An established connection was lost unexpectedly. Carries the Paho error code"""

    def __init__(self, rc: int) -> None:
        super().__init__(mqtt.error_string(rc))
        self.rc = rc


class MQTTClient:
    def __init__(
        self,
        client_id: str,
        hostname: str,
        port: int,
        transport: str = "tcp",
        keep_alive: int = 60,
        ssl_context: Optional[ssl.SSLContext] = None,
        websockets_path: Optional[str] = None,
        proxy_options: Optional[ProxyOptions] = None,
    ) -> None:
        """Must be instantiated within a running event loop.

        :param str client_id: The id of the client connecting to the broker
        :param str hostname: Hostname or IP address of the broker
        :param int port: Network port to connect to
        :param str transport: "tcp" or "websockets"
        :param int keep_alive: Maximum period in seconds between communications with the broker
        :param ssl_context: The SSL Context to use. If not provided, Paho's default is used.
        :type ssl_context: :class:`ssl.SSLContext`
        :param str websockets_path: Path of the MQTT endpoint on the broker, when using websockets
        :param proxy_options: Options for sending traffic through a proxy server
        :type proxy_options: :class:`ProxyOptions`
        """
        self._hostname = hostname
        self._port = port
        self._keep_alive = keep_alive
        self._loop = asyncio.get_running_loop()

        self._connected = False
        self._disconnection_cause: Optional[MQTTConnectionDroppedError] = None
        self._disconnected = asyncio.Event()
        self._disconnected.set()
        self._connection_lock = asyncio.Lock()
        self._network_loop: Optional[asyncio.Future] = None
        self._pending_connect: Optional[asyncio.Future] = None
        self._pending_subscribes: Dict[int, asyncio.Future] = {}
        self._pending_publishes: Dict[int, asyncio.Future] = {}

        self._unfiltered_messages: asyncio.Queue = asyncio.Queue()
        self._filter_queues: Dict[str, asyncio.Queue] = {}

        self._paho = mqtt.Client(
            client_id=client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
            transport=transport,
            reconnect_on_failure=False,
        )
        if transport == "websockets" and websockets_path:
            self._paho.ws_set_options(path=websockets_path)
        if proxy_options:
            logger.debug("Using proxy {}".format(proxy_options.proxy_address))
            self._paho.proxy_set(
                proxy_type=proxy_options.proxy_type_socks,
                proxy_addr=proxy_options.proxy_address,
                proxy_port=proxy_options.proxy_port,
                proxy_username=proxy_options.proxy_username,
                proxy_password=proxy_options.proxy_password,
            )
        self._paho.enable_logger(logging.getLogger("paho"))
        self._paho.tls_set_context(context=ssl_context)

        self._paho.on_connect = lambda client, userdata, flags, rc: self._dispatch(
            self._handle_connack, rc
        )
        self._paho.on_disconnect = lambda client, userdata, rc: self._dispatch(
            self._handle_disconnect, rc
        )
        self._paho.on_subscribe = lambda client, userdata, mid, granted_qos: self._dispatch(
            self._handle_ack, self._pending_subscribes, mid, "SUBACK"
        )
        self._paho.on_publish = lambda client, userdata, mid: self._dispatch(
            self._handle_ack, self._pending_publishes, mid, "PUBACK"
        )
        self._paho.on_message = lambda client, userdata, message: self._dispatch(
            self._unfiltered_messages.put_nowait, message
        )

    # Paho callbacks, run on the event loop

    def _dispatch(self, handler: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(handler, *args)
        except RuntimeError:
            logger.debug("Event loop is closed. Dropping Paho event for {}".format(handler))

    def _handle_connack(self, rc: int) -> None:
        logger.debug("Connect response: rc {} - {}".format(rc, mqtt.connack_string(rc)))
        if rc == mqtt.CONNACK_ACCEPTED:
            self._connected = True
            self._disconnection_cause = None
            self._disconnected.clear()
        if self._pending_connect and not self._pending_connect.done():
            self._pending_connect.set_result(rc)
        else:
            logger.warning("Connect response received without an outstanding connect attempt")

    def _handle_disconnect(self, rc: int) -> None:
        rc_msg = mqtt.error_string(rc)
        if not self._connected:
            # Paho also reports a refused connect, or a repeated disconnect, as a disconnect
            logger.debug("Disconnect while not connected: rc {} - {}".format(rc, rc_msg))
            if self._pending_connect and not self._pending_connect.done():
                self._pending_connect.set_exception(
                    MQTTConnectionFailedError(
                        message="Connection closed before connect response ({})".format(rc_msg)
                    )
                )
            return

        if rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug("Disconnected")
            cause = None
        else:
            logger.debug("Connection dropped: rc {} - {}".format(rc, rc_msg))
            cause = MQTTConnectionDroppedError(rc)
        self._connected = False
        self._disconnection_cause = cause
        self._disconnected.set()

        # Subscriptions made on a lost connection are never acknowledged. Publishes are kept,
        # since Paho sends them again if the client connects again.
        for pending in self._pending_subscribes.values():
            pending.cancel()
        self._pending_subscribes.clear()

    def _handle_ack(self, pending: Dict[int, asyncio.Future], mid: int, kind: str) -> None:
        logger.debug("{} received for mid {}".format(kind, mid))
        ack = pending.pop(mid, None)
        if ack is None:
            logger.warning("Unexpected {} received for mid {}".format(kind, mid))
        elif not ack.done():
            ack.set_result(None)

    # State

    def is_connected(self) -> bool:
        """Returns True if the client is currently connected to the broker"""
        return self._connected

    def previous_disconnection_cause(self) -> Optional[MQTTConnectionDroppedError]:
        """Returns the error that ended the most recent connection, or None if it was ended
        intentionally (or there has not been one)
        """
        return self._disconnection_cause

    def set_credentials(self, username: str, password: Optional[str] = None) -> None:
        """Set the credentials used by the next connect

        :param str username: The username for broker authentication
        :param str password: The password for broker authentication (Optional)
        """
        self._paho.username_pw_set(username=username, password=password)

    # Incoming messages

    def add_incoming_message_filter(self, topic: str) -> None:
        """Route incoming messages matching the topic to their own generator

        :param str topic: The topic (which may contain wildcards) to filter on

        :raises: ValueError if a filter is already applied for the topic
        """
        if topic in self._filter_queues:
            raise ValueError("Filter already applied for topic {}".format(topic))
        queue: asyncio.Queue = asyncio.Queue()
        self._filter_queues[topic] = queue
        self._paho.message_callback_add(
            topic, lambda client, userdata, message: self._dispatch(queue.put_nowait, message)
        )

    def get_incoming_message_generator(
        self, filter_topic: Optional[str] = None
    ) -> AsyncGenerator[mqtt.MQTTMessage, None]:
        """Return a generator yielding the incoming messages of a filter, or the messages that
        matched no filter if no filter topic is given

        :raises: ValueError if no filter is applied for the given topic
        """
        if filter_topic is None:
            return _yield_from_queue(self._unfiltered_messages)
        try:
            queue = self._filter_queues[filter_topic]
        except KeyError:
            raise ValueError("No filter applied for topic {}".format(filter_topic)) from None
        return _yield_from_queue(queue)

    # Connection

    async def connect(self) -> None:
        """Connect to the broker. Does nothing if already connected.

        :raises: MQTTConnectionFailedError if there is a failure connecting
        """
        async with self._connection_lock:
            if self._connected:
                logger.debug("Already connected")
                return
            self._pending_connect = self._loop.create_future()
            try:
                await self._open_connection(self._pending_connect)
            except asyncio.CancelledError:
                logger.warning("Connect was cancelled. It may still complete as it is in flight")
                raise
            finally:
                self._pending_connect = None

    async def _open_connection(self, connack: asyncio.Future) -> None:
        logger.debug("Connecting to {} on port {}".format(self._hostname, self._port))
        try:
            rc = await self._loop.run_in_executor(
                None,
                functools.partial(
                    self._paho.connect,
                    host=self._hostname,
                    port=self._port,
                    keepalive=self._keep_alive,
                ),
            )
        except Exception as e:
            raise MQTTConnectionFailedError(message="Failure in Paho .connect()") from e
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionFailedError(
                message="Unexpected rc {} from Paho .connect()".format(rc)
            ) from MQTTError(rc)

        # The network loop requires an established socket. It ends upon any disconnect, and may
        # still be running after a cancelled connect.
        if self._network_loop is None or self._network_loop.done():
            self._network_loop = self._loop.run_in_executor(None, self._paho.loop_forever)

        try:
            rc = await connack
        except MQTTConnectionFailedError:
            await self._wait_for_network_loop_exit()
            raise
        if rc != mqtt.CONNACK_ACCEPTED:
            await self._wait_for_network_loop_exit()
            raise MQTTConnectionFailedError(rc=rc)
        logger.debug("Connected")

    async def _wait_for_network_loop_exit(self) -> None:
        if self._network_loop is not None:
            await asyncio.gather(self._network_loop, return_exceptions=True)
            self._network_loop = None

    async def disconnect(self) -> None:
        """Disconnect from the broker. Does nothing if already disconnected."""
        async with self._connection_lock:
            # A network loop remains after a dropped connection or a cancelled connect, and
            # Paho must still be told to disconnect in those cases.
            if self._network_loop is None:
                logger.debug("Already disconnected")
                return
            rc = await self._loop.run_in_executor(None, self._paho.disconnect)
            logger.debug("Disconnect returned rc {} - {}".format(rc, mqtt.error_string(rc)))
            if rc == mqtt.MQTT_ERR_SUCCESS:
                await self._disconnected.wait()
                await self._wait_for_network_loop_exit()
            elif rc == mqtt.MQTT_ERR_NO_CONN:
                self._network_loop = None
            else:
                logger.warning("Unexpected rc {} from Paho .disconnect()".format(rc))

    async def wait_for_disconnect(self) -> Optional[MQTTConnectionDroppedError]:
        """Wait until the client is not connected

        :returns: An MQTTConnectionDroppedError if the connection was dropped, or None if the
            connection was intentionally ended
        """
        await self._disconnected.wait()
        return self._disconnection_cause

    # Operations

    async def subscribe(self, topic: str) -> None:
        """Subscribe to a topic, and wait for the broker to acknowledge it

        :raises: ValueError if the topic is not valid
        :raises: MQTTError if Paho cannot send the subscribe
        :raises: asyncio.CancelledError if the connection drops before the acknowledgement
        """
        # Paho only queues the packet, so it is called on the event loop. Any acknowledgement
        # is then handled after the pending future below exists.
        rc, mid = self._paho.subscribe(topic=topic, qos=QOS)
        logger.debug("Subscribe to {} returned rc {} (mid {})".format(topic, rc, mid))
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTError(rc)
        await self._wait_for_ack(self._pending_subscribes, mid)

    async def publish(self, topic: str, payload: Payload) -> None:
        """Publish a message, and wait for the broker to acknowledge it.

        If not connected, the message is sent when the client next connects.

        :raises: ValueError if the topic or payload is not valid
        :raises: MQTTError if Paho cannot queue the message
        """
        message_info = self._paho.publish(topic=topic, payload=payload, qos=QOS)
        rc = message_info.rc
        logger.debug("Publish returned rc {} (mid {})".format(rc, message_info.mid))
        if rc == mqtt.MQTT_ERR_NO_CONN:
            logger.debug("Not connected. Message is queued until the next connect")
        elif rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTError(rc)
        await self._wait_for_ack(self._pending_publishes, message_info.mid)

    async def _wait_for_ack(self, pending: Dict[int, asyncio.Future], mid: int) -> None:
        ack = self._loop.create_future()
        pending[mid] = ack
        try:
            await ack
        except asyncio.CancelledError:
            logger.debug("Stopped waiting for acknowledgement of mid {}".format(mid))
            raise
        finally:
            if pending.get(mid) is ack:
                del pending[mid]


async def _yield_from_queue(queue: asyncio.Queue) -> AsyncGenerator[mqtt.MQTTMessage, None]:
    while True:
        yield await queue.get()
