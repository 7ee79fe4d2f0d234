# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import json
import pytest
import ssl
import time
import urllib.parse
import paho.mqtt.client as paho
from conftest import HangingAsyncMock
from iotc.iothub_mqtt_transport import IoTHubMQTTTransport
from iotc.exceptions import TransportError
from iotc import config, constant, models, user_agent
from iotc import mqtt_client as mqtt
from iotc import request_response as rr
from iotc import mqtt_topic_iothub as mqtt_topic
from iotc import sastoken as st


FAKE_DEVICE_ID = "fake_device_id"
FAKE_HOSTNAME = "fake.hostname"
FAKE_MODEL_ID = "dtmi:fake:model;1"
FAKE_SIGNATURE = "ajsc8nLKacIjGsYyB4iYDFCZaRMmmDrUuY5lncYDYPI="
FAKE_EXPIRY = str(int(time.time()) + 3600)
FAKE_URI = "fake/resource/location"


# Fixtures


def make_sastoken(signature=FAKE_SIGNATURE):
    sastoken_str = "SharedAccessSignature sr={resource}&sig={signature}&se={expiry}".format(
        resource=FAKE_URI, signature=signature, expiry=FAKE_EXPIRY
    )
    return st.SasToken(sastoken_str)


@pytest.fixture
def sastoken():
    return make_sastoken()


@pytest.fixture
async def mock_sastoken_provider(mocker, sastoken):
    provider = mocker.MagicMock(spec=st.SasTokenProvider)
    provider.get_current_sastoken.return_value = sastoken
    # Use a HangingAsyncMock so that it isn't constantly returning
    provider.wait_for_new_sastoken = HangingAsyncMock()
    provider.shutdown = mocker.AsyncMock()
    return provider


@pytest.fixture
def client_config():
    """Required values only. Customize in test if you need specific options"""
    return config.IoTHubClientConfig(
        device_id=FAKE_DEVICE_ID,
        hostname=FAKE_HOSTNAME,
        ssl_context=ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT),
    )


@pytest.fixture
async def connection_drop():
    """Future that, when completed, causes the mocked MQTTClient to report a disconnection
    with the result as its cause"""
    return asyncio.get_running_loop().create_future()


@pytest.fixture
async def transport(mocker, client_config, connection_drop):
    transport = IoTHubMQTTTransport(client_config)
    # Mock just the network operations from the MQTTClient, not the whole thing.
    # This makes using the generators easier
    transport._mqtt_client.connect = mocker.AsyncMock()
    transport._mqtt_client.disconnect = mocker.AsyncMock()
    transport._mqtt_client.subscribe = mocker.AsyncMock()
    transport._mqtt_client.publish = mocker.AsyncMock()
    transport._mqtt_client.set_credentials = mocker.MagicMock()
    transport._mqtt_client.is_connected = mocker.MagicMock(return_value=True)

    mock_wait_for_disconnect(mocker, transport, connection_drop)

    yield transport

    await transport.close()


@pytest.fixture
async def opened_transport(transport):
    await transport.open()
    return transport


def mock_wait_for_disconnect(mocker, transport, connection_drop):
    async def wait_for_disconnect():
        return await asyncio.shield(connection_drop)

    transport._mqtt_client.wait_for_disconnect = mocker.AsyncMock(side_effect=wait_for_disconnect)


def incoming_message(topic, payload):
    message = paho.MQTTMessage(topic=topic.encode("utf-8"))
    message.payload = payload.encode("utf-8")
    return message


def respond_to_twin_requests(transport, status, body=""):
    """Make the mocked publish answer any twin request with a response of the given status"""

    async def publish(topic, payload):
        if "$rid=" in topic:
            rid = urllib.parse.unquote(topic.split("$rid=")[1])
            await transport._request_ledger.match_response(
                rr.Response(request_id=rid, status=status, body=body)
            )

    transport._mqtt_client.publish.side_effect = publish


@pytest.mark.describe("IoTHubMQTTTransport -- Instantiation")
class TestIoTHubMQTTTransportInstantiation:
    @pytest.mark.it("Creates an MQTTClient using TCP on port 8883 if websockets are not enabled")
    async def test_mqtt_client_tcp(self, mocker, client_config):
        mock_mqtt_client_cls = mocker.patch.object(mqtt, "MQTTClient")
        client_config.websockets = False

        IoTHubMQTTTransport(client_config)

        assert mock_mqtt_client_cls.call_count == 1
        assert mock_mqtt_client_cls.call_args == mocker.call(
            client_id=FAKE_DEVICE_ID,
            hostname=FAKE_HOSTNAME,
            port=8883,
            transport="tcp",
            keep_alive=client_config.keep_alive,
            ssl_context=client_config.ssl_context,
            websockets_path=None,
            proxy_options=client_config.proxy_options,
        )

    @pytest.mark.it("Creates an MQTTClient using websockets on port 443 if websockets are enabled")
    async def test_mqtt_client_ws(self, mocker, client_config):
        mock_mqtt_client_cls = mocker.patch.object(mqtt, "MQTTClient")
        client_config.websockets = True

        IoTHubMQTTTransport(client_config)

        assert mock_mqtt_client_cls.call_args.kwargs["port"] == 443
        assert mock_mqtt_client_cls.call_args.kwargs["transport"] == "websockets"
        assert mock_mqtt_client_cls.call_args.kwargs["websockets_path"] == "/$iothub/websocket"

    @pytest.mark.it("Adds incoming message filters for twin responses, methods and twin patches")
    async def test_filters(self, client_config):
        transport = IoTHubMQTTTransport(client_config)

        filters = transport._mqtt_client._filter_queues
        assert mqtt_topic.get_twin_response_topic_for_subscribe() in filters
        assert mqtt_topic.get_method_topic_for_subscribe() in filters
        assert mqtt_topic.get_twin_patch_topic_for_subscribe() in filters

    @pytest.mark.it("Formats the username with the api version and user agent")
    async def test_username(self, client_config):
        transport = IoTHubMQTTTransport(client_config)

        expected = "{}/{}/?api-version={}&DeviceClientType={}".format(
            FAKE_HOSTNAME,
            FAKE_DEVICE_ID,
            constant.IOTHUB_API_VERSION,
            urllib.parse.quote(user_agent.get_iothub_user_agent(), safe=""),
        )
        assert transport._username == expected

    @pytest.mark.it("Includes the model id in the username if one is configured")
    async def test_username_model_id(self, client_config):
        client_config.model_id = FAKE_MODEL_ID
        transport = IoTHubMQTTTransport(client_config)

        assert transport._username.endswith(
            "&model-id=" + urllib.parse.quote(FAKE_MODEL_ID, safe="")
        )

    @pytest.mark.it("Supports twin and method operations")
    async def test_capabilities(self, client_config):
        transport = IoTHubMQTTTransport(client_config)
        assert transport.supports_twin
        assert transport.supports_methods

    @pytest.mark.it("Starts with no background tasks and no connection")
    async def test_initial_state(self, client_config):
        transport = IoTHubMQTTTransport(client_config)
        assert transport._bg_tasks == []
        assert transport._monitor_connection_bg_task is None
        assert transport._connection_lost is None
        assert not transport.connected


@pytest.mark.describe("IoTHubMQTTTransport - .open()")
class TestOpen:
    @pytest.mark.it("Sets the username with no password if not using SAS authentication")
    async def test_credentials_no_sas(self, mocker, transport):
        await transport.open()

        assert transport._mqtt_client.set_credentials.call_args == mocker.call(
            transport._username, None
        )

    @pytest.mark.it("Sets the current SAS Token as the password if using SAS authentication")
    async def test_credentials_sas(
        self, mocker, client_config, connection_drop, mock_sastoken_provider, sastoken
    ):
        client_config.sastoken_provider = mock_sastoken_provider
        transport = IoTHubMQTTTransport(client_config)
        transport._mqtt_client.connect = mocker.AsyncMock()
        transport._mqtt_client.disconnect = mocker.AsyncMock()
        transport._mqtt_client.set_credentials = mocker.MagicMock()
        mock_wait_for_disconnect(mocker, transport, connection_drop)

        await transport.open()

        assert transport._mqtt_client.set_credentials.call_args == mocker.call(
            transport._username, str(sastoken)
        )
        # One extra task for keeping credentials fresh
        assert len(transport._bg_tasks) == 4

        await transport.close()
        assert mock_sastoken_provider.shutdown.await_count == 1

    @pytest.mark.it("Connects the MQTTClient")
    async def test_connect(self, transport):
        await transport.open()

        assert transport._mqtt_client.connect.await_count == 1
        assert transport.connected

    @pytest.mark.it(
        "Starts background tasks for processing incoming data and monitoring the connection"
    )
    async def test_bg_tasks(self, transport):
        await transport.open()

        assert len(transport._bg_tasks) == 3
        for task in transport._bg_tasks:
            assert not task.done()
        assert not transport._monitor_connection_bg_task.done()

    @pytest.mark.it("Invokes the on_connected handler once connected")
    async def test_on_connected(self, mocker, transport):
        transport.on_connected = mocker.AsyncMock()

        await transport.open()

        assert transport.on_connected.await_count == 1

    @pytest.mark.it("Raises a TransportError if the connection attempt fails")
    async def test_connect_fails(self, transport):
        error = mqtt.MQTTConnectionFailedError(rc=paho.CONNACK_REFUSED_NOT_AUTHORIZED)
        transport._mqtt_client.connect.side_effect = error

        with pytest.raises(TransportError) as e_info:
            await transport.open()
        assert e_info.value.__cause__ is error

    @pytest.mark.it("Stops all background tasks if the connection attempt fails")
    async def test_connect_fails_cleanup(self, transport, arbitrary_exception):
        transport._mqtt_client.connect.side_effect = arbitrary_exception

        with pytest.raises(type(arbitrary_exception)):
            await transport.open()

        assert transport._bg_tasks == []
        assert transport._monitor_connection_bg_task is None


@pytest.mark.describe("IoTHubMQTTTransport - .close()")
class TestClose:
    @pytest.mark.it("Disconnects the MQTTClient and cancels the background tasks")
    async def test_disconnect(self, opened_transport):
        bg_tasks = list(opened_transport._bg_tasks)
        monitor = opened_transport._monitor_connection_bg_task

        await opened_transport.close()

        assert opened_transport._mqtt_client.disconnect.await_count == 1
        for task in bg_tasks:
            assert task.cancelled()
        assert monitor.done()
        assert opened_transport._bg_tasks == []

    @pytest.mark.it("Does nothing if already closed")
    async def test_idempotent(self, opened_transport):
        await opened_transport.close()
        await opened_transport.close()

        assert opened_transport._mqtt_client.disconnect.await_count == 1

    @pytest.mark.it("Does not invoke the on_disconnected handler")
    async def test_no_handler(self, mocker, opened_transport, connection_drop):
        opened_transport.on_disconnected = mocker.AsyncMock()

        await opened_transport.close()
        connection_drop.set_result(None)
        await asyncio.sleep(0.1)

        assert opened_transport.on_disconnected.await_count == 0

    @pytest.mark.it("Causes further operations to raise a TransportError")
    async def test_operations_after_close(self, opened_transport):
        await opened_transport.close()

        with pytest.raises(TransportError):
            await opened_transport.send_event(models.Message({"temperature": 20}))


@pytest.mark.describe("IoTHubMQTTTransport - .send_event()")
class TestSendEvent:
    @pytest.mark.it("Publishes the encoded payload on the telemetry topic, with message properties")
    async def test_publish(self, mocker, opened_transport):
        message = models.Message({"temperature": 20}, custom_properties={"key": "value"})

        await opened_transport.send_event(message)

        expected_topic = mqtt_topic.insert_message_properties_in_topic(
            mqtt_topic.get_telemetry_topic_for_publish(FAKE_DEVICE_ID),
            message.get_system_properties_dict(),
            {"key": "value"},
        )
        assert opened_transport._mqtt_client.publish.await_count == 1
        assert opened_transport._mqtt_client.publish.call_args == mocker.call(
            expected_topic, b'{"temperature": 20}'
        )

    @pytest.mark.it("Raises a TransportError if the publish fails with an MQTTError")
    async def test_publish_fails(self, opened_transport):
        error = mqtt.MQTTError(rc=paho.MQTT_ERR_QUEUE_SIZE)
        opened_transport._mqtt_client.publish.side_effect = error

        with pytest.raises(TransportError) as e_info:
            await opened_transport.send_event(models.Message({"temperature": 20}))
        assert e_info.value.__cause__ is error

    @pytest.mark.it("Raises a TransportError if the transport has not been opened")
    async def test_not_open(self, transport):
        with pytest.raises(TransportError):
            await transport.send_event(models.Message({"temperature": 20}))
        assert transport._mqtt_client.publish.await_count == 0

    @pytest.mark.it(
        "Raises a TransportError if the connection is lost while the publish is in flight"
    )
    async def test_connection_lost(self, opened_transport, connection_drop):
        opened_transport._mqtt_client.publish = HangingAsyncMock()
        send_task = asyncio.create_task(
            opened_transport.send_event(models.Message({"temperature": 20}))
        )
        await opened_transport._mqtt_client.publish.wait_for_hang()

        cause = mqtt.MQTTConnectionDroppedError(rc=paho.MQTT_ERR_CONN_LOST)
        connection_drop.set_result(cause)

        with pytest.raises(TransportError) as e_info:
            await send_task
        assert e_info.value.__cause__ is cause


@pytest.mark.describe("IoTHubMQTTTransport - .send_event_batch()")
class TestSendEventBatch:
    @pytest.mark.it("Publishes each message in order")
    async def test_order(self, opened_transport):
        messages = [models.Message({"n": i}) for i in range(3)]

        await opened_transport.send_event_batch(messages)

        payloads = [c.args[1] for c in opened_transport._mqtt_client.publish.call_args_list]
        assert payloads == [b'{"n": 0}', b'{"n": 1}', b'{"n": 2}']


@pytest.mark.describe("IoTHubMQTTTransport - .send_method_response()")
class TestSendMethodResponse:
    @pytest.mark.it("Publishes the JSON payload on the method response topic")
    async def test_publish(self, mocker, opened_transport):
        response = models.DirectMethodResponse(request_id="12", status=200, payload={"a": 1})

        await opened_transport.send_method_response(response)

        assert opened_transport._mqtt_client.publish.call_args == mocker.call(
            "$iothub/methods/res/200/?$rid=12", '{"a": 1}'
        )

    @pytest.mark.it("Publishes 'null' if the response has no payload")
    async def test_no_payload(self, opened_transport):
        response = models.DirectMethodResponse(request_id="12", status=202)

        await opened_transport.send_method_response(response)

        assert opened_transport._mqtt_client.publish.call_args.args[1] == "null"


@pytest.mark.describe("IoTHubMQTTTransport - .get_twin()")
class TestGetTwin:
    @pytest.mark.it("Subscribes to twin responses before the first request only")
    async def test_subscribe_once(self, mocker, opened_transport):
        respond_to_twin_requests(opened_transport, 200, json.dumps({"desired": {}}))

        await opened_transport.get_twin()
        await opened_transport.get_twin()

        assert opened_transport._mqtt_client.subscribe.call_args_list == [
            mocker.call(mqtt_topic.get_twin_response_topic_for_subscribe())
        ]

    @pytest.mark.it("Publishes a request on the twin GET topic and returns the decoded twin")
    async def test_returns_twin(self, opened_transport):
        twin = {"desired": {"fanSpeed": 3, "$version": 2}, "reported": {"$version": 1}}
        respond_to_twin_requests(opened_transport, 200, json.dumps(twin))

        result = await opened_transport.get_twin()

        assert result == twin
        topic = opened_transport._mqtt_client.publish.call_args.args[0]
        assert topic.startswith("$iothub/twin/GET/?$rid=")

    @pytest.mark.it("Raises a TransportError if IoT Hub responds with a failed status")
    async def test_failed_status(self, opened_transport):
        respond_to_twin_requests(opened_transport, 429)

        with pytest.raises(TransportError):
            await opened_transport.get_twin()

    @pytest.mark.it("Raises a TransportError if the twin cannot be decoded")
    async def test_bad_body(self, opened_transport):
        respond_to_twin_requests(opened_transport, 200, "not json")

        with pytest.raises(TransportError):
            await opened_transport.get_twin()

    @pytest.mark.it("Does not leave a pending request behind if the publish fails")
    async def test_cleanup(self, opened_transport):
        opened_transport._mqtt_client.publish.side_effect = mqtt.MQTTError(rc=4)

        with pytest.raises(TransportError):
            await opened_transport.get_twin()
        assert len(opened_transport._request_ledger) == 0


@pytest.mark.describe("IoTHubMQTTTransport - .update_reported_properties()")
class TestUpdateReportedProperties:
    @pytest.mark.it("Publishes the JSON patch on the reported properties topic")
    async def test_publish(self, opened_transport):
        respond_to_twin_requests(opened_transport, 204)
        patch = {"firmware": "1.0.0"}

        await opened_transport.update_reported_properties(patch)

        topic, payload = opened_transport._mqtt_client.publish.call_args.args
        assert topic.startswith("$iothub/twin/PATCH/properties/reported/?$rid=")
        assert json.loads(payload) == patch

    @pytest.mark.it("Raises a TransportError if IoT Hub rejects the patch")
    async def test_rejected(self, opened_transport):
        respond_to_twin_requests(opened_transport, 400)

        with pytest.raises(TransportError):
            await opened_transport.update_reported_properties({"firmware": "1.0.0"})


@pytest.mark.describe("IoTHubMQTTTransport - Enabling receive")
class TestEnableReceive:
    @pytest.mark.it(".enable_methods() subscribes to the method request topic")
    async def test_methods(self, mocker, opened_transport):
        await opened_transport.enable_methods()

        assert opened_transport._mqtt_client.subscribe.call_args == mocker.call(
            mqtt_topic.get_method_topic_for_subscribe()
        )

    @pytest.mark.it(".enable_twin_patches() subscribes to the twin patch topic")
    async def test_twin_patches(self, mocker, opened_transport):
        await opened_transport.enable_twin_patches()

        assert opened_transport._mqtt_client.subscribe.call_args == mocker.call(
            mqtt_topic.get_twin_patch_topic_for_subscribe()
        )

    @pytest.mark.it("Raises a TransportError if the subscribe is cancelled by a connection loss")
    async def test_subscribe_cancelled(self, opened_transport):
        opened_transport._mqtt_client.subscribe.side_effect = asyncio.CancelledError()

        with pytest.raises(TransportError):
            await opened_transport.enable_methods()


@pytest.mark.describe("IoTHubMQTTTransport - Incoming data")
class TestIncomingData:
    @pytest.mark.it("Delivers method requests to the on_method_request handler")
    async def test_method_request(self, mocker, opened_transport):
        opened_transport.on_method_request = mocker.AsyncMock()
        topic = mqtt_topic.get_method_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(incoming_message("$iothub/methods/POST/reboot/?$rid=7", '{"delay": 5}'))
        await asyncio.sleep(0.1)

        assert opened_transport.on_method_request.await_count == 1
        request = opened_transport.on_method_request.call_args.args[0]
        assert isinstance(request, models.DirectMethodRequest)
        assert request.name == "reboot"
        assert request.request_id == "7"
        assert request.payload == {"delay": 5}

    @pytest.mark.it("Delivers a method request with an empty payload as having a None payload")
    async def test_method_request_empty(self, mocker, opened_transport):
        opened_transport.on_method_request = mocker.AsyncMock()
        topic = mqtt_topic.get_method_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(incoming_message("$iothub/methods/POST/reboot/?$rid=7", ""))
        await asyncio.sleep(0.1)

        assert opened_transport.on_method_request.call_args.args[0].payload is None

    @pytest.mark.it("Delivers twin patches to the on_twin_patch handler")
    async def test_twin_patch(self, mocker, opened_transport):
        opened_transport.on_twin_patch = mocker.AsyncMock()
        topic = mqtt_topic.get_twin_patch_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(
            incoming_message(
                "$iothub/twin/PATCH/properties/desired/?$version=4",
                '{"fanSpeed": 5, "$version": 4}',
            )
        )
        await asyncio.sleep(0.1)

        assert opened_transport.on_twin_patch.call_args == mocker.call(
            {"fanSpeed": 5, "$version": 4}
        )

    @pytest.mark.it("Continues processing if a handler raises an exception")
    async def test_handler_raises(self, mocker, opened_transport, arbitrary_exception):
        opened_transport.on_method_request = mocker.AsyncMock(
            side_effect=[arbitrary_exception, None]
        )
        topic = mqtt_topic.get_method_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(incoming_message("$iothub/methods/POST/a/?$rid=1", "{}"))
        await queue.put(incoming_message("$iothub/methods/POST/b/?$rid=2", "{}"))
        await asyncio.sleep(0.1)

        assert opened_transport.on_method_request.await_count == 2

    @pytest.mark.it("Drops incoming data that cannot be decoded")
    async def test_bad_data(self, mocker, opened_transport):
        opened_transport.on_twin_patch = mocker.AsyncMock()
        topic = mqtt_topic.get_twin_patch_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(incoming_message("$iothub/twin/PATCH/properties/desired/", "not json"))
        await queue.put(incoming_message("$iothub/twin/PATCH/properties/desired/", "{}"))
        await asyncio.sleep(0.1)

        assert opened_transport.on_twin_patch.call_args_list == [mocker.call({})]

    @pytest.mark.it("Drops twin responses that do not match a pending request")
    async def test_unmatched_twin_response(self, opened_transport):
        topic = mqtt_topic.get_twin_response_topic_for_subscribe()
        queue = opened_transport._mqtt_client._filter_queues[topic]

        await queue.put(incoming_message("$iothub/twin/res/200/?$rid=unknown", "{}"))
        await asyncio.sleep(0.1)

        # The background task survives
        assert not opened_transport._bg_tasks[0].done()


@pytest.mark.describe("IoTHubMQTTTransport - OCCURRENCE: Connection Lost")
class TestConnectionLost:
    @pytest.mark.it("Invokes the on_disconnected handler with the cause")
    async def test_handler(self, mocker, opened_transport, connection_drop):
        opened_transport.on_disconnected = mocker.AsyncMock()
        cause = mqtt.MQTTConnectionDroppedError(rc=paho.MQTT_ERR_KEEPALIVE)

        connection_drop.set_result(cause)
        await asyncio.sleep(0.1)

        assert opened_transport.on_disconnected.call_args == mocker.call(cause)

    @pytest.mark.it("Causes further operations to raise a TransportError")
    async def test_operations_after_loss(self, opened_transport, connection_drop):
        connection_drop.set_result(mqtt.MQTTConnectionDroppedError(rc=paho.MQTT_ERR_CONN_LOST))
        await asyncio.sleep(0.1)

        with pytest.raises(TransportError):
            await opened_transport.enable_methods()

    @pytest.mark.it("Ignores exceptions raised by the on_disconnected handler")
    async def test_handler_raises(
        self, mocker, opened_transport, connection_drop, arbitrary_exception
    ):
        opened_transport.on_disconnected = mocker.AsyncMock(side_effect=arbitrary_exception)

        connection_drop.set_result(None)
        await asyncio.sleep(0.1)

        assert opened_transport._monitor_connection_bg_task.done()
        assert opened_transport._monitor_connection_bg_task.exception() is None


@pytest.mark.describe("IoTHubMQTTTransport - BG TASK: ._keep_credentials_fresh")
class TestKeepCredentialsFresh:
    @pytest.fixture
    async def transport(self, mocker, client_config, connection_drop, mock_sastoken_provider):
        client_config.sastoken_provider = mock_sastoken_provider
        transport = IoTHubMQTTTransport(client_config)
        transport._mqtt_client.connect = mocker.AsyncMock()
        transport._mqtt_client.disconnect = mocker.AsyncMock()
        transport._mqtt_client.set_credentials = mocker.MagicMock()
        transport._mqtt_client.is_connected = mocker.MagicMock(return_value=True)
        mock_wait_for_disconnect(mocker, transport, connection_drop)
        yield transport
        await transport.close()

    @pytest.fixture
    async def new_sastoken(self, mock_sastoken_provider):
        new_sastoken = make_sastoken(signature="bmV3X3NpZ25hdHVyZQ==")
        never = asyncio.Event()
        tokens = [new_sastoken]
        known_sastokens = []

        async def wait_for_new_sastoken(known_sastoken):
            known_sastokens.append(known_sastoken)
            if tokens:
                return tokens.pop()
            await never.wait()

        mock_sastoken_provider.wait_for_new_sastoken = wait_for_new_sastoken
        mock_sastoken_provider.known_sastokens = known_sastokens
        return new_sastoken

    @pytest.mark.it("Updates the MQTTClient credentials when a new SAS Token is available")
    async def test_updates_credentials(self, mocker, transport, new_sastoken):
        await transport.open()
        await asyncio.sleep(0.1)

        assert transport._mqtt_client.set_credentials.call_args == mocker.call(
            transport._username, str(new_sastoken)
        )

    @pytest.mark.it("Reconnects with the new credentials if connected")
    async def test_reauthorizes(self, transport, new_sastoken):
        await transport.open()
        await asyncio.sleep(0.1)

        assert transport._mqtt_client.disconnect.await_count == 1
        assert transport._mqtt_client.connect.await_count == 2

    @pytest.mark.it("Does not reconnect if not connected")
    async def test_not_connected(self, transport, new_sastoken):
        transport._mqtt_client.is_connected.return_value = False
        await transport.open()
        await asyncio.sleep(0.1)

        assert transport._mqtt_client.disconnect.await_count == 0
        assert transport._mqtt_client.connect.await_count == 1


    @pytest.mark.it("Waits for a token newer than the one the credentials were last set with")
    async def test_known_sastoken(self, transport, sastoken, new_sastoken, mock_sastoken_provider):
        await transport.open()
        await asyncio.sleep(0.1)

        assert mock_sastoken_provider.known_sastokens == [sastoken, new_sastoken]
