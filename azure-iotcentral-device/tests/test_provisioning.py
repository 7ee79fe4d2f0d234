# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import aiohttp
import asyncio
import json
import pytest
from iotc import constant, credentials, models
from iotc import connection_string as cs
from iotc import provisioning_http_client as http
from iotc import request_response as rr
from iotc.exceptions import OperationTimeoutError, RegistrationError, TransportError
from iotc.provisioning import ProvisioningOrchestrator, build_connection_string

FAKE_SCOPE_ID = "0ne00000000"
FAKE_DEVICE_ID = "my_device"
FAKE_DEVICE_KEY = "Zm9vYmFyYmF6"
FAKE_HUB = "my-hub.azure-devices.net"
FAKE_OPERATION_ID = "4.d0a671905ea5b2c8.42d78160-4c78-479e-8be7-61d5e55dac0d"


def make_response(status, body, retry_after=None):
    properties = {}
    if retry_after is not None:
        properties["retry-after"] = retry_after
    return rr.Response(
        request_id="rid", status=status, body=json.dumps(body), properties=properties
    )


def assigning_response(retry_after=None):
    return make_response(
        202, {"operationId": FAKE_OPERATION_ID, "status": "assigning"}, retry_after=retry_after
    )


def assigned_response(device_id=FAKE_DEVICE_ID):
    return make_response(
        200,
        {
            "operationId": FAKE_OPERATION_ID,
            "status": "assigned",
            "registrationState": {
                "deviceId": device_id,
                "assignedHub": FAKE_HUB,
                "substatus": "initialAssignment",
                "etag": "IjYxMDA4ZDQ2LTAwMDAtMDEwMC0wMDAwLTVkYjE1ZjBhMDAwMCI=",
            },
        },
    )


@pytest.fixture
def mock_client(mocker):
    mock_client = mocker.MagicMock(spec=http.ProvisioningHTTPClient)
    mock_client.send_register = mocker.AsyncMock(return_value=assigned_response())
    mock_client.send_polling = mocker.AsyncMock(return_value=assigned_response())
    mock_client.shutdown = mocker.AsyncMock()
    return mock_client


@pytest.fixture
def mock_client_factory(mocker, mock_client):
    return mocker.MagicMock(return_value=mock_client)


@pytest.fixture
def mock_sleep(mocker):
    return mocker.AsyncMock()


@pytest.fixture
def orchestrator(mock_client_factory, mock_sleep):
    return ProvisioningOrchestrator(client_factory=mock_client_factory, sleep=mock_sleep)


@pytest.fixture
def credential():
    return credentials.SymmetricKeyCredential(FAKE_DEVICE_KEY)


@pytest.mark.describe("ProvisioningOrchestrator - .register()")
class TestRegister:
    @pytest.mark.it("Returns a connection string for the assigned hub using the device key")
    async def test_symmetric_key(self, orchestrator, credential):
        result = await orchestrator.register(
            FAKE_SCOPE_ID, constant.IOTCProtocol.MQTT, credential, FAKE_DEVICE_ID
        )

        assert result == "HostName={};DeviceId={};SharedAccessKey={}".format(
            FAKE_HUB, FAKE_DEVICE_ID, FAKE_DEVICE_KEY
        )

    @pytest.mark.it("Returns an X509 connection string for an X509 credential")
    async def test_x509(self, mocker, orchestrator):
        mocker.patch.object(credentials, "create_ssl_context")
        credential = credentials.X509Credential(models.X509("cert.pem", "key.pem"))

        result = await orchestrator.register(
            FAKE_SCOPE_ID, constant.IOTCProtocol.MQTT, credential, FAKE_DEVICE_ID
        )

        assert result == "HostName={};DeviceId={};x509=true".format(FAKE_HUB, FAKE_DEVICE_ID)

    @pytest.mark.it("Returns a connection string credential unchanged, without registering")
    async def test_connection_string(self, orchestrator, mock_client_factory):
        connection_string = "HostName=h1.azure-devices.net;DeviceId=d1;SharedAccessKey={}".format(
            FAKE_DEVICE_KEY
        )
        credential = credentials.ConnectionStringCredential(
            cs.ConnectionString(connection_string)
        )

        result = await orchestrator.register(
            FAKE_SCOPE_ID, constant.IOTCProtocol.MQTT, credential, FAKE_DEVICE_ID
        )

        assert result == connection_string
        assert mock_client_factory.call_count == 0

    @pytest.mark.it("Raises an OperationTimeoutError if registration does not complete in time")
    async def test_timeout(self, orchestrator, credential, mock_client):
        async def never_respond(*args, **kwargs):
            await asyncio.Event().wait()

        mock_client.send_register.side_effect = never_respond

        with pytest.raises(OperationTimeoutError):
            await orchestrator.register(
                FAKE_SCOPE_ID, constant.IOTCProtocol.MQTT, credential, FAKE_DEVICE_ID, timeout=0.01
            )
        assert mock_client.shutdown.await_count == 1

    @pytest.mark.it("Uses the device id returned by the service in the connection string")
    async def test_assigned_device_id(self, orchestrator, credential, mock_client):
        mock_client.send_register.return_value = assigned_response(device_id="other_device")

        result = await orchestrator.register(
            FAKE_SCOPE_ID, constant.IOTCProtocol.MQTT, credential, FAKE_DEVICE_ID
        )

        assert cs.ConnectionString(result)[cs.DEVICE_ID] == "other_device"


@pytest.mark.describe("ProvisioningOrchestrator - .register_device()")
class TestRegisterDevice:
    @pytest.mark.it("Creates a client configured for the registration")
    async def test_client_config(self, orchestrator, credential, mock_client_factory):
        await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        assert mock_client_factory.call_count == 1
        client_config = mock_client_factory.call_args[0][0]
        assert client_config.registration_id == FAKE_DEVICE_ID
        assert client_config.id_scope == FAKE_SCOPE_ID
        assert client_config.hostname == constant.PROVISIONING_GLOBAL_ENDPOINT

    @pytest.mark.it("Authenticates with a SAS token signed by the device key")
    async def test_sastoken(self, orchestrator, credential, mock_client_factory):
        await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        sastoken = mock_client_factory.call_args[0][0].sastoken
        assert sastoken.key_name == constant.PROVISIONING_SAS_KEY_NAME
        assert sastoken.resource_uri == "{}/registrations/{}".format(FAKE_SCOPE_ID, FAKE_DEVICE_ID)

    @pytest.mark.it("Sends the model id in the registration payload, if provided")
    @pytest.mark.parametrize(
        "model_id, expected_payload",
        [
            pytest.param("dtmi:foo:bar;1", {"iotcModelId": "dtmi:foo:bar;1"}, id="Model id"),
            pytest.param(None, None, id="No model id"),
        ],
    )
    async def test_model_id(
        self, mocker, orchestrator, credential, mock_client, model_id, expected_payload
    ):
        await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID, model_id)

        assert mock_client.send_register.call_args == mocker.call(expected_payload)

    @pytest.mark.it("Returns the RegistrationResult if the device is assigned immediately")
    async def test_assigned(self, orchestrator, credential, mock_client):
        result = await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        assert isinstance(result, models.RegistrationResult)
        assert result.status == "assigned"
        assert result.operation_id == FAKE_OPERATION_ID
        assert result.assigned_hub == FAKE_HUB
        assert result.device_id == FAKE_DEVICE_ID
        assert result.registration_state.sub_status == "initialAssignment"
        assert mock_client.send_polling.await_count == 0

    @pytest.mark.it("Polls the operation while the registration is assigning")
    async def test_polling(self, mocker, orchestrator, credential, mock_client, mock_sleep):
        mock_client.send_register.return_value = assigning_response()
        mock_client.send_polling.side_effect = [assigning_response(), assigned_response()]

        result = await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        assert result.assigned_hub == FAKE_HUB
        assert mock_client.send_polling.await_count == 2
        assert mock_client.send_polling.call_args == mocker.call(FAKE_OPERATION_ID)
        assert mock_sleep.await_count == 2
        assert mock_sleep.call_args == mocker.call(constant.DEFAULT_POLLING_INTERVAL)

    @pytest.mark.it("Waits for the interval indicated by the service between polls")
    async def test_retry_after(self, mocker, orchestrator, credential, mock_client, mock_sleep):
        mock_client.send_register.return_value = assigning_response(retry_after="5")

        await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        assert mock_sleep.call_args_list == [mocker.call(5.0)]

    @pytest.mark.it("Raises a RegistrationError with the reported error if registration fails")
    async def test_failed(self, orchestrator, credential, mock_client):
        mock_client.send_register.return_value = assigning_response()
        mock_client.send_polling.return_value = make_response(
            200,
            {
                "operationId": FAKE_OPERATION_ID,
                "status": "failed",
                "registrationState": {"errorCode": 400, "errorMessage": "Bad request"},
            },
        )

        with pytest.raises(RegistrationError) as e_info:
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)
        assert e_info.value.code == 400
        assert e_info.value.message == "Bad request"

    @pytest.mark.it("Raises a RegistrationError if the service responds with a failed status")
    async def test_failed_status(self, orchestrator, credential, mock_client):
        mock_client.send_register.return_value = make_response(
            401, {"errorCode": 401002, "message": "Unauthorized"}
        )

        with pytest.raises(RegistrationError) as e_info:
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)
        assert e_info.value.code == 401002
        assert e_info.value.message == "Unauthorized"

    @pytest.mark.it("Uses the HTTP status as the error code if the service reports none")
    async def test_failed_status_no_code(self, orchestrator, credential, mock_client):
        mock_client.send_register.return_value = rr.Response(
            request_id="rid", status=404, body="Not Found", properties={}
        )

        with pytest.raises(RegistrationError) as e_info:
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)
        assert e_info.value.code == 404

    @pytest.mark.it("Retries requests that are throttled by the service")
    async def test_throttled(self, mocker, orchestrator, credential, mock_client, mock_sleep):
        mock_client.send_register.side_effect = [
            make_response(429, {"message": "Too many requests"}, retry_after="1"),
            assigned_response(),
        ]

        result = await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

        assert result.assigned_hub == FAKE_HUB
        assert mock_client.send_register.await_count == 2
        assert mock_sleep.call_args_list == [mocker.call(1.0)]

    @pytest.mark.it("Raises a TransportError if the service cannot be reached")
    @pytest.mark.parametrize(
        "exception",
        [
            pytest.param(aiohttp.ClientConnectionError(), id="ClientConnectionError"),
            pytest.param(asyncio.TimeoutError(), id="TimeoutError"),
        ],
    )
    async def test_unreachable(self, orchestrator, credential, mock_client, exception):
        mock_client.send_register.side_effect = exception

        with pytest.raises(TransportError) as e_info:
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)
        assert e_info.value.__cause__ is exception

    @pytest.mark.it("Raises a RegistrationError if the response cannot be decoded")
    async def test_bad_response(self, orchestrator, credential, mock_client):
        mock_client.send_register.return_value = rr.Response(
            request_id="rid", status=200, body="not json", properties={}
        )

        with pytest.raises(RegistrationError):
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)

    @pytest.mark.it("Shuts down the client when registration completes")
    @pytest.mark.parametrize(
        "succeeds",
        [pytest.param(True, id="Success"), pytest.param(False, id="Failure")],
    )
    async def test_shutdown(self, orchestrator, credential, mock_client, succeeds):
        if not succeeds:
            mock_client.send_register.return_value = make_response(
                200, {"operationId": FAKE_OPERATION_ID, "status": "disabled"}
            )
        try:
            await orchestrator.register_device(FAKE_SCOPE_ID, credential, FAKE_DEVICE_ID)
        except RegistrationError:
            pass

        assert mock_client.shutdown.await_count == 1


@pytest.mark.describe("build_connection_string()")
class TestBuildConnectionString:
    @pytest.mark.it("Raises a RegistrationError if no hub was assigned")
    def test_no_hub(self, credential):
        result = models.RegistrationResult(
            operation_id=FAKE_OPERATION_ID,
            status="assigned",
            registration_state=models.RegistrationState(device_id=FAKE_DEVICE_ID),
        )
        with pytest.raises(RegistrationError):
            build_connection_string(result, credential, FAKE_DEVICE_ID)

    @pytest.mark.it("Falls back to the given device id if the result does not contain one")
    def test_device_id_fallback(self, credential):
        result = models.RegistrationResult(
            operation_id=FAKE_OPERATION_ID,
            status="assigned",
            registration_state=models.RegistrationState(assigned_hub=FAKE_HUB),
        )
        connection_string = build_connection_string(result, credential, FAKE_DEVICE_ID)
        assert cs.ConnectionString(connection_string)[cs.DEVICE_ID] == FAKE_DEVICE_ID
