# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import json
import pytest
import uuid
from iotc import constant, models
from iotc.exceptions import CommandReplyError


@pytest.mark.describe("Message")
class TestMessage:
    @pytest.mark.it("Defaults to a JSON payload encoded with utf-8")
    def test_defaults(self):
        message = models.Message({"temperature": 20})
        assert message.payload == {"temperature": 20}
        assert message.content_type == "application/json"
        assert message.content_encoding == "utf-8"
        assert message.custom_properties == {}

    @pytest.mark.it("Is assigned a unique UUID message id")
    def test_message_id(self):
        message1 = models.Message("a")
        message2 = models.Message("a")
        assert str(uuid.UUID(message1.message_id)) == message1.message_id
        assert message1.message_id != message2.message_id

    @pytest.mark.it("Converts custom property keys and values to strings")
    def test_custom_properties(self):
        message = models.Message("a", custom_properties={"count": 1, 2: True})
        assert message.custom_properties == {"count": "1", "2": "True"}

    @pytest.mark.it("Raises a ValueError for an unsupported content encoding or type")
    @pytest.mark.parametrize(
        "kwargs",
        [
            pytest.param({"content_encoding": "ascii"}, id="Encoding"),
            pytest.param({"content_type": "application/xml"}, id="Type"),
        ],
    )
    def test_unsupported(self, kwargs):
        with pytest.raises(ValueError):
            models.Message("a", **kwargs)

    @pytest.mark.it("Encodes a JSON payload as JSON text")
    def test_encode_json(self):
        message = models.Message({"temperature": 20})
        assert json.loads(message.encode_payload()) == {"temperature": 20}

    @pytest.mark.it("Encodes a text payload as its string form, with the content encoding")
    def test_encode_text(self):
        message = models.Message("héllo", content_type="text/plain", content_encoding="utf-16")
        assert message.encode_payload() == "héllo".encode("utf-16")

    @pytest.mark.it("Raises a ValueError when encoding a payload over the size limit")
    def test_too_large(self):
        message = models.Message(
            "a" * (constant.TELEMETRY_MESSAGE_SIZE_LIMIT + 1), content_type="text/plain"
        )
        with pytest.raises(ValueError):
            message.encode_payload()

    @pytest.mark.it("Returns the system properties of the message")
    def test_system_properties(self):
        message = models.Message("a")
        assert message.get_system_properties_dict() == {
            "$.mid": message.message_id,
            "$.ce": "utf-8",
            "$.ct": "application/json",
        }


@pytest.mark.describe("RegistrationResult")
class TestRegistrationResult:
    @pytest.mark.it("Exposes the assigned hub and device id of the registration state")
    def test_properties(self):
        state = models.RegistrationState(device_id="d1", assigned_hub="hub.azure-devices.net")
        result = models.RegistrationResult("op", "assigned", state)
        assert result.registration_state is state
        assert result.assigned_hub == "hub.azure-devices.net"
        assert result.device_id == "d1"


@pytest.mark.describe("Command")
class TestCommand:
    @pytest.fixture
    def reply_fn(self, mocker):
        return mocker.AsyncMock()

    @pytest.fixture
    def update_fn(self, mocker):
        return mocker.AsyncMock()

    @pytest.fixture
    def command(self, reply_fn, update_fn):
        return models.Command("reboot", "42", {"delay": 5}, reply_fn, update_fn)

    @pytest.mark.it("Sends a DirectMethodResponse for the request with .reply()")
    async def test_reply(self, command, reply_fn):
        await command.reply(constant.IOTCCommandResponse.ERROR, {"reason": "busy"})

        response = reply_fn.call_args[0][0]
        assert isinstance(response, models.DirectMethodResponse)
        assert response.request_id == "42"
        assert response.status == 500
        assert response.payload == {"reason": "busy"}

    @pytest.mark.it("Replies with SUCCESS and no payload by default")
    async def test_reply_defaults(self, command, reply_fn):
        await command.reply()

        response = reply_fn.call_args[0][0]
        assert response.status == 200
        assert response.payload is None

    @pytest.mark.it("Can be replied to at most once")
    async def test_reply_once(self, command, reply_fn):
        assert not command.replied
        await command.reply()
        assert command.replied

        with pytest.raises(CommandReplyError):
            await command.reply()
        assert reply_fn.await_count == 1

    @pytest.mark.it("Can be replied to again if the reply failed")
    async def test_reply_failed(self, command, reply_fn, arbitrary_exception):
        reply_fn.side_effect = arbitrary_exception

        with pytest.raises(type(arbitrary_exception)):
            await command.reply()
        assert not command.replied

    @pytest.mark.it("Sends the command result with the correlation properties with .update()")
    async def test_update(self, mocker, command, update_fn):
        await command.update("rebooted", status_code=202)

        assert update_fn.call_args == mocker.call(
            {"reboot": "rebooted"},
            {
                constant.MESSAGE_SCHEMA_PROPERTY: constant.ASYNC_COMMAND_RESULT_SCHEMA,
                constant.COMMAND_NAME_PROPERTY: "reboot",
                constant.COMMAND_REQUEST_ID_PROPERTY: "42",
                constant.COMMAND_STATUS_CODE_PROPERTY: "202",
            },
        )


@pytest.mark.describe("parse_enum()")
class TestParseEnum:
    @pytest.mark.it("Accepts a member, a value or a case-insensitive name")
    @pytest.mark.parametrize(
        "value",
        [
            pytest.param(constant.IOTCProtocol.MQTT_WS, id="Member"),
            pytest.param("MQTT_WS", id="Value"),
            pytest.param("mqtt_ws", id="Lowercase name"),
        ],
    )
    def test_valid(self, value):
        assert constant.parse_enum(constant.IOTCProtocol, value) is constant.IOTCProtocol.MQTT_WS

    @pytest.mark.it("Accepts the value of a member with a non-string value")
    def test_int_value(self):
        result = constant.parse_enum(constant.IOTCCommandResponse, 500)
        assert result is constant.IOTCCommandResponse.ERROR

    @pytest.mark.it("Raises a ValueError for anything else")
    @pytest.mark.parametrize("value", ["CoAP", 42, None])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            constant.parse_enum(constant.IOTCProtocol, value)
