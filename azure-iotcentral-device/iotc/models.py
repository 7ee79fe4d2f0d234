# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import json
import logging
import uuid
from typing import Optional, Dict, Union, Callable, Awaitable, Any
from .custom_typing import JSONSerializable
from .exceptions import CommandReplyError
from . import constant

logger = logging.getLogger(__name__)


class X509(object):
    """
    A class with references to the certificate, key, and optional pass-phrase used to authenticate
    a TLS connection using x509 certificates
    """

    def __init__(self, cert_file: str, key_file: str, pass_phrase: Optional[str] = None) -> None:
        """
        Initializer for X509 Certificate
        :param cert_file: The file path to contents of the certificate (or certificate chain)
         used to authenticate the device.
        :param key_file: The file path to the key associated with the certificate
        :param pass_phrase: (optional) The pass_phrase used to encode the key file
        """
        self._cert_file = cert_file
        self._key_file = key_file
        self._pass_phrase = pass_phrase

    @property
    def certificate_file(self) -> str:
        return self._cert_file

    @property
    def key_file(self) -> str:
        return self._key_file

    @property
    def pass_phrase(self) -> Optional[str]:
        return self._pass_phrase


class Message:
    """Represents a telemetry message sent to IoT Hub

    :ivar payload: The data that constitutes the payload
    :ivar content_encoding: Content encoding of the message data. Can be 'utf-8', 'utf-16' or 'utf-32'
    :ivar content_type: Content type property used to route messages with the message-body.
    :ivar message_id: A user-settable identifier for the message
    :ivar custom_properties: Dictionary of custom message properties. The keys and values of these
        properties will always be string.
    """

    def __init__(
        self,
        payload: JSONSerializable,
        content_encoding: str = "utf-8",
        content_type: str = "application/json",
        custom_properties: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Initializer for Message

        :param payload: The JSON serializable data that constitutes the payload.
        :param str content_encoding: Content encoding of the message payload.
            Acceptable values are 'utf-8', 'utf-16' and 'utf-32'
        :param str content_type: Content type of the message payload.
            Acceptable values are 'text/plain' and 'application/json'
        :param dict custom_properties: Application properties sent alongside the payload

        :raises: ValueError if the content encoding or content type is not supported
        """
        if content_encoding not in ["utf-8", "utf-16", "utf-32"]:
            raise ValueError(
                "Invalid content encoding. Supported codecs are 'utf-8', 'utf-16' and 'utf-32'"
            )
        if content_type not in ["text/plain", "application/json"]:
            raise ValueError(
                "Invalid content type. Supported types are 'text/plain' and 'application/json'"
            )

        self.payload = payload
        self.content_encoding = content_encoding
        self.content_type = content_type
        self.message_id: str = str(uuid.uuid4())
        self.custom_properties: Dict[str, str] = {}
        if custom_properties:
            for key, value in custom_properties.items():
                self.custom_properties[str(key)] = str(value)

    def __str__(self) -> str:
        return str(self.payload)

    def encode_payload(self) -> bytes:
        """Return the payload, formatted according to the content type and encoded with the
        content encoding

        :raises: ValueError if the encoded payload exceeds the size limit for telemetry
        """
        if self.content_type == "application/json":
            str_payload = json.dumps(self.payload)
        else:
            str_payload = str(self.payload)
        byte_payload = str_payload.encode(self.content_encoding)
        if len(byte_payload) > constant.TELEMETRY_MESSAGE_SIZE_LIMIT:
            raise ValueError(
                "Message payload of {} bytes exceeds the limit of {} bytes".format(
                    len(byte_payload), constant.TELEMETRY_MESSAGE_SIZE_LIMIT
                )
            )
        return byte_payload

    def get_system_properties_dict(self) -> Dict[str, str]:
        """Return a dictionary of system properties"""
        d = {}
        if self.message_id:
            d["$.mid"] = self.message_id
        if self.content_encoding:
            d["$.ce"] = self.content_encoding
        if self.content_type:
            d["$.ct"] = self.content_type
        return d


class DirectMethodRequest:
    """Represents a request to invoke a direct method.

    :ivar str request_id: The request id.
    :ivar str name: The name of the method to be invoked.
    :ivar dict payload: The JSON payload being sent with the request.
    :type payload: dict, str, int, float, bool, or None (JSON compatible values)
    """

    def __init__(self, request_id: str, name: str, payload: JSONSerializable) -> None:
        self.request_id = request_id
        self.name = name
        self.payload = payload


class DirectMethodResponse:
    """Represents a response to a direct method.

    :ivar str request_id: The request id of the DirectMethodRequest being responded to.
    :ivar int status: The status of the execution of the DirectMethodRequest.
    :ivar payload: The JSON payload to be sent with the response.
    :type payload: dict, str, int, float, bool, or None (JSON compatible values)
    """

    def __init__(self, request_id: str, status: int, payload: JSONSerializable = None) -> None:
        self.request_id = request_id
        self.status = status
        self.payload = payload


class RegistrationState(object):
    """
    The registration state regarding the device.
    :ivar device_id: Desired device id for the provisioned device
    :ivar assigned_hub: Desired IoT Hub where the provisioned device is located
    :ivar sub_status: Substatus for 'Assigned' devices. Possible values are
    "initialAssignment", "deviceDataMigrated", "deviceDataReset"
    :ivar etag: The entity tag associated with the resource.
    :ivar payload: The payload returned by the service (if any)
    """

    def __init__(
        self,
        device_id: Optional[str] = None,
        assigned_hub: Optional[str] = None,
        sub_status: Optional[str] = None,
        etag: Optional[str] = None,
        payload: JSONSerializable = None,
    ) -> None:
        self._device_id = device_id
        self._assigned_hub = assigned_hub
        self._sub_status = sub_status
        self._etag = etag
        self._payload = payload

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def assigned_hub(self) -> Optional[str]:
        return self._assigned_hub

    @property
    def sub_status(self) -> Optional[str]:
        return self._sub_status

    @property
    def etag(self) -> Optional[str]:
        return self._etag

    @property
    def payload(self) -> JSONSerializable:
        return self._payload


class RegistrationResult(object):
    """
    The final result of a completed registration attempt
    :ivar operation_id: The id of the operation as returned by the registration request.
    :ivar status: The status of the registration process as returned by the service
    :ivar registration_state: Details like device id and assigned hub returned
    from the provisioning service.
    """

    def __init__(
        self, operation_id: str, status: str, registration_state: RegistrationState
    ) -> None:
        self._operation_id = operation_id
        self._status = status
        self._registration_state = registration_state

    @property
    def operation_id(self) -> str:
        return self._operation_id

    @property
    def status(self) -> str:
        return self._status

    @property
    def registration_state(self) -> RegistrationState:
        return self._registration_state

    @property
    def assigned_hub(self) -> Optional[str]:
        return self._registration_state.assigned_hub

    @property
    def device_id(self) -> Optional[str]:
        return self._registration_state.device_id


class FileUploadResult(object):
    """Outcome of a file upload through IoT Hub

    :ivar str correlation_id: ID for the blob upload
    :ivar str blob_name: Name of the blob in the linked storage account
    :ivar bool is_success: Whether the blob was stored
    :ivar int status_code: Status code returned by the storage account
    """

    def __init__(
        self, correlation_id: str, blob_name: str, is_success: bool, status_code: int
    ) -> None:
        self.correlation_id = correlation_id
        self.blob_name = blob_name
        self.is_success = is_success
        self.status_code = status_code


class Property(object):
    """A change to a writable property, requested by IoT Central.

    :ivar str name: The name of the property
    :ivar value: The requested value
    :ivar int version: The version of the desired properties that carried the request
    :ivar bool wrapped: True if the requested value arrived in the form {"value": ...}
    """

    def __init__(
        self,
        name: str,
        value: JSONSerializable,
        version: int,
        ack_fn: Callable[["Property", int, str], Awaitable[None]],
        wrapped: bool = False,
    ) -> None:
        self.name = name
        self.value = value
        self.version = version
        self.wrapped = wrapped
        self._ack_fn = ack_fn

    def __repr__(self) -> str:
        return "Property(name={}, value={}, version={})".format(self.name, self.value, self.version)

    async def ack(
        self, status_message: str = "completed", status_code: int = constant.STATUS_SUCCESS
    ) -> None:
        """Report the property as applied, updating the reported properties of the device.

        :param str status_message: A description of the outcome
        :param int status_code: A status code for the outcome (default 200)

        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if the report could not be sent
        """
        await self._ack_fn(self, status_code, status_message)


class Command(object):
    """A command invocation received from IoT Central.

    A command can be replied to at most once.

    :ivar str name: The name of the command
    :ivar str request_id: The id of the invocation
    :ivar payload: The JSON payload sent with the command
    """

    def __init__(
        self,
        name: str,
        request_id: str,
        payload: JSONSerializable,
        reply_fn: Callable[[DirectMethodResponse], Awaitable[None]],
        update_fn: Callable[[JSONSerializable, Dict[str, str]], Awaitable[None]],
    ) -> None:
        self.name = name
        self.request_id = request_id
        self.payload = payload
        self._reply_fn = reply_fn
        self._update_fn = update_fn
        self._replied = False

    def __repr__(self) -> str:
        return "Command(name={}, request_id={})".format(self.name, self.request_id)

    @property
    def replied(self) -> bool:
        return self._replied

    async def reply(
        self,
        status: Union[constant.IOTCCommandResponse, int] = constant.IOTCCommandResponse.SUCCESS,
        message: JSONSerializable = None,
    ) -> None:
        """Send the response to the command invocation.

        :param status: The outcome of the command. Either an IOTCCommandResponse, or a status code
            (e.g. 202 to indicate the command will complete asynchronously).
        :param message: The JSON payload of the response

        :raises: CommandReplyError if the command has already been replied to
        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if the response could not be sent
        """
        if self._replied:
            raise CommandReplyError(
                "Command '{}' (rid: {}) has already been replied to".format(
                    self.name, self.request_id
                )
            )
        if isinstance(status, constant.IOTCCommandResponse):
            status_code = status.value
        else:
            status_code = int(status)
        # Claim the reply before suspending so that concurrent replies are rejected
        self._replied = True
        try:
            await self._reply_fn(
                DirectMethodResponse(
                    request_id=self.request_id, status=status_code, payload=message
                )
            )
        except (Exception, asyncio.CancelledError):
            # The response was not delivered, so a reply may be attempted again
            self._replied = False
            raise
        logger.debug("Replied to command '{}' (rid: {})".format(self.name, self.request_id))

    async def update(
        self, message: JSONSerializable, status_code: int = constant.STATUS_SUCCESS
    ) -> None:
        """Report the result of a command that is completing asynchronously.

        The result is sent as telemetry correlated with the original invocation.

        :param message: The result of the command
        :param int status_code: The status of the command (default 200)

        :raises: NotConnectedError if the client is not connected
        :raises: TransportError if the result could not be sent
        """
        properties: Dict[str, Any] = {
            constant.MESSAGE_SCHEMA_PROPERTY: constant.ASYNC_COMMAND_RESULT_SCHEMA,
            constant.COMMAND_NAME_PROPERTY: self.name,
            constant.COMMAND_REQUEST_ID_PROPERTY: self.request_id,
            constant.COMMAND_STATUS_CODE_PROPERTY: str(status_code),
        }
        await self._update_fn({self.name: message}, properties)
