# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module drives the registration of a device with the Device Provisioning Service and
resolves the result into a connection string for the assigned IoT Hub"""

import aiohttp
import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Union
from .exceptions import OperationTimeoutError, RegistrationError, TransportError
from .custom_typing import ProvisioningPayload, ProvisioningResponseBody
from . import config, constant, credentials, models
from . import connection_string as cs
from . import request_response as rr
from . import sastoken as st
from . import signing_mechanism as sm
from . import provisioning_http_client as http

logger = logging.getLogger(__name__)

SleepFunction = Callable[[float], Awaitable[None]]
ClientFactory = Callable[[config.ProvisioningClientConfig], http.ProvisioningHTTPClient]

STATUS_ASSIGNED = "assigned"
STATUS_ASSIGNING = "assigning"


class ProvisioningOrchestrator:
    def __init__(
        self,
        provisioning_endpoint: str = constant.PROVISIONING_GLOBAL_ENDPOINT,
        client_factory: ClientFactory = http.ProvisioningHTTPClient,
        sleep: SleepFunction = asyncio.sleep,
        polling_interval: float = constant.DEFAULT_POLLING_INTERVAL,
    ) -> None:
        """Drives the registration handshake with the Device Provisioning Service.

        :param str provisioning_endpoint: Hostname of the Device Provisioning Service
        :param client_factory: Callable creating the protocol client from a
            ProvisioningClientConfig (defaults to ProvisioningHTTPClient)
        :param sleep: Coroutine function used to wait between polls (defaults to asyncio.sleep)
        :param float polling_interval: Seconds between polls when the service does not
            indicate an interval
        """
        self.provisioning_endpoint = provisioning_endpoint
        self._client_factory = client_factory
        self._sleep = sleep
        self._polling_interval = polling_interval

    async def register(
        self,
        scope_id: str,
        protocol: Union[constant.IOTCProtocol, str],
        credential: credentials.Credential,
        device_id: str,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Register the device and return the connection string for its assigned hub.

        A connection string credential is returned unchanged, without contacting the service.

        :param str scope_id: The ID scope of the IoT Central application
        :param protocol: The protocol the device will use with the assigned hub. Registration
            itself always takes place over HTTPS.
        :param credential: The credential of the device
        :param str device_id: The id of the device (registration id)
        :param str model_id: The model id to associate the device with (optional)
        :param float timeout: Seconds to allow for registration (optional)

        :returns: Connection string for the assigned hub
        :rtype: str

        :raises: RegistrationError if the service reports a failure
        :raises: OperationTimeoutError if registration does not complete within the timeout
        :raises: TransportError if the service cannot be reached
        :raises: CredentialError if the credential cannot be used
        """
        if not credential.requires_provisioning:
            logger.debug("Connection string provided. Registration not required")
            return str(credential.connection_string)  # type: ignore

        logger.debug(
            "Registering device {} with scope {} (device will use {})".format(
                device_id, scope_id, constant.parse_enum(constant.IOTCProtocol, protocol).value
            )
        )
        if timeout is not None:
            try:
                result = await asyncio.wait_for(
                    self.register_device(scope_id, credential, device_id, model_id), timeout
                )
            except asyncio.TimeoutError as e:
                logger.debug("Registration did not complete within {} seconds".format(timeout))
                raise OperationTimeoutError(
                    "Registration did not complete within {} seconds".format(timeout)
                ) from e
        else:
            result = await self.register_device(scope_id, credential, device_id, model_id)

        return build_connection_string(result, credential, device_id)

    async def register_device(
        self,
        scope_id: str,
        credential: credentials.Credential,
        device_id: str,
        model_id: Optional[str] = None,
    ) -> models.RegistrationResult:
        """Submit a registration and poll its operation until it reaches a terminal state.

        :returns: The result of a successful registration
        :rtype: :class:`RegistrationResult`

        :raises: RegistrationError if the service reports a failure
        :raises: TransportError if the service cannot be reached
        """
        client_config = await self._create_client_config(scope_id, credential, device_id)
        client = self._client_factory(client_config)
        payload: Optional[ProvisioningPayload] = None
        if model_id:
            payload = {"iotcModelId": model_id}
        try:
            response = await self._send_with_retry(lambda: client.send_register(payload))
            while True:
                decoded_response = _decode_response(response)
                registration_status = decoded_response.get("status")
                operation_id = decoded_response.get("operationId")
                if registration_status == STATUS_ASSIGNED:
                    logger.info(
                        "Device {} assigned to {}".format(
                            device_id,
                            decoded_response.get("registrationState", {}).get("assignedHub"),
                        )
                    )
                    return _create_registration_result(decoded_response)
                elif registration_status == STATUS_ASSIGNING and operation_id:
                    interval = _get_retry_after(response, self._polling_interval)
                    logger.debug(
                        "Registration operation {} still assigning. Polling again in {} seconds".format(
                            operation_id, interval
                        )
                    )
                    await self._sleep(interval)
                    response = await self._send_with_retry(
                        lambda: client.send_polling(operation_id)  # type: ignore
                    )
                else:
                    raise _create_registration_error(decoded_response, response.status)
        finally:
            await client.shutdown()

    async def _send_with_retry(self, send: Callable[[], Awaitable[rr.Response]]) -> rr.Response:
        """Send a request, repeating it while the service is throttling or unavailable"""
        while True:
            try:
                response = await send()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransportError("Unable to reach the Device Provisioning Service") from e
            if response.status >= 429:
                retry_after = _get_retry_after(response, self._polling_interval)
                logger.debug(
                    "Device Provisioning Service responded with status {}. Retrying after {} seconds (rid: {})".format(
                        response.status, retry_after, response.request_id
                    )
                )
                await self._sleep(retry_after)
            elif response.status >= 300:
                logger.error(
                    "Device Provisioning Service responded with a failed status - {} (rid: {})".format(
                        response.status, response.request_id
                    )
                )
                try:
                    decoded_response = json.loads(response.body)
                except ValueError:
                    decoded_response = {"message": response.body}
                if not isinstance(decoded_response, dict):
                    decoded_response = {"message": str(decoded_response)}
                raise _create_registration_error(decoded_response, response.status)
            else:
                return response

    async def _create_client_config(
        self, scope_id: str, credential: credentials.Credential, device_id: str
    ) -> config.ProvisioningClientConfig:
        sastoken = None
        if isinstance(credential, credentials.SymmetricKeyCredential):
            generator = st.SasTokenGenerator(
                signing_mechanism=sm.SymmetricKeySigningMechanism(credential.key),
                uri=_format_sas_uri(scope_id, device_id),
                ttl=constant.DEFAULT_EXPIRATION_SECONDS,
                key_name=constant.PROVISIONING_SAS_KEY_NAME,
            )
            sastoken = await generator.generate_sastoken()
        return config.ProvisioningClientConfig(
            registration_id=device_id,
            id_scope=scope_id,
            hostname=self.provisioning_endpoint,
            ssl_context=credentials.create_ssl_context(credential),
            sastoken=sastoken,
        )


def build_connection_string(
    result: models.RegistrationResult, credential: credentials.Credential, device_id: str
) -> str:
    """Build the connection string for the hub a device was assigned to

    :raises: RegistrationError if the result does not contain an assigned hub
    :raises: ValueError if the credential cannot be expressed in a connection string
    """
    if not result.assigned_hub:
        raise RegistrationError(None, "Registration result did not contain an assigned hub")
    assigned_device_id = result.device_id or device_id
    if isinstance(credential, credentials.X509Credential):
        return cs.format_connection_string(result.assigned_hub, assigned_device_id, x509=True)
    elif isinstance(credential, credentials.SymmetricKeyCredential):
        return cs.format_connection_string(
            result.assigned_hub, assigned_device_id, shared_access_key=credential.key
        )
    else:
        raise ValueError("Unsupported credential for connection string: {}".format(credential))


def _decode_response(response: rr.Response) -> ProvisioningResponseBody:
    try:
        decoded_response = json.loads(response.body)
    except ValueError as e:
        raise RegistrationError(
            response.status, "Unable to decode response from Device Provisioning Service"
        ) from e
    if not isinstance(decoded_response, dict):
        raise RegistrationError(
            response.status, "Unexpected response from Device Provisioning Service"
        )
    return decoded_response


def _get_retry_after(response: rr.Response, default: float) -> float:
    if response.properties:
        try:
            return float(response.properties.get("retry-after", default))
        except (TypeError, ValueError):
            logger.warning("Invalid retry-after value received. Using default polling interval")
    return default


def _create_registration_result(
    decoded_response: ProvisioningResponseBody,
) -> models.RegistrationResult:
    decoded_state = decoded_response.get("registrationState") or {}
    registration_state = models.RegistrationState(
        device_id=decoded_state.get("deviceId"),
        assigned_hub=decoded_state.get("assignedHub"),
        sub_status=decoded_state.get("substatus", decoded_state.get("subStatus")),
        etag=decoded_state.get("etag"),
        payload=decoded_state.get("payload"),
    )
    return models.RegistrationResult(
        operation_id=decoded_response.get("operationId", ""),
        status=decoded_response.get("status", ""),
        registration_state=registration_state,
    )


def _create_registration_error(
    decoded_response: ProvisioningResponseBody, http_status: int
) -> RegistrationError:
    """Create a RegistrationError from the errorCode/message of a response, falling back to the
    error details of the registration state, then the status"""
    decoded_state = decoded_response.get("registrationState") or {}
    code = decoded_response.get("errorCode", decoded_state.get("errorCode"))
    message = decoded_response.get("message", decoded_state.get("errorMessage"))
    status = decoded_response.get("status")
    if code is None:
        code = http_status if http_status >= 300 else status
    if message is None:
        message = "Registration ended with status '{}'".format(status)
    return RegistrationError(code, message)


def _format_sas_uri(id_scope: str, registration_id: str) -> str:
    """Format the SAS URI for using the Device Provisioning Service"""
    return "{id_scope}/registrations/{registration_id}".format(
        id_scope=id_scope, registration_id=registration_id
    )
