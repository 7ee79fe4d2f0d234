# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import aiohttp
import asyncio
import json
import logging
import urllib.parse
import uuid
from typing import Dict, Optional
from .custom_typing import DeviceRegistrationRequest, ProvisioningPayload
from . import config, user_agent
from . import request_response as rr

logger = logging.getLogger(__name__)

# Header Definitions
HEADER_AUTHORIZATION = "Authorization"
HEADER_USER_AGENT = "User-Agent"
HEADER_ACCEPT = "Accept"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_RETRY_AFTER = "Retry-After"

# Query parameter definitions
PARAM_API_VERSION = "api-version"

# Other definitions
HTTP_TIMEOUT = 10
CONTENT_TYPE_JSON = "application/json; charset=utf-8"


class ProvisioningHTTPClient:
    """Client for the REST API of the Device Provisioning Service.

    Responses are returned as-is; interpreting them is left to the caller.
    """

    def __init__(self, client_config: config.ProvisioningClientConfig) -> None:
        """Instantiate the client

        :param client_config: The config object for the client
        :type client_config: :class:`ProvisioningClientConfig`
        """
        self._id_scope = client_config.id_scope
        self._registration_id = client_config.registration_id
        self._api_version = client_config.api_version
        self._hostname = client_config.hostname
        self._ssl_context = client_config.ssl_context
        self._sastoken = client_config.sastoken
        self._user_agent_string = user_agent.get_provisioning_user_agent()

        if client_config.proxy_options:
            logger.warning("Proxy use with registration over HTTP not supported")

        self._session = _create_client_session()

    async def shutdown(self) -> None:
        """Shut down the client

        Invoke only when complete finished with the client for graceful exit.
        """
        await self._session.close()
        # Wait 250ms for the underlying SSL connections to close
        # See: https://docs.aiohttp.org/en/stable/client_advanced.html#graceful-shutdown
        await asyncio.sleep(0.25)

    async def send_register(self, payload: Optional[ProvisioningPayload] = None) -> rr.Response:
        """Send a registration request for the device.

        :param dict payload: Data sent to the service alongside the registration (optional)

        :returns: The response from the Device Provisioning Service
        :rtype: :class:`Response`
        """
        url = "https://{hostname}/{path}".format(
            hostname=self._hostname,
            path=_get_register_path(self._id_scope, self._registration_id),
        )
        data: DeviceRegistrationRequest = {"registrationId": self._registration_id}
        if payload is not None:
            data["payload"] = payload
        request_id = str(uuid.uuid4())

        logger.debug(
            "Sending register request to Device Provisioning Service... (rid: {})".format(
                request_id
            )
        )
        logger.debug(
            "The payload sent to Device Provisioning Service is {}".format(json.dumps(data))
        )
        async with self._session.put(
            url=url,
            json=data,
            params=self._get_query_params(),
            headers=self._get_headers(),
            ssl=self._ssl_context,
        ) as response:
            return await _create_response(request_id, response)

    async def send_polling(self, operation_id: str) -> rr.Response:
        """Query the status of a registration operation.

        :param str operation_id: The id of the operation returned by the registration request

        :returns: The response from the Device Provisioning Service
        :rtype: :class:`Response`
        """
        url = "https://{hostname}/{path}".format(
            hostname=self._hostname,
            path=_get_operation_status_path(self._id_scope, self._registration_id, operation_id),
        )
        request_id = str(uuid.uuid4())

        logger.debug(
            "Sending polling request for operation {} to Device Provisioning Service... (rid: {})".format(
                operation_id, request_id
            )
        )
        async with self._session.get(
            url=url,
            params=self._get_query_params(),
            headers=self._get_headers(),
            ssl=self._ssl_context,
        ) as response:
            return await _create_response(request_id, response)

    def _get_query_params(self) -> Dict[str, str]:
        return {PARAM_API_VERSION: self._api_version}

    def _get_headers(self) -> Dict[str, str]:
        # NOTE: Other headers are auto-generated by aiohttp
        headers = {
            HEADER_ACCEPT: "application/json",
            HEADER_CONTENT_TYPE: CONTENT_TYPE_JSON,
            HEADER_USER_AGENT: urllib.parse.quote_plus(self._user_agent_string),
        }
        # If using SAS auth, pass the auth header
        if self._sastoken:
            headers[HEADER_AUTHORIZATION] = str(self._sastoken)
        return headers


async def _create_response(request_id: str, response: aiohttp.ClientResponse) -> rr.Response:
    body = await response.text()
    properties = {}
    retry_after = response.headers.get(HEADER_RETRY_AFTER)
    if retry_after is not None:
        properties["retry-after"] = retry_after
    logger.debug(
        "Received response with status {} from Device Provisioning Service (rid: {})".format(
            response.status, request_id
        )
    )
    return rr.Response(
        request_id=request_id, status=response.status, body=body, properties=properties
    )


def _get_register_path(id_scope: str, registration_id: str) -> str:
    return "{id_scope}/registrations/{registration_id}/register".format(
        id_scope=urllib.parse.quote(id_scope, safe=""),
        registration_id=urllib.parse.quote(registration_id, safe=""),
    )


def _get_operation_status_path(id_scope: str, registration_id: str, operation_id: str) -> str:
    return "{id_scope}/registrations/{registration_id}/operations/{operation_id}".format(
        id_scope=urllib.parse.quote(id_scope, safe=""),
        registration_id=urllib.parse.quote(registration_id, safe=""),
        operation_id=urllib.parse.quote(operation_id, safe=""),
    )


def _create_client_session() -> aiohttp.ClientSession:
    """Create and return a aiohttp ClientSession object"""
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    session = aiohttp.ClientSession(timeout=timeout)
    logger.debug("Creating HTTP Session with timeout of {}".format(timeout.total))
    return session
