# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import aiohttp
import asyncio
import base64
import json
import logging
import urllib.parse
from typing import Dict, List, Optional, Union, cast
from .custom_typing import StorageInfo
from .exceptions import TransportError
from . import config, constant, models, user_agent

logger = logging.getLogger(__name__)

# Header Definitions
HEADER_AUTHORIZATION = "Authorization"
HEADER_USER_AGENT = "User-Agent"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_CONTENT_ENCODING = "Content-Encoding"
HEADER_MESSAGE_ID = "iothub-messageid"
HEADER_APP_PROPERTY_PREFIX = "iothub-app-"
HEADER_BLOB_TYPE = "x-ms-blob-type"

# Query parameter definitions
PARAM_API_VERSION = "api-version"

# Other definitions
HTTP_TIMEOUT = 10
CONTENT_TYPE_BATCH = "application/vnd.microsoft.iothub.json"

# NOTE: aiohttp 3.x is bugged on Windows on Python 3.8.x - 3.10.6
# If running the application using asyncio.run(), there will be an issue with the Event Loop
# raising a spurious RuntimeError on application exit.
# The best course of action is for the end user to use loop.run_until_complete() instead of
# asyncio.run() in their application, as this will allow for better cleanup.
# See: https://github.com/aio-libs/aiohttp/issues/4324


class IoTHubHTTPClient:
    """Client for the device REST API of IoT Hub.

    Any failure to communicate, or failed status returned by the service, is raised as
    TransportError.
    """

    def __init__(self, client_config: config.IoTHubClientConfig) -> None:
        """Instantiate the client

        :param client_config: The config object for the client
        :type client_config: :class:`IoTHubClientConfig`
        """
        self._device_id = client_config.device_id
        self._hostname = client_config.hostname
        self._user_agent_string = user_agent.get_iothub_user_agent()

        # NOTE: aiohttp only partially supports proxies on a per-request basis
        if client_config.proxy_options:
            logger.warning("Proxy use with IoT Hub over HTTP not supported")

        self._session = _create_client_session()
        self._ssl_context = client_config.ssl_context
        self._sastoken_provider = client_config.sastoken_provider

    async def shutdown(self) -> None:
        """Shut down the client

        Invoke only when complete finished with the client for graceful exit.
        """
        await self._session.close()
        # Wait 250ms for the underlying SSL connections to close
        # See: https://docs.aiohttp.org/en/stable/client_advanced.html#graceful-shutdown
        await asyncio.sleep(0.25)

    async def send_message(self, message: models.Message) -> None:
        """Send a device-to-cloud message

        :param message: The Message to send
        :type message: :class:`models.Message`

        :raises: TransportError if IoTHub responds with failure, or cannot be reached
        :raises: ValueError if the size of the Message payload is too large
        """
        url = self._get_url("devices/{}/messages/events".format(_quote(self._device_id)))
        headers = self._get_headers()
        headers[HEADER_CONTENT_TYPE] = message.content_type
        headers[HEADER_CONTENT_ENCODING] = message.content_encoding
        headers[HEADER_MESSAGE_ID] = message.message_id
        for key, value in message.custom_properties.items():
            headers[HEADER_APP_PROPERTY_PREFIX + key] = value
        data = message.encode_payload()

        logger.debug("Sending telemetry message to IoTHub over HTTP...")
        await self._request("POST", url, "telemetry message", headers=headers, data=data)
        logger.debug("Sending telemetry message succeeded")

    async def send_messages(self, messages: List[models.Message]) -> None:
        """Send multiple device-to-cloud messages in a single request

        :param list messages: The Messages to send

        :raises: TransportError if IoTHub responds with failure, or cannot be reached
        :raises: ValueError if the size of any Message payload is too large
        """
        url = self._get_url("devices/{}/messages/events".format(_quote(self._device_id)))
        headers = self._get_headers()
        headers[HEADER_CONTENT_TYPE] = CONTENT_TYPE_BATCH
        batch = [_format_batch_entry(message) for message in messages]

        logger.debug("Sending batch of {} telemetry messages to IoTHub...".format(len(batch)))
        await self._request("POST", url, "telemetry batch", headers=headers, json=batch)
        logger.debug("Sending telemetry batch succeeded")

    async def get_storage_info_for_blob(self, *, blob_name: str) -> StorageInfo:
        """Request information for uploading a blob file to the storage account linked to IoTHub

        :param str blob_name: The name of the blob that will be uploaded

        :returns: The Azure Storage information returned by IoTHub
        :rtype: dict

        :raises: TransportError if IoTHub responds with failure, or cannot be reached
        """
        url = self._get_url("devices/{}/files".format(_quote(self._device_id)))
        data = {"blobName": blob_name}

        logger.debug("Sending storage info request to IoTHub...")
        response_json = await self._request(
            "POST", url, "storage info request", headers=self._get_headers(), json=data
        )
        logger.debug("Successfully received response from IoTHub for storage info request")
        return cast(StorageInfo, response_json)

    async def upload_blob(
        self,
        *,
        storage_info: StorageInfo,
        data: Union[str, bytes],
        content_type: str,
        encoding: str = "utf-8",
    ) -> int:
        """Upload data as a block blob, using the storage information provided by IoTHub

        :param dict storage_info: The storage information returned by IoTHub
        :param data: The content of the file
        :type data: str or bytes
        :param str content_type: The content type of the file
        :param str encoding: The encoding used for str data

        :returns: The status code returned by the storage account
        :rtype: int

        :raises: TransportError if the storage account cannot be reached
        """
        url = "https://{host}/{container}/{blob}{sas}".format(
            host=storage_info["hostName"],
            container=storage_info["containerName"],
            blob=urllib.parse.quote(storage_info["blobName"]),
            sas=storage_info["sasToken"],
        )
        if isinstance(data, str):
            data = data.encode(encoding)
        headers = {
            HEADER_BLOB_TYPE: "BlockBlob",
            HEADER_CONTENT_TYPE: content_type,
            HEADER_USER_AGENT: urllib.parse.quote_plus(self._user_agent_string),
        }

        logger.debug("Uploading blob {}...".format(storage_info["blobName"]))
        try:
            async with self._session.put(url=url, data=data, headers=headers) as response:
                status = response.status
                if status >= 300:
                    logger.error(
                        "Storage account responded to blob upload with a failed status ({})".format(
                            status
                        )
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError("Failed to reach the storage account") from e
        return status

    async def notify_blob_upload_status(
        self, *, correlation_id: str, is_success: bool, status_code: int, status_description: str
    ) -> None:
        """Notify IoTHub of the result of a blob upload

        :param str correlation_id: ID for the blob upload
        :param bool is_success: Indicates whether the file was uploaded successfully
        :param int status_code: A numeric status code for the file upload
        :param str status_description: A description that corresponds to the status_code

        :raises: TransportError if IoTHub responds with failure, or cannot be reached
        """
        url = self._get_url("devices/{}/files/notifications".format(_quote(self._device_id)))
        data = {
            "correlationId": correlation_id,
            "isSuccess": is_success,
            "statusCode": status_code,
            "statusDescription": status_description,
        }

        logger.debug("Sending blob upload notification to IoTHub...")
        await self._request(
            "POST", url, "blob upload notification", headers=self._get_headers(), json=data
        )
        logger.debug("Successfully sent blob upload notification")

    async def _request(
        self, method: str, url: str, description: str, **kwargs
    ) -> Optional[Union[Dict, List]]:
        try:
            async with self._session.request(
                method,
                url=url,
                params={PARAM_API_VERSION: constant.IOTHUB_API_VERSION},
                ssl=self._ssl_context,
                **kwargs
            ) as response:
                if response.status >= 300:
                    logger.error("Received failure response from IoTHub for {}".format(description))
                    raise TransportError(
                        "IoTHub responded to {description} with a failed status ({status}) - {reason}".format(
                            description=description, status=response.status, reason=response.reason
                        )
                    )
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError("Failed to reach IoTHub for {}".format(description)) from e

        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as e:
            raise TransportError(
                "IoTHub response to {} could not be decoded".format(description)
            ) from e

    def _get_url(self, path: str) -> str:
        return "https://{hostname}/{path}".format(hostname=self._hostname, path=path)

    def _get_headers(self) -> Dict[str, str]:
        # NOTE: Other headers are auto-generated by aiohttp
        headers = {HEADER_USER_AGENT: urllib.parse.quote_plus(self._user_agent_string)}
        # If using SAS auth, pass the auth header
        if self._sastoken_provider:
            headers[HEADER_AUTHORIZATION] = str(self._sastoken_provider.get_current_sastoken())
        return headers


def _quote(value: str) -> str:
    return urllib.parse.quote(value, safe="")


def _format_batch_entry(message: models.Message) -> Dict:
    properties: Dict[str, str] = {
        HEADER_MESSAGE_ID: message.message_id,
        HEADER_CONTENT_TYPE: message.content_type,
        HEADER_CONTENT_ENCODING: message.content_encoding,
    }
    for key, value in message.custom_properties.items():
        properties[HEADER_APP_PROPERTY_PREFIX + key] = value
    return {
        "body": base64.b64encode(message.encode_payload()).decode("ascii"),
        "base64Encoded": True,
        "properties": properties,
    }


def _create_client_session() -> aiohttp.ClientSession:
    """Create and return a aiohttp ClientSession object"""
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    session = aiohttp.ClientSession(timeout=timeout)
    logger.debug("Creating HTTP Session with timeout of {}".format(timeout.total))
    return session
