# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import logging
import socks
import ssl
from typing import Optional, Any, Tuple, Union
from . import constant
from . import sastoken as st


logger = logging.getLogger(__name__)

# The max keep alive is determined by the load balancer currently.
MAX_KEEP_ALIVE_SECS = 1740


string_to_socks_constant_map = {"HTTP": socks.HTTP, "SOCKS4": socks.SOCKS4, "SOCKS5": socks.SOCKS5}
socks_constant_to_string_map = {socks.HTTP: "HTTP", socks.SOCKS4: "SOCKS4", socks.SOCKS5: "SOCKS5"}


class ProxyOptions(object):
    """
    A class containing various options to send traffic through proxy servers by enabling
    proxying of MQTT connection.
    """

    def __init__(
        self,
        proxy_type: Union[str, int],
        proxy_addr: str,
        proxy_port: int,
        proxy_username: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        """
        Initializer for proxy options.
        :param str proxy_type: The type of the proxy server. This can be one of three possible choices: "HTTP", "SOCKS4", or "SOCKS5"
        :param str proxy_addr: IP address or DNS name of proxy server
        :param int proxy_port: The port of the proxy server. Defaults to 1080 for socks and 8080 for http.
        :param str proxy_username: (optional) username for SOCKS5 proxy, or userid for SOCKS4 proxy.This parameter is ignored if an HTTP server is being used.
         If it is not provided, authentication will not be used (servers may accept unauthenticated requests).
        :param str proxy_password: (optional) This parameter is valid only for SOCKS5 servers and specifies the respective password for the username provided.

        :raises: ValueError if the proxy type is invalid
        """
        (self._proxy_type, self._proxy_type_socks) = _format_proxy_type(proxy_type)
        self._proxy_addr = proxy_addr
        self._proxy_port = int(proxy_port)
        self._proxy_username = proxy_username
        self._proxy_password = proxy_password

    @property
    def proxy_type(self) -> str:
        return self._proxy_type

    @property
    def proxy_type_socks(self) -> int:
        return self._proxy_type_socks

    @property
    def proxy_address(self) -> str:
        return self._proxy_addr

    @property
    def proxy_port(self) -> int:
        return self._proxy_port

    @property
    def proxy_username(self) -> Optional[str]:
        return self._proxy_username

    @property
    def proxy_password(self) -> Optional[str]:
        return self._proxy_password


class ClientConfig:
    """
    Class for storing all configurations/options shared across the
    IoT Central device clients.
    """

    def __init__(
        self,
        *,
        ssl_context: ssl.SSLContext,
        hostname: str,
        proxy_options: Optional[ProxyOptions] = None,
        sastoken_provider: Optional[st.SasTokenProvider] = None,
        keep_alive: int = 60,
        websockets: bool = False,
    ) -> None:
        """Initializer for ClientConfig

        :param str hostname: The hostname being connected to
        :param proxy_options: Details of proxy configuration
        :type proxy_options: :class:`ProxyOptions`
        :param ssl_context: SSLContext to use with the client
        :type ssl_context: :class:`ssl.SSLContext`
        :param sastoken_provider: Source of SasTokens used for authentication.
            Not used with x509.
        :type sastoken_provider: :class:`SasTokenProvider`
        :param int keep_alive: Maximum period in seconds between communications with the
            broker.
        :param bool websockets: Enabling/disabling websockets in MQTT. This feature is relevant
            if a firewall blocks port 8883 from use.
        """
        # Network
        self.hostname = hostname
        self.proxy_options = proxy_options
        self.ssl_context = ssl_context

        # Auth
        self.sastoken_provider = sastoken_provider

        # MQTT
        self.keep_alive = _sanitize_keep_alive(keep_alive)
        self.websockets = websockets


class IoTHubClientConfig(ClientConfig):
    def __init__(
        self,
        *,
        device_id: str,
        model_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """
        Config object used for IoT Hub transports, containing all relevant details and options.

        :param str device_id: The device identity being used with the IoT Hub
        :param str model_id: The device model (DTMI) announced when connecting

        Additional parameters found in the docstring of the parent class
        """
        self.device_id = device_id
        self.model_id = model_id
        super().__init__(**kwargs)


class ProvisioningClientConfig(ClientConfig):
    def __init__(
        self,
        *,
        registration_id: str,
        id_scope: str,
        api_version: str = constant.PROVISIONING_API_VERSION,
        sastoken: Optional[st.SasToken] = None,
        **kwargs: Any,
    ) -> None:
        """
        Config object used for Provisioning clients, containing all relevant details and options.

        :param str registration_id: The device registration identity being provisioned
        :param str id_scope: The identity of the provisioning service being used
        :param str api_version: The version of the Device Provisioning Service REST API
        :param sastoken: SasToken used to authorize the registration. Not used with x509.
        :type sastoken: :class:`SasToken`
        """
        self.registration_id = registration_id
        self.id_scope = id_scope
        self.api_version = api_version
        self.sastoken = sastoken
        super().__init__(**kwargs)


# Sanitization #


def _format_proxy_type(proxy_type: Union[str, int]) -> Tuple[str, int]:
    """Returns a tuple of formats for proxy type (string, socks library constant)"""
    try:
        return (proxy_type, string_to_socks_constant_map[proxy_type])  # type: ignore
    except KeyError:
        # Allow the socks library constants to be used directly
        try:
            return (socks_constant_to_string_map[proxy_type], proxy_type)  # type: ignore
        except KeyError:
            raise ValueError("Invalid Proxy Type")


def _sanitize_keep_alive(keep_alive: Any) -> int:
    try:
        keep_alive = int(keep_alive)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for 'keep alive'. Must be a numeric value.")

    if keep_alive <= 0:
        # Not allowing a keep alive of 0 as this would mean frequent ping exchanges.
        raise ValueError("'keep alive' must be greater than 0")

    if keep_alive > MAX_KEEP_ALIVE_SECS:
        raise ValueError("'keep_alive' cannot exceed 1740 seconds (29 minutes)")

    return keep_alive
