# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module resolves the authentication options given to an IoT Central client into a
single, immutable credential"""

import logging
import ssl
from typing import Any, Mapping, Optional, Union
from .exceptions import CredentialError
from . import connection_string as cs
from . import constant, models
from . import signing_mechanism as sm

logger = logging.getLogger(__name__)


class Credential(object):
    """Base class for the credential variants. Not instantiated directly."""

    # Indicates whether the credential is used to register with the Device Provisioning Service
    requires_provisioning = True

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__:
            raise AttributeError("Credential is immutable")
        super().__setattr__(name, value)


class SymmetricKeyCredential(Credential):
    """A device symmetric key (either provided directly, or derived from a group key)

    :ivar str key: The device symmetric key (base64 encoded)
    """

    def __init__(self, key: str) -> None:
        self.key = key

    def __repr__(self) -> str:
        # NOTE: Do not expose the key
        return "SymmetricKeyCredential()"


class X509Credential(Credential):
    """An X509 certificate and key, validated when a TLS connection is established

    :ivar x509: The certificate information
    :type x509: :class:`X509`
    """

    def __init__(self, x509: models.X509) -> None:
        self.x509 = x509

    def __repr__(self) -> str:
        return "X509Credential(cert_file={})".format(self.x509.certificate_file)


class ConnectionStringCredential(Credential):
    """A pre-built device connection string. Provisioning is not required.

    :ivar connection_string: The parsed connection string
    :type connection_string: :class:`ConnectionString`
    """

    requires_provisioning = False

    def __init__(self, connection_string: cs.ConnectionString) -> None:
        self.connection_string = connection_string

    def __repr__(self) -> str:
        return "ConnectionStringCredential(HostName={})".format(
            self.connection_string.get(cs.HOST_NAME)
        )


def derive_device_key(group_key: Union[str, bytes], device_id: str) -> str:
    """Compute the symmetric key of a device from a group enrollment key.

    The device key is the base64 encoded HMAC-SHA256 of the device id, keyed with the decoded
    group key.

    :param group_key: The group enrollment key (base64 encoded)
    :type group_key: str or bytes
    :param str device_id: The id of the device

    :returns: The device key (base64 encoded)
    :rtype: str

    :raises: CredentialError if the group key is not valid base64
    """
    try:
        signing_mechanism = sm.SymmetricKeySigningMechanism(group_key)
    except ValueError as e:
        raise CredentialError("Invalid group key - must be base64 encoded") from e
    return signing_mechanism.digest(device_id)


def resolve_credential(
    auth_type: Union[constant.IOTCConnectType, str], options: Any, device_id: str
) -> Credential:
    """Resolve authentication options into a Credential.

    :param auth_type: The kind of credential described by the options
    :type auth_type: :class:`IOTCConnectType` or str
    :param options: The group key, device key, X509 information or connection string,
        depending on the auth_type
    :param str device_id: The id of the device (used to derive a key from a group key)

    :returns: The resolved Credential
    :raises: CredentialError if the options are malformed for the given auth_type
    :raises: ValueError if the auth_type is not valid
    """
    auth_type = constant.parse_enum(constant.IOTCConnectType, auth_type)

    if auth_type is constant.IOTCConnectType.SYMM_KEY:
        logger.debug("Deriving device key from group key")
        return SymmetricKeyCredential(derive_device_key(_require_str(options), device_id))

    elif auth_type is constant.IOTCConnectType.DEVICE_KEY:
        key = _require_str(options)
        try:
            sm.SymmetricKeySigningMechanism(key)
        except ValueError as e:
            raise CredentialError("Invalid device key - must be base64 encoded") from e
        return SymmetricKeyCredential(key)

    elif auth_type is constant.IOTCConnectType.X509_CERT:
        return X509Credential(_create_x509(options))

    else:
        try:
            connection_string = cs.ConnectionString(_require_str(options))
        except (ValueError, TypeError) as e:
            raise CredentialError("Invalid connection string") from e
        return ConnectionStringCredential(connection_string)


def create_ssl_context(credential: Optional[Credential] = None) -> ssl.SSLContext:
    """Return an SSLContext for connecting to Azure, loaded with the device certificate when
    using X509 authentication.

    :raises: CredentialError if the certificate or key cannot be loaded
    """
    ssl_context = ssl.SSLContext(protocol=ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    ssl_context.load_default_certs()
    if isinstance(credential, X509Credential):
        x509 = credential.x509
        try:
            ssl_context.load_cert_chain(x509.certificate_file, x509.key_file, x509.pass_phrase)
        except (OSError, ssl.SSLError) as e:
            raise CredentialError("Unable to load X509 certificate") from e
    return ssl_context


def _require_str(options: Any) -> str:
    if isinstance(options, bytes):
        return options.decode("utf-8")
    if not isinstance(options, str) or not options:
        raise CredentialError("Expected a non-empty string credential")
    return options


def _create_x509(options: Any) -> models.X509:
    if isinstance(options, models.X509):
        return options
    if isinstance(options, Mapping):
        try:
            return models.X509(
                cert_file=options["cert_file"],
                key_file=options["key_file"],
                pass_phrase=options.get("pass_phrase"),
            )
        except KeyError as e:
            raise CredentialError("X509 options missing '{}'".format(e.args[0])) from e
    raise CredentialError("X509 options must be an X509 object or a mapping")
