# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Shared Access Signature (SAS) Tokens used to authenticate with IoT Hub and the
Device Provisioning Service"""

import asyncio
import logging
import time
import urllib.parse
from typing import Dict, Optional
from .signing_mechanism import SigningMechanism

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "SharedAccessSignature "
DEFAULT_TOKEN_UPDATE_MARGIN = 120
RENEWAL_RETRY_INTERVAL = 10
_FIELD_ORDER = ("sr", "sig", "se", "skn")
_REQUIRED_FIELDS = frozenset(("sr", "sig", "se"))


class SasTokenError(Exception):
    """Error in SasToken"""

    pass


class SasToken:
    """A parsed SAS Token string of the form
    'SharedAccessSignature sr=<uri>&sig=<signature>&se=<expiry>[&skn=<key name>]'
    """

    def __init__(self, sastoken_str: str) -> None:
        """
        :param str sastoken_str: The SAS Token string

        :raises: ValueError if SAS Token string is invalid
        """
        self._token_str = sastoken_str
        self._fields = _parse_fields(sastoken_str)

    def __str__(self) -> str:
        return self._token_str

    def __repr__(self) -> str:
        return "SasToken(sr={}, se={})".format(self._fields["sr"], self._fields["se"])

    def is_expired(self) -> bool:
        """Returns True if the SAS Token has expired"""
        return time.time() > self.expiry_time

    @property
    def expiry_time(self) -> float:
        return float(self._fields["se"])

    @property
    def resource_uri(self) -> str:
        return urllib.parse.unquote(self._fields["sr"])

    @property
    def signature(self) -> str:
        return urllib.parse.unquote(self._fields["sig"])

    @property
    def key_name(self) -> Optional[str]:
        return self._fields.get("skn")


def _parse_fields(sastoken_str: str) -> Dict[str, str]:
    if not sastoken_str.startswith(TOKEN_PREFIX):
        raise ValueError("Invalid SAS Token string: Not a SAS Token")
    fields: Dict[str, str] = {}
    for pair in sastoken_str[len(TOKEN_PREFIX) :].split("&"):
        name, sep, value = pair.strip().partition("=")
        if not sep:
            raise ValueError("Invalid SAS Token string: Field '{}' has no value".format(name))
        fields[name] = value
    missing = _REQUIRED_FIELDS.difference(fields)
    if missing:
        raise ValueError(
            "Invalid SAS Token string: Missing fields {}".format(", ".join(sorted(missing)))
        )
    try:
        float(fields["se"])
    except ValueError as e:
        raise ValueError("Invalid SAS Token string: Expiry is not a number") from e
    unknown = set(fields).difference(_FIELD_ORDER)
    if unknown:
        logger.warning("Unexpected fields present in SAS Token: {}".format(sorted(unknown)))
    return fields


class SasTokenGenerator:
    def __init__(
        self,
        signing_mechanism: SigningMechanism,
        uri: str,
        ttl: int = 3600,
        key_name: Optional[str] = None,
    ) -> None:
        """Generates SasTokens for a resource, signed with the given signing mechanism

        :param signing_mechanism: The signing mechanism used to sign tokens
        :type signing mechanism: :class:`SigningMechanism`
        :param str uri: The URI of the resource the tokens grant access to
        :param int ttl: Time to live for generated tokens, in seconds (default 3600)
        :param str key_name: The name of the policy key used to sign (e.g. 'registration').
            If not provided, the token will not contain a key name
        """
        self.signing_mechanism = signing_mechanism
        self.uri = uri
        self.ttl = ttl
        self.key_name = key_name

    async def generate_sastoken(self) -> SasToken:
        """Generate a new SasToken that expires after the time to live

        :raises: SasTokenError if the token cannot be signed
        """
        expiry = str(int(time.time()) + self.ttl)
        encoded_uri = urllib.parse.quote(self.uri, safe="")
        try:
            signature = await self.signing_mechanism.sign("{}\n{}".format(encoded_uri, expiry))
        except Exception as e:
            raise SasTokenError("Unable to sign SAS Token for {}".format(self.uri)) from e

        fields = {"sr": encoded_uri, "sig": urllib.parse.quote(signature, safe=""), "se": expiry}
        if self.key_name:
            fields["skn"] = self.key_name
        body = "&".join(
            "{}={}".format(name, fields[name]) for name in _FIELD_ORDER if name in fields
        )
        return SasToken(TOKEN_PREFIX + body)


class SasTokenProvider:
    """Keeps a valid SasToken available, renewing it shortly before it expires.

    Instantiate with .create_from_generator() from within a running event loop.
    """

    def __init__(self, initial_token: SasToken, generator: SasTokenGenerator) -> None:
        self._generator = generator
        self._sastoken = initial_token
        self._token_update_margin = DEFAULT_TOKEN_UPDATE_MARGIN
        self._token_changed = asyncio.Condition()
        self._renewal_task = asyncio.create_task(self._renew_periodically())

    @classmethod
    async def create_from_generator(cls, generator: SasTokenGenerator) -> "SasTokenProvider":
        """Create a SasTokenProvider with an initial token from the generator

        :param generator: A SasTokenGenerator to generate SasTokens with
        :type generator: SasTokenGenerator
        :raises: SasTokenError if an initial SasToken cannot be generated
        :raises: SasTokenError if the initial SasToken generated is invalid
        """
        initial_token = await generator.generate_sastoken()
        if initial_token.is_expired():
            raise SasTokenError("Newly generated SAS Token has already expired")
        return cls(initial_token, generator)

    def get_current_sastoken(self) -> SasToken:
        """Return the current SasToken"""
        return self._sastoken

    async def wait_for_new_sastoken(self, known_token: Optional[SasToken] = None) -> SasToken:
        """Wait until the current SasToken is a different one than the known token, and
        return it. Returns immediately if the token was already replaced.

        :param known_token: The token the caller already has. Defaults to the current token.
        :type known_token: :class:`SasToken`
        """
        if known_token is None:
            known_token = self._sastoken
        async with self._token_changed:
            await self._token_changed.wait_for(lambda: self._sastoken is not known_token)
        return self._sastoken

    async def shutdown(self) -> None:
        """Stop renewing the SasToken"""
        self._renewal_task.cancel()
        await asyncio.gather(self._renewal_task, return_exceptions=True)

    async def _renew_periodically(self) -> None:
        renew_at = self._sastoken.expiry_time - self._token_update_margin
        while True:
            await asyncio.sleep(max(renew_at - time.time(), 0))
            try:
                new_token = await self._generator.generate_sastoken()
            except Exception as e:
                logger.error(
                    "SAS Token renewal failed ({}). Trying again in {} seconds".format(
                        e, RENEWAL_RETRY_INTERVAL
                    )
                )
                renew_at = time.time() + RENEWAL_RETRY_INTERVAL
                continue
            logger.debug("SAS Token renewed, now expires at {}".format(new_token.expiry_time))
            async with self._token_changed:
                self._sastoken = new_token
                self._token_changed.notify_all()
            # Tokens with a short time to live are not renewed more often than the retry interval
            renew_at = max(
                new_token.expiry_time - self._token_update_margin,
                time.time() + RENEWAL_RETRY_INTERVAL,
            )
