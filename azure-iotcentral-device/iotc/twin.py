# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the synchronization of the device twin with the writable properties
delivered to, and acknowledged by, the device.
"""
import logging
from typing import Callable, Dict, Optional
from .custom_typing import JSONSerializable, Twin, TwinPatch, WritablePropertyResponse
from .transport import Transport
from . import models

logger = logging.getLogger(__name__)

# Returns True if the Property was delivered to a listener
PropertyEmitter = Callable[[models.Property], bool]


def create_writable_property_response(
    value: JSONSerializable, ack_code: int, ack_description: str, ack_version: Optional[int]
) -> WritablePropertyResponse:
    response: WritablePropertyResponse = {
        "value": value,
        "ac": ack_code,
        "ad": ack_description,
    }
    if ack_version is not None:
        response["av"] = ack_version
    return response


class TwinState(object):
    """The device twin as last known by the device"""

    def __init__(self, twin: Optional[Twin] = None) -> None:
        twin = twin or {}
        self.desired: TwinPatch = dict(twin.get("desired", {}))
        self.reported: TwinPatch = dict(twin.get("reported", {}))

    @property
    def desired_version(self) -> Optional[int]:
        return _get_version(self.desired)

    @property
    def reported_version(self) -> Optional[int]:
        return _get_version(self.reported)


class TwinSynchronizer(object):
    """Tracks the versions of writable properties so that each requested change is delivered
    to the device at most once.

    A desired property is delivered when its version is greater than both the last version
    delivered and the last version acknowledged for that property.
    """

    def __init__(
        self,
        transport: Transport,
        emit: PropertyEmitter,
        check_connection: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        :param transport: The Transport used to read and write the twin
        :param emit: Called with each Property to deliver. Returns True if it was delivered.
        :param check_connection: Called before writing to the twin. Raises if writing is not
            currently possible.
        """
        self._transport = transport
        self._emit = emit
        self._check_connection = check_connection
        self._state: Optional[TwinState] = None
        self._delivered_versions: Dict[str, int] = {}
        self._acked_versions: Dict[str, int] = {}

    @property
    def state(self) -> Optional[TwinState]:
        return self._state

    def last_delivered_version(self, name: str) -> Optional[int]:
        return self._delivered_versions.get(name)

    def last_acked_version(self, name: str) -> Optional[int]:
        return self._acked_versions.get(name)

    async def fetch(self) -> TwinState:
        """Retrieve the twin from IoT Hub and store it.

        Acknowledgements already present in the reported properties are treated as applied.

        :raises: TransportError if the twin could not be retrieved
        """
        logger.debug("Fetching twin...")
        twin = await self._transport.get_twin()
        self._state = TwinState(twin)
        for name, value in self._state.reported.items():
            if name.startswith("$"):
                continue
            if isinstance(value, dict) and isinstance(value.get("av"), int):
                self._record_acked(name, value["av"])
        logger.debug(
            "Twin fetched (desired version: {}, reported version: {})".format(
                self._state.desired_version, self._state.reported_version
            )
        )
        return self._state

    async def subscribe_desired(self) -> None:
        """Begin receiving desired property patches

        :raises: TransportError if receiving could not be enabled
        """
        await self._transport.enable_twin_patches()

    def handle_desired_patch(self, patch: TwinPatch) -> None:
        """Deliver the writable properties in a desired properties patch that have not already
        been delivered or acknowledged"""
        if self._state is None:
            self._state = TwinState()
        desired = self._state.desired
        # Metadata of the patched properties is replaced by that of the patch, if any
        metadata = desired.get("$metadata")
        if isinstance(metadata, dict):
            metadata = {name: meta for name, meta in metadata.items() if name not in patch}
            patch_metadata = patch.get("$metadata")
            if isinstance(patch_metadata, dict):
                metadata.update(patch_metadata)
        desired.update(patch)
        if metadata is not None:
            desired["$metadata"] = metadata
        self._deliver(patch)

    def reconcile_desired(self) -> None:
        """Deliver the writable properties in the last fetched twin that have not already been
        delivered or acknowledged"""
        if self._state is None:
            logger.debug("No twin fetched. Nothing to reconcile")
            return
        self._deliver(self._state.desired)

    async def report_property(
        self,
        name: str,
        value: JSONSerializable,
        status_code: Optional[int] = None,
        status_message: Optional[str] = None,
        version: Optional[int] = None,
    ) -> None:
        """Report the value of a single property.

        If a status code is given, the property is reported in acknowledgement form, i.e.
        {"value": ..., "ac": <code>, "ad": <message>, "av": <version>}

        :raises: TransportError if the report could not be sent
        """
        reported_value: JSONSerializable
        if status_code is None:
            reported_value = value
        else:
            reported_value = dict(
                create_writable_property_response(value, status_code, status_message or "", version)
            )
        await self.send_reported({name: reported_value})

    async def send_reported(self, patch: TwinPatch) -> None:
        """Send a reported properties patch

        :raises: TransportError if the patch could not be sent or was rejected
        """
        if self._check_connection:
            self._check_connection()
        await self._transport.update_reported_properties(patch)
        if self._state is not None:
            self._state.reported.update(patch)

    async def ack(self, prop: models.Property, status_code: int, status_message: str) -> None:
        """Acknowledge a delivered Property"""
        if prop.wrapped:
            await self.report_property(
                prop.name, prop.value, status_code, status_message, prop.version
            )
        else:
            await self.report_property(prop.name, prop.value)
        self._record_acked(prop.name, prop.version)
        logger.debug("Acknowledged property '{}' (version: {})".format(prop.name, prop.version))

    def _deliver(self, desired: TwinPatch) -> None:
        section_version = _get_version(desired)
        for name, value in desired.items():
            if name.startswith("$"):
                continue
            version = _get_property_version(desired, name)
            if version is None:
                version = section_version
            if version is not None and not self._is_newer(name, version):
                logger.debug(
                    "Property '{}' at version {} already applied. Skipping".format(name, version)
                )
                continue
            wrapped = isinstance(value, dict) and "value" in value
            prop = models.Property(
                name=name,
                value=value["value"] if wrapped else value,  # type: ignore
                version=version if version is not None else 0,
                ack_fn=self.ack,
                wrapped=wrapped,
            )
            if self._emit(prop) and version is not None:
                self._delivered_versions[name] = version

    def _is_newer(self, name: str, version: int) -> bool:
        delivered = self._delivered_versions.get(name)
        acked = self._acked_versions.get(name)
        if delivered is not None and version <= delivered:
            return False
        if acked is not None and version <= acked:
            return False
        return True

    def _record_acked(self, name: str, version: int) -> None:
        if version > self._acked_versions.get(name, -1):
            self._acked_versions[name] = version


def _get_version(properties: TwinPatch) -> Optional[int]:
    version = properties.get("$version")
    if isinstance(version, int):
        return version
    return None


def _get_property_version(desired: TwinPatch, name: str) -> Optional[int]:
    """Version at which a desired property last changed, from the '$metadata' of the twin"""
    metadata = desired.get("$metadata")
    if not isinstance(metadata, dict):
        return None
    property_metadata = metadata.get(name)
    if not isinstance(property_metadata, dict):
        return None
    version = property_metadata.get("$lastUpdatedVersion")
    if isinstance(version, int):
        return version
    return None
