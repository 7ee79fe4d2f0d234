# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Topics used to talk to IoT Hub over MQTT.

Values placed in a topic are percent-encoded with no safe characters, and values read from a
topic are percent-decoded. The '+' character is left as is in both directions, as IoT Hub
does not treat it as a space. The device id is inserted verbatim, as IoT Hub does not decode it.
"""

import functools
import urllib.parse
from typing import Dict, Tuple, Union

_encode = functools.partial(urllib.parse.quote, safe="")
_decode = urllib.parse.unquote

METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"
METHOD_RESPONSE_PREFIX = "$iothub/methods/res/"
TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
TWIN_GET_PREFIX = "$iothub/twin/GET/"
TWIN_REPORTED_PATCH_PREFIX = "$iothub/twin/PATCH/properties/reported/"
TWIN_DESIRED_PATCH_PREFIX = "$iothub/twin/PATCH/properties/desired/"


# Subscriptions


def get_method_topic_for_subscribe() -> str:
    return METHOD_REQUEST_PREFIX + "#"


def get_twin_response_topic_for_subscribe() -> str:
    return TWIN_RESPONSE_PREFIX + "#"


def get_twin_patch_topic_for_subscribe() -> str:
    return TWIN_DESIRED_PATCH_PREFIX + "#"


# Publishes


def get_telemetry_topic_for_publish(device_id: str) -> str:
    return "devices/{}/messages/events/".format(device_id)


def get_method_topic_for_publish(request_id: str, status: Union[str, int]) -> str:
    """Topic for the response to a method request: '$iothub/methods/res/<status>/?$rid=<rid>'"""
    return "{}{}/?$rid={}".format(
        METHOD_RESPONSE_PREFIX, _encode(str(status)), _encode(str(request_id))
    )


def get_twin_request_topic_for_publish(request_id: str) -> str:
    return "{}?$rid={}".format(TWIN_GET_PREFIX, _encode(str(request_id)))


def get_twin_patch_topic_for_publish(request_id: str) -> str:
    return "{}?$rid={}".format(TWIN_REPORTED_PATCH_PREFIX, _encode(str(request_id)))


def insert_message_properties_in_topic(
    topic: str,
    system_properties: Dict[str, str],
    custom_properties: Dict[str, str],
) -> str:
    """Append the encoded system properties, then the encoded custom properties, to a
    telemetry topic

    :param str topic: The telemetry topic
    :param dict system_properties: Mapping of system property names (e.g. '$.ct') to values
    :param dict custom_properties: Mapping of application property names to values
    :returns: The topic with the properties appended
    """
    encoded = [
        urllib.parse.urlencode(properties, quote_via=urllib.parse.quote)
        for properties in (system_properties, custom_properties)
        if properties
    ]
    return topic + "&".join(encoded)


# Incoming topics


def extract_name_from_method_request_topic(topic: str) -> str:
    """Return the method name of a topic of the form
    '$iothub/methods/POST/<method name>/?$rid=<request id>'

    :raises: ValueError if the topic is not a method request topic
    """
    name, _ = _split_incoming_topic(topic, METHOD_REQUEST_PREFIX)
    return name


def extract_request_id_from_method_request_topic(topic: str) -> str:
    """:raises: ValueError if the topic is not a method request topic, or has no request id"""
    _, properties = _split_incoming_topic(topic, METHOD_REQUEST_PREFIX)
    return _request_id(topic, properties)


def extract_status_code_from_twin_response_topic(topic: str) -> str:
    """Return the status of a topic of the form '$iothub/twin/res/<status>/?$rid=<request id>'

    :raises: ValueError if the topic is not a twin response topic
    """
    status, _ = _split_incoming_topic(topic, TWIN_RESPONSE_PREFIX)
    return status


def extract_request_id_from_twin_response_topic(topic: str) -> str:
    """:raises: ValueError if the topic is not a twin response topic, or has no request id"""
    _, properties = _split_incoming_topic(topic, TWIN_RESPONSE_PREFIX)
    return _request_id(topic, properties)


def _split_incoming_topic(topic: str, prefix: str) -> Tuple[str, Dict[str, str]]:
    """Return the decoded path segment following the prefix, and the decoded properties of
    the query string (a key with no '=' has an empty value)
    """
    if not topic.startswith(prefix):
        raise ValueError("Topic does not start with {}: {}".format(prefix, topic))
    path, _, query = topic[len(prefix) :].partition("?")
    segment = path.split("/", 1)[0]
    if not segment:
        raise ValueError("Topic has no value following {}: {}".format(prefix, topic))
    properties = {}
    for pair in query.split("&"):
        if pair:
            key, _, value = pair.partition("=")
            properties[_decode(key)] = _decode(value)
    return _decode(segment), properties


def _request_id(topic: str, properties: Dict[str, str]) -> str:
    request_id = properties.get("$rid")
    if not request_id:
        raise ValueError("No request id in topic: {}".format(topic))
    return request_id
