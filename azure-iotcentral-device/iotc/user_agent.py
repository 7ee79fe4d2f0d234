# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module is for creating agent strings for IoT Central devices talking to IoT Hub and the
Device Provisioning Service."""

import platform
from .constant import VERSION, IOTC_IDENTIFIER

python_runtime = platform.python_version()
os_type = platform.system()
os_release = platform.version()
architecture = platform.machine()


def _get_common_user_agent() -> str:
    return "({python_runtime};{os_type} {os_release};{architecture})".format(
        python_runtime=python_runtime,
        os_type=os_type,
        os_release=os_release,
        architecture=architecture,
    )


def get_iothub_user_agent() -> str:
    """
    Create the user agent for IoT Hub
    """
    return "{iden}-iothub/{version}{common}".format(
        iden=IOTC_IDENTIFIER, version=VERSION, common=_get_common_user_agent()
    )


def get_provisioning_user_agent() -> str:
    """
    Create the user agent for Provisioning
    """
    return "{iden}-provisioning/{version}{common}".format(
        iden=IOTC_IDENTIFIER, version=VERSION, common=_get_common_user_agent()
    )
