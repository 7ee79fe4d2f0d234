# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

from setuptools import setup, find_packages
import re


with open("README.md", "r") as fh:
    _long_description = fh.read()


filename = "azure-iotcentral-device/iotc/constant.py"
version = None

with open(filename, "r") as fh:
    if not re.search("\n+VERSION", fh.read()):
        raise ValueError("VERSION  is not defined in constants.")

with open(filename, "r") as fh:
    for line in fh:
        if re.search("^VERSION", line):
            constant, value = line.strip().split("=")
            if not value:
                raise ValueError("Value for VERSION not defined in constants.")
            else:
                # Strip whitespace and quotation marks
                version = str(value.strip(' "'))
            break

setup(
    name="azure-iotcentral-device",
    version=version,
    description="Microsoft Azure IoT Central Device Library",
    license="MIT License",
    author="Microsoft Corporation",
    author_email="opensource@microsoft.com",
    long_description=_long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    install_requires=[
        "aiohttp>=3.8.0,<4.0.0",
        "deprecation>=2.1.0,<3.0.0",
        "paho-mqtt>=1.6.1,<2.0.0",
        "PySocks",
        "typing_extensions",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-mock",
            "pytest-testdox",
        ]
    },
    python_requires=">=3.8, <4",
    packages=find_packages(where="azure-iotcentral-device", exclude=["tests", "tests.*"]),
    package_dir={"": "azure-iotcentral-device"},
    zip_safe=False,
)
