#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
import os

from .types import Device, HOST_DEVICE_TYPES, DLDeviceType, PROTOCOL_VERSION

__all__ = [
    "ImportConfig",
    "parse_version",
]

MAX_VERSION_ENV = "DLHANDOFF_MAX_VERSION"
FALLBACK_VERSION_ENV = "DLHANDOFF_FALLBACK_VERSION"

StreamProvider = Callable[[Device], Any]


def parse_version(value: str, var: str = "version") -> tuple[int, int] | None:
    """
    Parses a "major.minor" version, or "legacy" for the unversioned layout.
    For instance:
    parse_version("1.1") = (1, 1)
    parse_version("legacy") = None
    """
    value = value.strip()
    if value.lower() == "legacy":
        return None
    try:
        major, minor = (int(part) for part in value.split("."))
    except ValueError:
        raise ValueError(f"Invalid {var} value: {value!r}") from None
    if major < 0 or minor < 0:
        raise ValueError(f"Invalid {var} value: {value!r}")
    return (major, minor)


@dataclass(frozen=True)
class ImportConfig:
    """Consumer side settings of an import.

    Attributes:
        max_version: highest protocol version understood, None when only
            the legacy layout is
        supported_devices: device types the consumer operates on
        stream_provider: returns the consumer stream to synchronize with
            for a device having streams
        fallback_version: max_version tried once more after a version
            mismatch, None to never retry
    """

    max_version: tuple[int, int] | None = tuple(PROTOCOL_VERSION)
    supported_devices: frozenset[DLDeviceType] = HOST_DEVICE_TYPES
    stream_provider: StreamProvider | None = None
    fallback_version: tuple[int, int] | None = None

    def supports(self, device: Device) -> bool:
        return device.device_type in self.supported_devices

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **kwargs: Any
    ) -> "ImportConfig":
        """Builds a configuration, overriding versions from the environment.

        Args:
            environ: variables to read, defaults to os.environ
            kwargs: other ImportConfig fields

        Returns:
            The configuration
        """
        environ = os.environ if environ is None else environ
        max_version = environ.get(MAX_VERSION_ENV)
        if max_version is not None:
            kwargs["max_version"] = parse_version(max_version, MAX_VERSION_ENV)
        fallback_version = environ.get(FALLBACK_VERSION_ENV)
        if fallback_version is not None:
            kwargs["fallback_version"] = parse_version(
                fallback_version, FALLBACK_VERSION_ENV
            )
        return cls(**kwargs)
