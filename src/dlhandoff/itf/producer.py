#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from abc import ABC, abstractmethod
from typing import Any

from ..types import Device
from .handle import Handle


class Producer(ABC):
    """An abstract source of tensors exportable without copy.

    A Producer describes the device its buffer lives on and exports the
    buffer as a fresh, unconsumed Handle. Consumers are written against this
    interface only, negotiating through the export arguments the protocol
    version, the synchronization stream, the target device and whether
    copying is allowed.
    """

    @abstractmethod
    def describe_device(self) -> Device:
        """Returns the device of the buffer.

        Has no side effect and may be called any time before export.

        Returns:
            The device the buffer lives on
        """
        ...

    @abstractmethod
    def export(
        self,
        *,
        stream: Any | None = None,
        max_version: tuple[int, int] | None = None,
        requested_device: Device | None = None,
        copy: bool | None = None,
    ) -> Handle:
        """Exports the buffer in a new unconsumed handle.

        When a stream is given on a device having streams, the buffer
        content must be visible to work enqueued on that stream once this
        returns: the producer waits on its own pending work as needed.

        When a requested device differs from the buffer's, the producer
        copies to it or fails; copying to the CPU must be supported.

        Args:
            stream: consumer stream for the buffer device, or None
            max_version: highest protocol version the consumer reads,
                None for consumers reading only the legacy shape
            requested_device: target device, None for the buffer's own
            copy: True to force a copy, False to forbid one, None to let
                the producer decide

        Returns:
            The handle, named after the struct shape chosen for max_version

        Raises:
            VersionMismatchError: no shape readable by the consumer
            CopyPolicyError: the copy request cannot be honored
            UnsupportedDeviceError: the requested device cannot be produced
        """
        ...
