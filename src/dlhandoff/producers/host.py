#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from typing import Any
from typing_extensions import override
import logging
import numpy as np
import numpy.typing

from .. import runtime
from ..errors import CopyPolicyError, UnsupportedDeviceError
from ..handles import ExchangeHandle
from ..itf.producer import Producer
from ..types import (
    DLDeviceType,
    Device,
    DataType,
    ManagedTensor,
    TensorDescriptor,
    TensorFlags,
    negotiate_version,
)

__all__ = [
    "HostProducer",
]

logger = logging.getLogger(__name__)


class HostProducer(Producer):
    """Exports a numpy array living in host addressable memory.

    The array itself is the manager context of zero-copy exports, copies
    own a fresh array instead. `device` labels the memory, e.g. pinned
    CUDAHost memory wrapped as a numpy array.
    """

    def __init__(
        self,
        array: numpy.typing.ArrayLike,
        device: Device | None = None,
        allow_legacy: bool = True,
    ) -> None:
        self._array = np.asarray(array)
        # Fails early on dtypes without a DLPack equivalent
        DataType.from_numpy(self._array.dtype)
        self._device = Device.cpu() if device is None else device
        if not self._device.is_host:
            raise UnsupportedDeviceError(f"not a host device: {self._device}")
        self._allow_legacy = allow_legacy

    @property
    def array(self) -> numpy.typing.NDArray:
        return self._array

    @override
    def describe_device(self) -> Device:
        return self._device

    def _needs_copy(self, versioned: bool) -> bool:
        array = self._array
        if any(stride % array.itemsize for stride in array.strides):
            return True
        # The legacy shape has no read-only flag
        return not versioned and not array.flags.writeable

    @override
    def export(
        self,
        *,
        stream: Any | None = None,
        max_version: tuple[int, int] | None = None,
        requested_device: Device | None = None,
        copy: bool | None = None,
    ) -> ExchangeHandle:
        version = negotiate_version(max_version, allow_legacy=self._allow_legacy)
        if stream is not None:
            if not self._device.has_streams:
                raise ValueError(f"stream must be None on device {self._device}")
            # Host addressable memory, the producer has no pending work
            logger.debug("Ignoring stream %s on %s", stream, self._device)
        device = self._device
        cross_device = requested_device is not None and requested_device != device
        if cross_device:
            if requested_device.device_type != DLDeviceType.kDLCPU:
                raise UnsupportedDeviceError(
                    f"cannot export from {device} to {requested_device}"
                )
            device = Device.from_tuple(requested_device)
        needs_copy = cross_device or self._needs_copy(version is not None)
        if copy is False and needs_copy:
            raise CopyPolicyError(f"export from {self._device} requires a copy")

        array = self._array
        flags = TensorFlags.NONE
        if copy or needs_copy:
            array = np.array(array, copy=True, order="C")
            if version is not None:
                flags |= TensorFlags.IS_COPIED
            logger.debug("Copied array for export: %s %s", array.shape, array.dtype)
        elif version is not None and not array.flags.writeable:
            flags |= TensorFlags.READ_ONLY

        descriptor = TensorDescriptor.from_numpy(array, device=device)
        managed = ManagedTensor(
            descriptor,
            manager_context=array,
            deleter=runtime.release_manager_context,
            version=version,
            flags=flags,
        )
        logger.debug("Exported: %s", managed)
        return ExchangeHandle(managed)
