#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from typing import Any
from typing_extensions import override
import logging
import threading
import weakref
import numpy as np

__all__ = [
    "NDArray",
]

from .errors import UnsupportedDeviceError
from .handles import ExchangeHandle
from .itf.producer import Producer
from .producers.host import HostProducer
from .types import (
    DataType,
    Device,
    ManagedTensor,
    ProtocolVersion,
    TensorDescriptor,
)

logger = logging.getLogger(__name__)


class _HostView:
    # numpy keeps this object as the base of the view, hence the owner
    def __init__(self, owner: "NDArray", interface: dict[str, Any]) -> None:
        self.owner = owner
        self.__array_interface__ = interface


class NDArray(Producer):
    """Array imported through DLPack, owning its ManagedTensor.

    The tensor is released when the NDArray is collected or on an explicit
    release(). Host memory is readable through numpy() views, which keep
    the NDArray alive. An explicit release() while views are alive takes
    effect once the last of them is collected.
    """

    def __init__(self, managed: ManagedTensor) -> None:
        self._managed = managed
        self._lock = threading.RLock()
        self._views: set[weakref.ref] = set()
        self._closing = False

    @property
    def managed(self) -> ManagedTensor:
        return self._managed

    @property
    def descriptor(self) -> TensorDescriptor:
        return self._managed.descriptor

    @property
    def shape(self) -> tuple[int, ...]:
        return self.descriptor.shape

    @property
    def strides(self):
        return self.descriptor.effective_strides

    @property
    def dtype(self) -> DataType:
        return self.descriptor.dtype

    @property
    def device(self) -> Device:
        return self.descriptor.device

    @property
    def ndim(self):
        return self.descriptor.ndim

    @property
    def size(self):
        return self.descriptor.size

    @property
    def nbytes(self):
        return self.descriptor.nbytes

    @property
    def byte_offset(self):
        return self.descriptor.byte_offset

    @property
    def data(self) -> int:
        return self.descriptor.data + self.descriptor.byte_offset

    @property
    def readonly(self):
        return self._managed.readonly

    @property
    def is_copied(self):
        return self._managed.is_copied

    @property
    def version(self) -> ProtocolVersion | None:
        return self._managed.version

    @property
    def released(self):
        return self._closing or self._managed.released

    @property
    def live_views(self) -> int:
        return len(self._views)

    def numpy(self) -> np.ndarray:
        if self.released:
            raise ValueError("array already released")
        if not self.device.is_host:
            raise UnsupportedDeviceError(f"no host view for device {self.device}")
        np_dtype = self.dtype.numpy_dtype
        if self.size == 0:
            return np.empty(self.shape, dtype=np_dtype)
        interface = {
            "version": 3,
            "shape": self.shape,
            "typestr": np_dtype.str,
            "data": (self.data, self.readonly),
            "strides": tuple(s * np_dtype.itemsize for s in self.strides),
        }
        view = _HostView(self, interface)
        with self._lock:
            if self._closing:
                raise ValueError("array already released")
            # The callback runs once the last numpy array based on view dies
            self._views.add(weakref.ref(view, self._view_collected))
        return np.asarray(view)

    def _view_collected(self, ref: weakref.ref) -> None:
        with self._lock:
            self._views.discard(ref)
            pending = self._closing and not self._views
        if pending:
            logger.debug("Last view collected, releasing: %s", self._managed)
            self._managed.release()

    def release(self) -> None:
        with self._lock:
            self._closing = True
            views = len(self._views)
        if views:
            logger.debug("Release deferred until %d views are collected", views)
            return
        self._managed.release()

    @override
    def describe_device(self) -> Device:
        return self.device

    @override
    def export(
        self,
        *,
        stream: Any | None = None,
        max_version: tuple[int, int] | None = None,
        requested_device: Device | None = None,
        copy: bool | None = None,
    ) -> ExchangeHandle:
        # Views keep self alive as long as the exported tensor
        producer = HostProducer(self.numpy(), device=self.device)
        return producer.export(
            stream=stream,
            max_version=max_version,
            requested_device=requested_device,
            copy=copy,
        )

    def __del__(self):
        if getattr(self, "_managed", None) is not None:
            self._managed.release()

    def __repr__(self) -> str:
        return f"NDArray(shape={self.shape}, dtype={self.dtype}, device={self.device})"
