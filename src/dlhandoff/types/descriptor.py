#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from dataclasses import dataclass
from typing import Any, NamedTuple
import functools
import operator
import numpy as np
import numpy.typing

from .dlpack import (
    DLDeviceType,
    DLDataTypeCode,
    DLTensor,
    HOST_DEVICE_TYPES,
    STREAM_DEVICE_TYPES,
)

__all__ = [
    "Device",
    "DataType",
    "TensorDescriptor",
    "contiguous_strides",
]

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


class Device(NamedTuple):
    """A (device_type, device_id) pair, comparable with plain int tuples."""

    device_type: DLDeviceType
    device_id: int = 0

    @classmethod
    def cpu(cls) -> "Device":
        return cls(DLDeviceType.kDLCPU, 0)

    @classmethod
    def from_tuple(cls, value: Any) -> "Device":
        """Builds a Device from any pair of ints, e.g. a `__dlpack_device__` result.

        Raises:
            ValueError: unknown device type or device id out of int32 range
        """
        device_type, device_id = value
        try:
            device_type = DLDeviceType(int(device_type))
        except ValueError:
            raise ValueError(f"unknown device type: {device_type}") from None
        device_id = int(device_id)
        if not _INT32_MIN <= device_id <= _INT32_MAX:
            raise ValueError(f"device id out of range: {device_id}")
        return cls(device_type, device_id)

    @property
    def is_host(self) -> bool:
        return self.device_type in HOST_DEVICE_TYPES

    @property
    def has_streams(self) -> bool:
        return self.device_type in STREAM_DEVICE_TYPES

    def __str__(self) -> str:
        try:
            name = DLDeviceType(self.device_type).name
        except ValueError:
            name = str(self.device_type)
        return f"{name}:{self.device_id}"


_SUPPORTED_BITS: dict[DLDataTypeCode, tuple[int, ...]] = {
    DLDataTypeCode.kDLInt: (8, 16, 32, 64),
    DLDataTypeCode.kDLUInt: (8, 16, 32, 64),
    DLDataTypeCode.kDLFloat: (16, 32, 64),
    DLDataTypeCode.kDLOpaqueHandle: (64,),
    DLDataTypeCode.kDLBfloat: (16,),
    DLDataTypeCode.kDLComplex: (64, 128),
    DLDataTypeCode.kDLBool: (8,),
}

_NUMPY_KIND_CODES = {
    "i": DLDataTypeCode.kDLInt,
    "u": DLDataTypeCode.kDLUInt,
    "f": DLDataTypeCode.kDLFloat,
    "c": DLDataTypeCode.kDLComplex,
    "b": DLDataTypeCode.kDLBool,
}
_CODE_NUMPY_KINDS = {v: k for k, v in _NUMPY_KIND_CODES.items()}


@dataclass(frozen=True)
class DataType:
    """Element type: `lanes` packed values of `bits` width in category `code`."""

    code: DLDataTypeCode
    bits: int
    lanes: int = 1

    def __post_init__(self) -> None:
        try:
            code = DLDataTypeCode(int(self.code))
        except ValueError:
            raise ValueError(f"unknown data type code: {self.code}") from None
        object.__setattr__(self, "code", code)
        if self.bits not in _SUPPORTED_BITS[code]:
            raise ValueError(f"unsupported bit width {self.bits} for {code.name}")
        if not 1 <= self.lanes <= 0xFFFF:
            raise ValueError(f"invalid lanes count: {self.lanes}")

    @property
    def itemsize(self) -> int:
        return self.bits * self.lanes // 8

    @classmethod
    def from_numpy(cls, dtype: numpy.typing.DTypeLike) -> "DataType":
        dtype = np.dtype(dtype)
        if dtype.kind not in _NUMPY_KIND_CODES:
            raise ValueError(f"numpy dtype not exportable: {dtype}")
        if dtype.byteorder not in ("=", "|"):
            raise ValueError(f"non native byte order not exportable: {dtype}")
        return cls(_NUMPY_KIND_CODES[dtype.kind], dtype.itemsize * 8)

    @property
    def numpy_dtype(self) -> np.dtype:
        if self.lanes != 1:
            raise ValueError(f"vector data type has no numpy equivalent: {self}")
        if self.code not in _CODE_NUMPY_KINDS:
            raise ValueError(f"data type has no numpy equivalent: {self}")
        return np.dtype(f"{_CODE_NUMPY_KINDS[self.code]}{self.bits // 8}")

    def __str__(self) -> str:
        name = self.code.name[3:].lower()
        lanes = f"x{self.lanes}" if self.lanes != 1 else ""
        return f"{name}{self.bits}{lanes}"


def contiguous_strides(shape: tuple[int, ...]) -> tuple[int, ...]:
    """
    Returns the row-major compact strides, in elements, for a shape.
    For instance:
    contiguous_strides((2, 3, 4)) = (12, 4, 1)
    contiguous_strides(()) = ()
    """
    strides = []
    acc = 1
    for dim in reversed(shape):
        strides.append(acc)
        acc *= dim
    return tuple(reversed(strides))


@dataclass(frozen=True)
class TensorDescriptor:
    """Describes a strided buffer: no ownership of the memory at `data`.

    `data` is the integer address of the allocation (0 for null), the first
    element lives at `data + byte_offset`. Strides are counted in elements,
    `None` meaning row-major compact.

    Whether `byte_offset` plus the strided footprint stays within the
    producer's allocation is not checked: the producer is trusted on this.
    """

    data: int
    device: Device
    dtype: DataType
    shape: tuple[int, ...]
    strides: tuple[int, ...] | None = None
    byte_offset: int = 0

    def __post_init__(self) -> None:
        shape = tuple(int(dim) for dim in self.shape)
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "data", int(self.data or 0))
        if any(dim < 0 for dim in shape):
            raise ValueError(f"negative extent in shape: {shape}")
        if self.strides is not None:
            strides = tuple(int(stride) for stride in self.strides)
            object.__setattr__(self, "strides", strides)
            if len(strides) != len(shape):
                raise ValueError(
                    f"strides length {len(strides)} does not match ndim {len(shape)}"
                )
        if self.byte_offset < 0:
            raise ValueError(f"negative byte offset: {self.byte_offset}")
        if self.data == 0 and self.size != 0:
            raise ValueError("null data pointer for a non empty tensor")

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return functools.reduce(operator.mul, self.shape, 1)

    @property
    def nbytes(self) -> int:
        return self.size * self.dtype.itemsize

    @property
    def effective_strides(self) -> tuple[int, ...]:
        if self.strides is None:
            return contiguous_strides(self.shape)
        return self.strides

    def is_contiguous(self) -> bool:
        if self.strides is None or self.size == 0:
            return True
        expected = contiguous_strides(self.shape)
        return all(
            dim == 1 or stride == exp
            for dim, stride, exp in zip(self.shape, self.strides, expected)
        )

    @classmethod
    def from_numpy(
        cls, array: numpy.typing.NDArray, device: Device | None = None
    ) -> "TensorDescriptor":
        """Describes a numpy array in place.

        Raises:
            ValueError: dtype not exportable, or byte strides which are not
                a multiple of the item size
        """
        dtype = DataType.from_numpy(array.dtype)
        itemsize = array.itemsize
        if any(stride % itemsize for stride in array.strides):
            raise ValueError(f"strides {array.strides} not multiple of {itemsize}")
        return cls(
            data=array.ctypes.data,
            device=Device.cpu() if device is None else device,
            dtype=dtype,
            shape=array.shape,
            strides=tuple(stride // itemsize for stride in array.strides),
        )

    @classmethod
    def from_ctypes(cls, dl_tensor: DLTensor) -> "TensorDescriptor":
        """Copies a foreign DLTensor out into a descriptor.

        Raises:
            ValueError: the struct breaks one of the descriptor invariants
        """
        ndim = dl_tensor.ndim
        if ndim < 0:
            raise ValueError(f"negative ndim: {ndim}")
        if ndim > 0 and not dl_tensor.shape:
            raise ValueError("null shape pointer")
        shape = tuple(dl_tensor.shape[d] for d in range(ndim))
        strides = None
        if dl_tensor.strides:
            strides = tuple(dl_tensor.strides[d] for d in range(ndim))
        device = Device.from_tuple(
            (dl_tensor.device.device_type, dl_tensor.device.device_id)
        )
        dtype = DataType(dl_tensor.dtype.code, dl_tensor.dtype.bits, dl_tensor.dtype.lanes)
        return cls(
            data=dl_tensor.data or 0,
            device=device,
            dtype=dtype,
            shape=shape,
            strides=strides,
            byte_offset=dl_tensor.byte_offset,
        )
