#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
import ctypes
import threading
import logging
from typing import Any
from typing_extensions import override

from .. import runtime
from ..errors import CapsuleStateError, MalformedHandleError
from ..itf.handle import Handle
from ..types import (
    Device,
    ManagedTensor,
    ProtocolVersion,
    TensorDescriptor,
    TensorFlags,
)
from ..types.dlpack import DLManagedTensor, DLManagedTensorVersioned
from .exchange import (
    LEGACY_NAMES,
    VERSIONED_NAMES,
    KNOWN_NAMES,
    handle_names,
)

__all__ = [
    "CapsuleHandle",
    "is_capsule",
]

logger = logging.getLogger(__name__)


def _capi(name: str, restype: Any, *argtypes: Any) -> Any:
    # Private prototypes, leaving ctypes.pythonapi attributes untouched
    return ctypes.PYFUNCTYPE(restype, *argtypes)((name, ctypes.pythonapi))


_PyCapsule_IsValid = _capi(
    "PyCapsule_IsValid", ctypes.c_int, ctypes.py_object, ctypes.c_char_p
)
_PyCapsule_GetName = _capi("PyCapsule_GetName", ctypes.c_char_p, ctypes.py_object)
_PyCapsule_GetPointer = _capi(
    "PyCapsule_GetPointer", ctypes.c_void_p, ctypes.py_object, ctypes.c_char_p
)
_PyCapsule_SetName = _capi(
    "PyCapsule_SetName", ctypes.c_int, ctypes.py_object, ctypes.c_void_p
)
_PyMem_RawMalloc = _capi("PyMem_RawMalloc", ctypes.c_void_p, ctypes.c_size_t)


def _static_cstring(value: str) -> int:
    """
    Copies a string into a never freed C buffer.
    A capsule keeps the name pointer it is given, and may outlive any
    Python object holding the bytes, up to the end of the process.
    """
    raw = value.encode("ascii") + b"\0"
    address = _PyMem_RawMalloc(len(raw))
    if not address:
        raise MemoryError(f"unable to allocate capsule name: {value}")
    ctypes.memmove(address, raw, len(raw))
    return address


_CONSUMED_NAME_ADDRESSES = {
    names.consumed: _static_cstring(names.consumed)
    for names in (LEGACY_NAMES, VERSIONED_NAMES)
}


def is_capsule(obj: Any) -> bool:
    return type(obj).__name__ == "PyCapsule"


def _call_foreign_deleter(managed: ManagedTensor) -> None:
    # Foreign deleters usually re-enter the interpreter to drop their owner
    if not runtime.is_alive():
        return
    pointer = managed.manager_context
    deleter = pointer.contents.deleter
    if deleter:
        deleter(pointer)
    managed.manager_context = None


class CapsuleHandle(Handle):
    """Handle over a PyCapsule returned by a foreign `__dlpack__`.

    Consuming renames the capsule to its "used_" name: the capsule
    destructor then leaves the struct alone and the returned ManagedTensor
    becomes the only one to call the struct deleter. An unconsumed capsule
    is released by its own destructor.
    """

    def __init__(self, capsule: Any) -> None:
        if not is_capsule(capsule):
            raise TypeError(f"not a capsule: {type(capsule).__name__}")
        self._capsule: Any = capsule
        self._versioned = self._read_name() in VERSIONED_NAMES
        self._names = handle_names(self._versioned)
        self._lock = threading.Lock()

    def _read_name(self) -> str:
        name = _PyCapsule_GetName(self._capsule)
        return "" if name is None else name.decode("ascii", errors="replace")

    @property
    @override
    def name(self) -> str:
        if self._capsule is None:
            return self._names.consumed
        return self._read_name()

    @property
    @override
    def consumed(self) -> bool:
        return self._capsule is None or self.name != self._names.unconsumed

    @property
    @override
    def versioned(self) -> bool:
        return self._versioned

    def _struct(self) -> Any:
        if self.consumed:
            if self.name in KNOWN_NAMES:
                raise CapsuleStateError(f"capsule already consumed: {self.name}")
            raise MalformedHandleError(f"unknown capsule name: {self.name!r}")
        name = self._names.unconsumed.encode("ascii")
        if not _PyCapsule_IsValid(self._capsule, name):
            raise MalformedHandleError(f"invalid capsule: {self.name!r}")
        address = _PyCapsule_GetPointer(self._capsule, name)
        if not address:
            raise MalformedHandleError(f"null capsule pointer: {self.name!r}")
        if self._versioned:
            return ctypes.cast(address, ctypes.POINTER(DLManagedTensorVersioned))
        return ctypes.cast(address, ctypes.POINTER(DLManagedTensor))

    @property
    @override
    def version(self) -> ProtocolVersion | None:
        if not self._versioned:
            return None
        version = self._struct().contents.version
        return ProtocolVersion(version.major, version.minor)

    @property
    @override
    def flags(self) -> TensorFlags:
        if not self._versioned:
            return TensorFlags.NONE
        return TensorFlags(self._struct().contents.flags)

    @property
    @override
    def device(self) -> Device:
        device = self._struct().contents.dl_tensor.device
        return Device.from_tuple((device.device_type, device.device_id))

    @override
    def consume(self) -> ManagedTensor:
        with self._lock:
            pointer = self._struct()
            contents = pointer.contents
            # Reading may fail, the capsule then stays unconsumed
            descriptor = TensorDescriptor.from_ctypes(contents.dl_tensor)
            version, flags = None, TensorFlags.NONE
            if self._versioned:
                version = (contents.version.major, contents.version.minor)
                flags = TensorFlags(contents.flags)
            managed = ManagedTensor(
                descriptor,
                manager_context=pointer,
                deleter=_call_foreign_deleter,
                version=version,
                flags=flags,
            )
            consumed_name = _CONSUMED_NAME_ADDRESSES[self._names.consumed]
            if _PyCapsule_SetName(self._capsule, consumed_name) != 0:
                raise MalformedHandleError(f"unable to rename capsule: {self.name!r}")
            self._capsule = None
        logger.debug("Consumed capsule: %s", self._names.unconsumed)
        return managed

    @override
    def teardown(self) -> None:
        with self._lock:
            if self._capsule is None:
                return
            # Dropping the last reference runs the capsule destructor
            self._capsule = None
        logger.debug("Dropped capsule: %s", self._names.unconsumed)

    def __repr__(self) -> str:
        return f"<CapsuleHandle {self.name!r}>"
