#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from collections.abc import Callable
from enum import IntFlag
from typing import Any, NamedTuple, TypeAlias
import threading
import logging

from ..errors import VersionMismatchError
from .descriptor import TensorDescriptor
from .dlpack import (
    DLPACK_MAJOR_VERSION,
    DLPACK_MINOR_VERSION,
    DLPACK_FLAG_BITMASK_IS_COPIED,
    DLPACK_FLAG_BITMASK_READ_ONLY,
)

__all__ = [
    "ProtocolVersion",
    "PROTOCOL_VERSION",
    "TensorFlags",
    "Deleter",
    "ManagedTensor",
    "negotiate_version",
]

logger = logging.getLogger(__name__)


class ProtocolVersion(NamedTuple):
    major: int
    minor: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


PROTOCOL_VERSION = ProtocolVersion(DLPACK_MAJOR_VERSION, DLPACK_MINOR_VERSION)


class TensorFlags(IntFlag):
    NONE = 0
    IS_COPIED = DLPACK_FLAG_BITMASK_IS_COPIED
    READ_ONLY = DLPACK_FLAG_BITMASK_READ_ONLY


Deleter: TypeAlias = Callable[["ManagedTensor"], None]


class ManagedTensor:
    """A tensor descriptor together with whoever owns its memory.

    Two shapes share this class: the legacy one (`version` is None, no
    flags) and the versioned one. The memory pointed to by the descriptor
    belongs to `manager_context`; the `deleter` gives it back and runs at
    most once through `release()`.
    """

    def __init__(
        self,
        descriptor: TensorDescriptor,
        manager_context: Any = None,
        deleter: Deleter | None = None,
        version: tuple[int, int] | None = None,
        flags: int = TensorFlags.NONE,
    ) -> None:
        flags = TensorFlags(flags)
        if version is not None:
            version = ProtocolVersion(*version)
        elif flags:
            raise ValueError(f"legacy tensor cannot carry flags: {flags!r}")
        self.descriptor = descriptor
        self.manager_context = manager_context
        self._deleter = deleter
        self._version = version
        self._flags = flags
        self._lock = threading.Lock()
        self._released = False

    @property
    def version(self) -> ProtocolVersion | None:
        return self._version

    @property
    def versioned(self) -> bool:
        return self._version is not None

    @property
    def flags(self) -> TensorFlags:
        return self._flags

    @property
    def is_copied(self) -> bool:
        return bool(self._flags & TensorFlags.IS_COPIED)

    @property
    def readonly(self) -> bool:
        return bool(self._flags & TensorFlags.READ_ONLY)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Runs the deleter, the first time only.

        Failures of the deleter are logged and swallowed: this is called from
        destructors where there is nobody to report to.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
            deleter, self._deleter = self._deleter, None
        if deleter is None:
            return
        try:
            deleter(self)
        except Exception:
            logger.exception("Deleter failed for tensor: %s", self.descriptor)

    def __repr__(self) -> str:
        version = "legacy" if self._version is None else str(self._version)
        return (
            f"ManagedTensor(shape={self.descriptor.shape}, dtype={self.descriptor.dtype}, "
            f"device={self.descriptor.device}, version={version}, flags={self._flags!r})"
        )


def negotiate_version(
    max_version: tuple[int, int] | None, allow_legacy: bool = True
) -> ProtocolVersion | None:
    """
    Selects the struct shape to export given the consumer's version hint.
    Returns None for the legacy shape, otherwise the producer's own version:
    the minor number is informational and is not lowered to the hint's.

    Raises:
        VersionMismatchError: the hint asks for the legacy shape and the
            producer does not emit it
    """
    if max_version is None or max_version[0] < DLPACK_MAJOR_VERSION:
        if not allow_legacy:
            raise VersionMismatchError(
                f"consumer max version {max_version} below {PROTOCOL_VERSION}"
            )
        logger.debug("Negotiated legacy layout for max version: %s", max_version)
        return None
    logger.debug(
        "Negotiated version %s for max version: %s", PROTOCOL_VERSION, max_version
    )
    return PROTOCOL_VERSION
