#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from enum import Enum
from typing import NamedTuple
from typing_extensions import override
import sys
import threading
import logging

from ..errors import CapsuleStateError
from ..itf.handle import Handle
from ..types import Device, ManagedTensor, ProtocolVersion, TensorFlags

__all__ = [
    "HandleNames",
    "LEGACY_NAMES",
    "VERSIONED_NAMES",
    "KNOWN_NAMES",
    "UNCONSUMED_NAMES",
    "HandleState",
    "ExchangeHandle",
    "handle_names",
]

logger = logging.getLogger(__name__)


class HandleNames(NamedTuple):
    unconsumed: str
    consumed: str


# Shared by every handle of the process, never built per instance
LEGACY_NAMES = HandleNames(sys.intern("dltensor"), sys.intern("used_dltensor"))
VERSIONED_NAMES = HandleNames(
    sys.intern("dltensor_versioned"), sys.intern("used_dltensor_versioned")
)
KNOWN_NAMES = frozenset((*LEGACY_NAMES, *VERSIONED_NAMES))
UNCONSUMED_NAMES = frozenset((LEGACY_NAMES.unconsumed, VERSIONED_NAMES.unconsumed))


def handle_names(versioned: bool) -> HandleNames:
    return VERSIONED_NAMES if versioned else LEGACY_NAMES


class HandleState(Enum):
    UNCONSUMED = 0
    CONSUMED = 1


class ExchangeHandle(Handle):
    """Handle produced in process by a Producer for a ManagedTensor.

    The lock makes the transition out of UNCONSUMED single-writer-wins:
    whichever of consume() and teardown() gets it first decides who
    releases the payload.
    """

    def __init__(self, managed: ManagedTensor) -> None:
        self._managed: ManagedTensor | None = managed
        self._names = handle_names(managed.versioned)
        self._version = managed.version
        self._flags = managed.flags
        self._device = managed.descriptor.device
        self._state = HandleState.UNCONSUMED
        self._lock = threading.Lock()

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    @override
    def name(self) -> str:
        if self._state is HandleState.UNCONSUMED:
            return self._names.unconsumed
        return self._names.consumed

    @property
    @override
    def consumed(self) -> bool:
        return self._state is HandleState.CONSUMED

    @property
    @override
    def versioned(self) -> bool:
        return self._version is not None

    @property
    @override
    def version(self) -> ProtocolVersion | None:
        return self._version

    @property
    @override
    def flags(self) -> TensorFlags:
        return self._flags

    @property
    @override
    def device(self) -> Device:
        return self._device

    @override
    def consume(self) -> ManagedTensor:
        with self._lock:
            if self._state is HandleState.CONSUMED:
                raise CapsuleStateError(f"handle already consumed: {self.name}")
            self._state = HandleState.CONSUMED
            managed, self._managed = self._managed, None
        logger.debug("Consumed handle: %s", self._names.unconsumed)
        assert managed is not None
        return managed

    @override
    def teardown(self) -> None:
        with self._lock:
            if self._state is HandleState.CONSUMED:
                return
            self._state = HandleState.CONSUMED
            managed, self._managed = self._managed, None
            # Release within the transition, a concurrent consume() must see
            # CONSUMED only once the payload is given back.
            if managed is not None:
                managed.release()
        logger.debug("Tore down unconsumed handle: %s", self._names.unconsumed)

    def __del__(self) -> None:
        # Partially constructed instances have no lock
        if getattr(self, "_lock", None) is not None:
            self.teardown()

    def __repr__(self) -> str:
        return f"<ExchangeHandle {self.name!r}>"
