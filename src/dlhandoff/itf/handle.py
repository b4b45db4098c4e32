#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from abc import ABC, abstractmethod

from ..types import Device, ManagedTensor, ProtocolVersion, TensorFlags


class Handle(ABC):
    """An abstract one-shot container transferring a ManagedTensor.

    A Handle is returned by a Producer export and starts unconsumed. It is
    consumed at most once, handing its ManagedTensor, and the duty of
    releasing it, to the caller. A Handle discarded while unconsumed
    releases the tensor itself on teardown.

    The name tells the struct shape and the state: "dltensor" or
    "dltensor_versioned" while unconsumed, the same prefixed by "used_"
    once consumed.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Returns the current name of the handle.

        Returns:
            One of the four well-known handle names, or whatever a foreign
            producer set
        """
        ...

    @property
    @abstractmethod
    def consumed(self) -> bool:
        """Returns whether the handle can no longer be consumed."""
        ...

    @property
    @abstractmethod
    def versioned(self) -> bool:
        """Returns whether the payload uses the versioned struct shape."""
        ...

    @property
    @abstractmethod
    def version(self) -> ProtocolVersion | None:
        """Returns the payload protocol version, None for the legacy shape.

        Readable before consuming, for negotiation checks.
        """
        ...

    @property
    @abstractmethod
    def flags(self) -> TensorFlags:
        """Returns the payload flags, readable before consuming."""
        ...

    @property
    @abstractmethod
    def device(self) -> Device:
        """Returns the payload device, readable before consuming."""
        ...

    @abstractmethod
    def consume(self) -> ManagedTensor:
        """Takes the payload out of the handle.

        Returns:
            The managed tensor, which the caller must eventually release

        Raises:
            CapsuleStateError: the handle was already consumed
        """
        ...

    @abstractmethod
    def teardown(self) -> None:
        """Discards the handle, releasing the payload if never consumed.

        Does nothing on a consumed handle.
        """
        ...
