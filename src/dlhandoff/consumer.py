#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from typing import Any
import logging

from .config import ImportConfig
from .errors import (
    CapsuleStateError,
    CopyPolicyError,
    MalformedHandleError,
    UnsupportedDeviceError,
    VersionMismatchError,
)
from .handles import CapsuleHandle, KNOWN_NAMES, UNCONSUMED_NAMES, is_capsule
from .itf.handle import Handle
from .itf.producer import Producer
from .ndarray import NDArray
from .types import Device, ManagedTensor, TensorFlags

__all__ = [
    "Importer",
    "from_dlpack",
]

logger = logging.getLogger(__name__)


class Importer:
    """Imports tensors from producers into NDArray objects.

    Producers are either Producer instances or foreign objects implementing
    `__dlpack_device__` and `__dlpack__`, whose capsules are adapted into
    CapsuleHandle.
    """

    def __init__(self, config: ImportConfig | None = None) -> None:
        self._config = ImportConfig.from_env() if config is None else config

    @property
    def config(self) -> ImportConfig:
        return self._config

    def from_dlpack(
        self, source: Any, *, device: Any = None, copy: bool | None = None
    ) -> NDArray:
        """Imports the source tensor, without copy when possible.

        Args:
            source: Producer or object implementing the DLPack dunders
            device: target device, as a Device or (device_type, device_id)
            copy: True to force a copy, False to forbid one, None for either

        Returns:
            A new NDArray owning the exported tensor

        Raises:
            TypeError: the source does not implement the protocol
            UnsupportedDeviceError: no usable device is reachable
            CopyPolicyError: the copy request cannot be honored
            VersionMismatchError: no common protocol version
            MalformedHandleError: invalid handle or tensor description
            CapsuleStateError: the producer returned a consumed handle
        """
        requested = None if device is None else Device.from_tuple(device)
        source_device = self._describe(source)
        target, requested_device = self._target_device(source_device, requested, copy)
        stream = self._stream(target)
        logger.debug(
            "Importing from %s to %s: stream: %s, max version: %s, copy: %s",
            source_device,
            target,
            stream,
            self._config.max_version,
            copy,
        )
        handle = self._export(
            source,
            stream=stream,
            max_version=self._config.max_version,
            requested_device=requested_device,
            copy=copy,
        )
        try:
            self._check(handle, target, copy)
            managed = self._consume(handle)
        finally:
            # No-op once consumed, releases the tensor on the error paths
            handle.teardown()
        return NDArray(managed)

    def _describe(self, source: Any) -> Device:
        if isinstance(source, Producer):
            return source.describe_device()
        describe = getattr(source, "__dlpack_device__", None)
        if describe is None or not hasattr(source, "__dlpack__"):
            raise TypeError(
                f"{type(source).__name__} does not implement the DLPack protocol"
            )
        try:
            return Device.from_tuple(describe())
        except ValueError as e:
            raise UnsupportedDeviceError(str(e)) from e

    def _target_device(
        self, source_device: Device, requested: Device | None, copy: bool | None
    ) -> tuple[Device, Device | None]:
        """Returns the device of the result and the device to request, if any."""
        if requested is not None:
            if not self._config.supports(requested):
                raise UnsupportedDeviceError(f"unsupported device: {requested}")
            if requested == source_device:
                return source_device, None
            if copy is False:
                raise CopyPolicyError(
                    f"import from {source_device} to {requested} requires a copy"
                )
            return requested, requested
        if self._config.supports(source_device):
            return source_device, None
        cpu = Device.cpu()
        if copy is True and self._config.supports(cpu):
            logger.debug("Requesting copy from %s to %s", source_device, cpu)
            return cpu, cpu
        raise UnsupportedDeviceError(f"unsupported device: {source_device}")

    def _stream(self, target: Device) -> Any:
        if self._config.stream_provider is None or not target.has_streams:
            return None
        return self._config.stream_provider(target)

    def _export(self, source: Any, **kwargs: Any) -> Handle:
        try:
            return self._call_export(source, **kwargs)
        except VersionMismatchError:
            fallback = self._config.fallback_version
            if fallback is None:
                raise
            logger.debug("Version mismatch, retrying with max version %s", fallback)
            kwargs["max_version"] = fallback
            return self._call_export(source, **kwargs)

    def _call_export(
        self,
        source: Any,
        *,
        stream: Any,
        max_version: tuple[int, int] | None,
        requested_device: Device | None,
        copy: bool | None,
    ) -> Handle:
        if isinstance(source, Producer):
            result = source.export(
                stream=stream,
                max_version=max_version,
                requested_device=requested_device,
                copy=copy,
            )
        else:
            kwargs: dict[str, Any] = dict(stream=stream, max_version=max_version)
            if requested_device is not None:
                kwargs["dl_device"] = tuple(int(v) for v in requested_device)
            if copy is not None:
                kwargs["copy"] = copy
            try:
                result = source.__dlpack__(**kwargs)
            except TypeError:
                if requested_device is not None or copy is not None:
                    raise
                # Producers predating max_version only take a stream
                logger.debug("Retrying %s export with stream only", type(source).__name__)
                result = source.__dlpack__(stream=stream)
        return self._wrap(result)

    def _wrap(self, result: Any) -> Handle:
        if isinstance(result, Handle):
            return result
        if is_capsule(result):
            return CapsuleHandle(result)
        raise MalformedHandleError(f"export returned a {type(result).__name__}")

    def _check(self, handle: Handle, target: Device, copy: bool | None) -> None:
        name = handle.name
        if name not in UNCONSUMED_NAMES:
            if name in KNOWN_NAMES:
                raise CapsuleStateError(f"handle already consumed: {name}")
            raise MalformedHandleError(f"unknown handle name: {name!r}")
        try:
            version, flags, device = handle.version, handle.flags, handle.device
        except ValueError as e:
            raise MalformedHandleError(f"invalid tensor description: {e}") from e
        max_version = self._config.max_version
        if version is not None and (max_version is None or version.major > max_version[0]):
            raise VersionMismatchError(
                f"handle version {version} above max version {max_version}"
            )
        if copy is False and flags & TensorFlags.IS_COPIED:
            raise CopyPolicyError("copy forbidden but the producer copied")
        if copy is True and version is not None and not flags & TensorFlags.IS_COPIED:
            raise CopyPolicyError("copy forced but the producer did not copy")
        if device != target:
            raise UnsupportedDeviceError(f"handle on {device}, expected {target}")

    def _consume(self, handle: Handle) -> ManagedTensor:
        try:
            managed = handle.consume()
        except ValueError as e:
            raise MalformedHandleError(f"invalid tensor description: {e}") from e
        logger.debug("Imported: %s", managed)
        return managed


def from_dlpack(
    source: Any,
    *,
    device: Any = None,
    copy: bool | None = None,
    config: ImportConfig | None = None,
) -> NDArray:
    """Imports a tensor from any DLPack producer into an NDArray.

    See Importer.from_dlpack, config defaults to ImportConfig.from_env().
    """
    return Importer(config).from_dlpack(source, device=device, copy=copy)
