#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#

__all__ = [
    "DLPackError",
    "UnsupportedDeviceError",
    "CopyPolicyError",
    "VersionMismatchError",
    "MalformedHandleError",
    "CapsuleStateError",
]


class DLPackError(BufferError):
    """Base class of all failures raised while exchanging a tensor.

    Derives from BufferError, which is what array libraries raise from
    their own DLPack entry points, so callers catching the builtin keep
    working.
    """


class UnsupportedDeviceError(DLPackError):
    """The consumer cannot use the tensor's device and no copy is allowed."""


class CopyPolicyError(DLPackError):
    """The copy request cannot be honored (forbidden copy needed, or forced
    copy not produced)."""


class VersionMismatchError(DLPackError):
    """No protocol version is understood by both sides."""


class MalformedHandleError(DLPackError):
    """Unknown handle name or a payload breaking descriptor invariants."""


class CapsuleStateError(DLPackError):
    """The handle was already consumed."""
