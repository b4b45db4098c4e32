#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from .errors import (
    DLPackError,
    UnsupportedDeviceError,
    CopyPolicyError,
    VersionMismatchError,
    MalformedHandleError,
    CapsuleStateError,
)

from .config import ImportConfig

from .ndarray import NDArray

from .consumer import (
    Importer,
    from_dlpack,
)

__version__ = "0.1.0"
