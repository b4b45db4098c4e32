#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from .dlpack import (
    DLDeviceType,
    DLDataTypeCode,
    HOST_DEVICE_TYPES,
    STREAM_DEVICE_TYPES,
)

from .descriptor import (
    Device,
    DataType,
    TensorDescriptor,
    contiguous_strides,
)

from .managed import (
    ProtocolVersion,
    PROTOCOL_VERSION,
    TensorFlags,
    ManagedTensor,
    negotiate_version,
)
