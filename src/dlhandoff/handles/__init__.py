#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
from .exchange import (
    HandleNames,
    HandleState,
    ExchangeHandle,
    LEGACY_NAMES,
    VERSIONED_NAMES,
    KNOWN_NAMES,
    UNCONSUMED_NAMES,
    handle_names,
)

from .capsule import (
    CapsuleHandle,
    is_capsule,
)
