#
# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 The DLHandoff Project Authors
#
import atexit
import sys
import threading
import logging
from typing import TYPE_CHECKING

__all__ = [
    "is_alive",
    "mark_finalizing",
    "release_manager_context",
]

if TYPE_CHECKING:
    from .types.managed import ManagedTensor

logger = logging.getLogger(__name__)

# Set once the interpreter starts its exit sequence. Deleters may still run
# after that point (owners collected at shutdown, or kept alive by native
# code), they must then leave interpreter state alone.
_finalizing = False
_finalizing_lock = threading.Lock()


def mark_finalizing() -> None:
    global _finalizing
    with _finalizing_lock:
        _finalizing = True


atexit.register(mark_finalizing)


def is_alive() -> bool:
    """Returns whether deleters may still touch interpreter managed objects."""
    return not (_finalizing or sys.is_finalizing())


def release_manager_context(managed: "ManagedTensor") -> None:
    """Default deleter of tensors exported from Python objects.

    The manager context is the Python object keeping the memory alive; the
    release drops that reference. Once the runtime is finalizing the
    reference is leaked instead.
    """
    if not is_alive():
        # Logging may already be torn down once the interpreter finalizes.
        if not sys.is_finalizing():
            logger.debug("Runtime finalizing, leaking manager context")
        return
    logger.debug("Releasing manager context: %s", type(managed.manager_context).__name__)
    managed.manager_context = None
