"""Runtime environment checks and process-wide backend initialization."""

from __future__ import annotations

import atexit
import functools
import logging
import threading
from typing import TYPE_CHECKING

import torch

if TYPE_CHECKING:
    from llmsession.engine.backends.base import BaseBackend

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_initialized: dict[type, BaseBackend] = {}
_atexit_registered = False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if the Apple Metal (MPS) backend is available."""
    mps = getattr(torch.backends, "mps", None)
    return bool(mps is not None and mps.is_available())


def default_device() -> str:
    """Pick the best available device: cuda, then mps, then cpu."""
    if is_cuda_available():
        return "cuda"
    if is_mps_available():
        return "mps"
    return "cpu"


def ensure_backend_initialized(backend: BaseBackend) -> None:
    """Run `backend.initialize()` once per backend class for the whole process.

    The first successful initialization registers an `atexit` hook that tears
    every initialized backend down. Later Sessions using the same backend class
    skip initialization entirely.
    """
    global _atexit_registered

    backend_cls = type(backend)
    with _init_lock:
        if backend_cls in _initialized:
            return
        backend.initialize()
        _initialized[backend_cls] = backend
        if not _atexit_registered:
            atexit.register(shutdown_backends)
            _atexit_registered = True
    logger.info("Initialized backend %s", backend_cls.__name__)


def is_backend_initialized(backend_cls: type) -> bool:
    with _init_lock:
        return backend_cls in _initialized


def shutdown_backends() -> None:
    """Tear down every initialized backend (registered with `atexit`)."""
    with _init_lock:
        backends = list(_initialized.values())
        _initialized.clear()

    for backend in backends:
        try:
            backend.shutdown()
        except Exception:
            logger.warning("Backend %s failed to shut down cleanly", type(backend).__name__, exc_info=True)
