"""Process-wide settings for the Gram-Schmidt engine.

The kernel directory and the per-step fence timeout can be changed at
runtime with the setters below or through environment variables:

- ``VKGS_SHADER_DIR``: directory holding ``gram_schmidt.spv`` / ``.comp``
- ``VKGS_FENCE_TIMEOUT``: per-step fence timeout in seconds
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Optional, Union

KERNEL_NAME = "gram_schmidt"
WORKGROUP_SIZE = 32
# dimension, vector_count, pivot_index as uint32
PUSH_CONSTANT_SIZE = 12
MIN_API_VERSION = (1, 2)

# Per-step fence bound: a fixed floor plus a term that grows with the
# amount of data a step touches.
BASE_FENCE_TIMEOUT_NS = 10_000_000
FENCE_TIMEOUT_NS_PER_ELEMENT = 50

_DEFAULT_SHADER_DIR = Path(__file__).parent / "shaders"

_lock = threading.Lock()
_shader_dir: Optional[Path] = None
_fence_timeout_ns: Optional[int] = None


def shader_dir() -> Path:
    """Directory the kernel binary is loaded from."""

    with _lock:
        if _shader_dir is not None:
            return _shader_dir
    env = os.getenv("VKGS_SHADER_DIR")
    if env:
        return Path(env)
    return _DEFAULT_SHADER_DIR


def set_shader_dir(path: Optional[Union[str, os.PathLike]]) -> None:
    """Override the kernel directory; ``None`` restores the default lookup."""

    global _shader_dir
    with _lock:
        _shader_dir = Path(path) if path is not None else None


def set_fence_timeout(seconds: Optional[float]) -> None:
    """Fix the per-step fence timeout; ``None`` restores the size-dependent default."""

    global _fence_timeout_ns
    if seconds is not None and seconds <= 0:
        raise ValueError("fence timeout must be positive")
    with _lock:
        _fence_timeout_ns = None if seconds is None else int(seconds * 1e9)


def _env_fence_timeout_ns() -> Optional[int]:
    env = os.getenv("VKGS_FENCE_TIMEOUT")
    if not env:
        return None
    try:
        seconds = float(env)
    except ValueError:
        raise ValueError(f"VKGS_FENCE_TIMEOUT must be a number of seconds, got {env!r}") from None
    # Also rejects nan and inf.
    if not 0 < seconds < float("inf"):
        raise ValueError(f"VKGS_FENCE_TIMEOUT must be a positive, finite number of seconds, got {env!r}")
    return int(seconds * 1e9)


def fence_timeout_ns(n: int) -> int:
    """Per-step fence timeout for an n x n matrix.

    Raises ``ValueError`` when ``VKGS_FENCE_TIMEOUT`` is set to something
    other than a positive number of seconds.
    """

    with _lock:
        if _fence_timeout_ns is not None:
            return _fence_timeout_ns
    env_ns = _env_fence_timeout_ns()
    if env_ns is not None:
        return env_ns
    return BASE_FENCE_TIMEOUT_NS + int(n) * int(n) * FENCE_TIMEOUT_NS_PER_ELEMENT
