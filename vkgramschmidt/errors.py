"""Exceptions raised by the Gram-Schmidt engine."""

from __future__ import annotations

from typing import Optional


class GramSchmidtError(RuntimeError):
    """Base class for every error raised by vkgramschmidt."""


class UnsupportedPlatform(GramSchmidtError):
    """The Vulkan binding, loader or required layers are unavailable or too old."""


class NoCapableDevice(GramSchmidtError):
    """No fp64-capable device has an unclaimed compute queue."""


class VulkanCallFailed(GramSchmidtError):
    """A checked Vulkan call returned a non-success status."""

    def __init__(self, operation: str, status: Optional[int] = None, message: str = "") -> None:
        self.operation = operation
        self.status = status
        self.message = message
        text = f"{operation} failed"
        if status is not None:
            text += f" with status {status}"
        if message:
            text += f": {message}"
        super().__init__(text)


class ResourceCreationFailed(VulkanCallFailed):
    """Creating a device, pipeline, buffer or other handle failed."""


class DispatchFailed(VulkanCallFailed):
    """Recording or submitting a step failed."""


class NoSuitableMemory(GramSchmidtError):
    """No host-visible, host-coherent memory type can hold the matrix buffer."""


class DispatchTimeout(GramSchmidtError):
    def __init__(self, pivot_index: int, timeout_ns: int) -> None:
        self.pivot_index = pivot_index
        self.timeout_ns = timeout_ns
        super().__init__(
            f"step {pivot_index} did not complete within {timeout_ns / 1e6:.1f} ms; "
            "the solver must be closed and rebuilt"
        )


class SolverStateError(GramSchmidtError):
    """run() was called on a closed or broken solver."""
