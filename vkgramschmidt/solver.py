"""GPU Gram-Schmidt solver."""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Optional, Union

from .dispatch import StepDispatcher
from .errors import SolverStateError
from .registry import DeviceRegistry, default_registry
from .resources import PipelineResources
from .selector import DeviceSelector, QueueSelection
from .vulkan_backend import create_instance, require_vulkan
from . import staging

LOGGER = logging.getLogger(__name__)


class GramSchmidtSolver:
    """Orthonormalise n vectors of R^n on a Vulkan compute queue.

    Construction is expensive: it creates a Vulkan instance, claims one
    compute queue on an fp64-capable device and builds the kernel pipeline.
    Build one solver and call ``run`` as often as needed; ``close()`` (or
    leaving a ``with`` block) gives everything back.

    Args:
        enable_diagnostics: enable the Khronos validation layer and forward
            its messages to the ``vkgramschmidt.vulkan`` logger.
        shader_dir: directory holding the kernel binary, overriding
            ``config.shader_dir()``.
        fence_timeout: per-step fence timeout in seconds. Defaults to the
            process-wide setting, which grows with the matrix size.
        registry: queue occupancy registry; the process-wide one by default.
        vk: Vulkan binding module; the ``vulkan`` package by default.
    """

    def __init__(
        self,
        enable_diagnostics: bool = False,
        *,
        shader_dir: Optional[Union[str, Path]] = None,
        fence_timeout: Optional[float] = None,
        registry: Optional[DeviceRegistry] = None,
        vk: Any = None,
    ) -> None:
        if fence_timeout is not None and fence_timeout <= 0:
            raise ValueError("fence_timeout must be positive")
        self._vk = vk if vk is not None else require_vulkan()
        self.registry = registry if registry is not None else default_registry()
        self.enable_diagnostics = bool(enable_diagnostics)

        self._stack: Optional[ExitStack] = None
        self._run_lock = threading.Lock()
        self._broken = False

        with self.registry.construction_lock:
            with ExitStack() as stack:
                instance = create_instance(self._vk, stack, self.enable_diagnostics)
                selector = DeviceSelector(self._vk, instance, self.registry)
                self.selection: QueueSelection = selector.select()
                stack.callback(self.registry.release_claim, self.selection.claim)

                self.resources = PipelineResources(
                    self._vk, self.selection, Path(shader_dir) if shader_dir is not None else None
                )
                stack.callback(self.resources.close)
                self._stack = stack.pop_all()

        timeout_ns = int(fence_timeout * 1e9) if fence_timeout is not None else None
        self._dispatcher = StepDispatcher(self._vk, self.resources, timeout_ns)
        LOGGER.info(
            "solver ready on %s (device %d, queue family %d)",
            self.device_name,
            self.device_index,
            self.family_index,
        )

    @property
    def device_index(self) -> int:
        return self.selection.device_index

    @property
    def family_index(self) -> int:
        return self.selection.family_index

    @property
    def device_name(self) -> str:
        return self.selection.device_name

    @property
    def closed(self) -> bool:
        return self._stack is None

    @property
    def broken(self) -> bool:
        return self._broken

    def run(self, matrix, vectors_as_columns: bool = True) -> None:
        """Replace the vectors in ``matrix`` with their orthonormal basis, in place.

        ``matrix`` is a square NumPy float array or a list of rows, each row
        a list or a float NumPy array.
        With ``vectors_as_columns`` the vectors are the columns, otherwise
        the rows; the result keeps the same orientation. The vectors should
        be linearly independent; a singular input yields non-finite values.
        """

        staging.check_writable(matrix)
        arr = staging.as_square_matrix(matrix)
        # Settings errors surface here, before the solver can be marked broken.
        timeout_ns = self._dispatcher.timeout_for(arr.shape[0])
        with self._run_lock:
            if self.closed:
                raise SolverStateError("solver is closed")
            if self._broken:
                raise SolverStateError("solver failed during an earlier run; close it and build a new one")

            try:
                buf = staging.upload(self._vk, self.resources, arr, vectors_as_columns)
                try:
                    self.resources.bind_matrix(buf.buffer, buf.nbytes)
                    self._dispatcher.run(buf.n, timeout_ns)
                    staging.download(self._vk, buf, matrix, vectors_as_columns)
                finally:
                    buf.release()
            except BaseException as e:
                self._broken = True
                LOGGER.warning("solver on device %d is no longer usable: %s", self.device_index, e)
                raise

    def close(self) -> None:
        """Release every Vulkan handle and the queue claim. Safe to call twice."""

        with self._run_lock:
            stack, self._stack = self._stack, None
        if stack is None:
            return
        stack.close()
        LOGGER.info("solver on device %d queue family %d closed", self.device_index, self.family_index)

    def __enter__(self) -> "GramSchmidtSolver":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __del__(self) -> None:
        # Only reached for solvers that were fully built and never closed.
        if getattr(self, "_stack", None) is not None:
            self.close()
