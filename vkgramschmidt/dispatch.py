"""The per-pivot dispatch loop.

Step ``k`` reads every vector step ``k - 1`` wrote, so steps never
overlap: each one is recorded, submitted and waited on before the next
is recorded.

    IDLE -> RECORDING -> SUBMITTED -> WAITING -> COMPLETE

IDLE is the state of a dispatcher that has not run a step yet. The next
step starts recording straight from COMPLETE. Any failure moves to BROKEN,
which is final.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional

from . import config
from .errors import DispatchFailed, DispatchTimeout, SolverStateError
from .resources import PipelineResources
from .vulkan_backend import checked

LOGGER = logging.getLogger(__name__)


class StepState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    SUBMITTED = "submitted"
    WAITING = "waiting"
    COMPLETE = "complete"
    BROKEN = "broken"


def workgroup_count(n: int, pivot_index: int) -> int:
    """Work groups needed to give every vector from the pivot on one invocation."""

    remaining = int(n) - int(pivot_index)
    return (remaining + config.WORKGROUP_SIZE - 1) // config.WORKGROUP_SIZE


class StepDispatcher:
    """Drives the kernel over one bound matrix buffer, pivot by pivot."""

    def __init__(self, vk: Any, resources: PipelineResources, timeout_ns: Optional[int] = None) -> None:
        self._vk = vk
        self._res = resources
        self._timeout_ns = timeout_ns
        self.state = StepState.IDLE
        self.pivot_index: Optional[int] = None

    def timeout_for(self, n: int) -> int:
        if self._timeout_ns is not None:
            return self._timeout_ns
        return config.fence_timeout_ns(n)

    def run(self, n: int, timeout_ns: Optional[int] = None) -> None:
        """Run steps 0..n-1 in order; returns once the last step completed.

        ``timeout_ns`` defaults to ``timeout_for(n)``.
        """

        if self.state is StepState.BROKEN:
            raise SolverStateError("a previous step failed; the dispatcher cannot be reused")
        if timeout_ns is None:
            timeout_ns = self.timeout_for(n)
        LOGGER.debug("dispatching %d steps (fence timeout %d ns)", n, timeout_ns)
        for pivot_index in range(n):
            self.step(n, pivot_index, timeout_ns)

    def step(self, n: int, pivot_index: int, timeout_ns: int) -> None:
        try:
            self.pivot_index = pivot_index
            self._record(n, pivot_index)
            self._submit()
            self._wait(pivot_index, timeout_ns)
        except BaseException:
            self.state = StepState.BROKEN
            raise
        self.state = StepState.COMPLETE

    # ------------------------------
    # States
    # ------------------------------
    def _record(self, n: int, pivot_index: int) -> None:
        vk = self._vk
        res = self._res
        cb = res.command_buffer
        self.state = StepState.RECORDING

        checked(vk, vk.vkResetCommandBuffer, cb, 0, error=DispatchFailed)
        begin = vk.VkCommandBufferBeginInfo(
            sType=vk.VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
            flags=vk.VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
        )
        checked(vk, vk.vkBeginCommandBuffer, cb, begin, error=DispatchFailed)
        vk.vkCmdBindPipeline(cb, vk.VK_PIPELINE_BIND_POINT_COMPUTE, res.pipeline)
        vk.vkCmdBindDescriptorSets(
            cb,
            vk.VK_PIPELINE_BIND_POINT_COMPUTE,
            res.pipeline_layout,
            0,
            1,
            [res.descriptor_set],
            0,
            None,
        )

        # dimension, vector_count, pivot_index
        pc = vk.ffi.new("uint32_t[3]", [int(n), int(n), int(pivot_index)])
        vk.vkCmdPushConstants(
            cb,
            res.pipeline_layout,
            vk.VK_SHADER_STAGE_COMPUTE_BIT,
            0,
            config.PUSH_CONSTANT_SIZE,
            pc,
        )
        vk.vkCmdDispatch(cb, workgroup_count(n, pivot_index), 1, 1)
        checked(vk, vk.vkEndCommandBuffer, cb, error=DispatchFailed)

    def _submit(self) -> None:
        vk = self._vk
        res = self._res
        submit = vk.VkSubmitInfo(
            sType=vk.VK_STRUCTURE_TYPE_SUBMIT_INFO,
            commandBufferCount=1,
            pCommandBuffers=[res.command_buffer],
        )
        checked(vk, vk.vkQueueSubmit, res.queue, 1, [submit], res.fence, error=DispatchFailed)
        self.state = StepState.SUBMITTED

    def _wait(self, pivot_index: int, timeout_ns: int) -> None:
        vk = self._vk
        res = self._res
        self.state = StepState.WAITING
        try:
            checked(vk, vk.vkWaitForFences, res.device, 1, [res.fence], vk.VK_TRUE, timeout_ns, error=DispatchFailed)
        except DispatchFailed as e:
            if isinstance(e.__cause__, vk.VkTimeout):
                raise DispatchTimeout(pivot_index, timeout_ns) from e.__cause__
            raise
        checked(vk, vk.vkResetFences, res.device, 1, [res.fence], error=DispatchFailed)
        LOGGER.debug("step %d complete", pivot_index)
