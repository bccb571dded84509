"""Long-lived Vulkan handles owned by one solver."""

from __future__ import annotations

import logging
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Optional

from . import config
from .selector import QueueSelection
from .vulkan_backend import checked, create_shader_module, load_kernel

LOGGER = logging.getLogger(__name__)


class PipelineResources:
    """Logical device, kernel pipeline, command buffer, descriptor set and fence.

    Handles are created in a fixed order and each one is registered for
    release as soon as it exists. If any creation call fails, everything
    created so far is destroyed in reverse order before the error
    propagates. ``close()`` destroys the lot in reverse order.
    """

    def __init__(self, vk: Any, selection: QueueSelection, shader_dir: Optional[Path] = None) -> None:
        self._vk = vk
        self.selection = selection

        self.device: Any = None
        self.queue: Any = None
        self.shader_module: Any = None
        self.descriptor_set_layout: Any = None
        self.pipeline_layout: Any = None
        self.pipeline: Any = None
        self.command_pool: Any = None
        self.command_buffer: Any = None
        self.descriptor_pool: Any = None
        self.descriptor_set: Any = None
        self.fence: Any = None
        self.memory_properties: Any = None

        self._stack: Optional[ExitStack] = None
        with ExitStack() as stack:
            self._build(stack, shader_dir)
            self._stack = stack.pop_all()

    # ------------------------------
    # Init
    # ------------------------------
    def _build(self, stack: ExitStack, shader_dir: Optional[Path]) -> None:
        vk = self._vk
        sel = self.selection

        # Device with one queue and fp64 enabled
        queue_priorities = [1.0] * sel.queue_count
        qci = vk.VkDeviceQueueCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DEVICE_QUEUE_CREATE_INFO,
            queueFamilyIndex=sel.family_index,
            queueCount=sel.queue_count,
            pQueuePriorities=queue_priorities,
        )
        features = vk.VkPhysicalDeviceFeatures(shaderFloat64=vk.VK_TRUE)
        dci = vk.VkDeviceCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DEVICE_CREATE_INFO,
            queueCreateInfoCount=1,
            pQueueCreateInfos=[qci],
            pEnabledFeatures=features,
        )
        self.device = checked(vk, vk.vkCreateDevice, sel.physical_device, dci, None)
        stack.callback(vk.vkDestroyDevice, self.device, None)
        self.queue = vk.vkGetDeviceQueue(self.device, sel.family_index, 0)
        self.memory_properties = vk.vkGetPhysicalDeviceMemoryProperties(sel.physical_device)

        # Kernel
        spv = load_kernel(shader_dir)
        self.shader_module = create_shader_module(vk, self.device, spv)
        stack.callback(vk.vkDestroyShaderModule, self.device, self.shader_module, None)

        # Single read/write storage buffer at set 0, binding 0
        bindings = [
            vk.VkDescriptorSetLayoutBinding(
                binding=0,
                descriptorType=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                descriptorCount=1,
                stageFlags=vk.VK_SHADER_STAGE_COMPUTE_BIT,
            ),
        ]
        dsci = vk.VkDescriptorSetLayoutCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_SET_LAYOUT_CREATE_INFO,
            bindingCount=len(bindings),
            pBindings=bindings,
        )
        self.descriptor_set_layout = checked(vk, vk.vkCreateDescriptorSetLayout, self.device, dsci, None)
        stack.callback(vk.vkDestroyDescriptorSetLayout, self.device, self.descriptor_set_layout, None)

        pcr = vk.VkPushConstantRange(
            stageFlags=vk.VK_SHADER_STAGE_COMPUTE_BIT,
            offset=0,
            size=config.PUSH_CONSTANT_SIZE,
        )
        plci = vk.VkPipelineLayoutCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_PIPELINE_LAYOUT_CREATE_INFO,
            setLayoutCount=1,
            pSetLayouts=[self.descriptor_set_layout],
            pushConstantRangeCount=1,
            pPushConstantRanges=[pcr],
        )
        self.pipeline_layout = checked(vk, vk.vkCreatePipelineLayout, self.device, plci, None)
        stack.callback(vk.vkDestroyPipelineLayout, self.device, self.pipeline_layout, None)

        stage = vk.VkPipelineShaderStageCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
            stage=vk.VK_SHADER_STAGE_COMPUTE_BIT,
            module=self.shader_module,
            pName=b"main",
        )
        cpci = vk.VkComputePipelineCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_COMPUTE_PIPELINE_CREATE_INFO,
            stage=stage,
            layout=self.pipeline_layout,
        )
        self.pipeline = checked(vk, vk.vkCreateComputePipelines, self.device, vk.VK_NULL_HANDLE, 1, [cpci], None)[0]
        stack.callback(vk.vkDestroyPipeline, self.device, self.pipeline, None)

        # Command pool + single reusable command buffer
        cpoolci = vk.VkCommandPoolCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_COMMAND_POOL_CREATE_INFO,
            queueFamilyIndex=sel.family_index,
            flags=vk.VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT,
        )
        self.command_pool = checked(vk, vk.vkCreateCommandPool, self.device, cpoolci, None)
        stack.callback(vk.vkDestroyCommandPool, self.device, self.command_pool, None)
        cbai = vk.VkCommandBufferAllocateInfo(
            sType=vk.VK_STRUCTURE_TYPE_COMMAND_BUFFER_ALLOCATE_INFO,
            commandPool=self.command_pool,
            level=vk.VK_COMMAND_BUFFER_LEVEL_PRIMARY,
            commandBufferCount=1,
        )
        self.command_buffer = checked(vk, vk.vkAllocateCommandBuffers, self.device, cbai)[0]
        stack.callback(vk.vkFreeCommandBuffers, self.device, self.command_pool, 1, [self.command_buffer])

        # Exactly one storage-buffer descriptor; the set is freed with its pool
        pool_sizes = [
            vk.VkDescriptorPoolSize(
                type=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                descriptorCount=1,
            )
        ]
        dpci = vk.VkDescriptorPoolCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_POOL_CREATE_INFO,
            maxSets=1,
            poolSizeCount=len(pool_sizes),
            pPoolSizes=pool_sizes,
        )
        self.descriptor_pool = checked(vk, vk.vkCreateDescriptorPool, self.device, dpci, None)
        stack.callback(vk.vkDestroyDescriptorPool, self.device, self.descriptor_pool, None)
        dsai = vk.VkDescriptorSetAllocateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_SET_ALLOCATE_INFO,
            descriptorPool=self.descriptor_pool,
            descriptorSetCount=1,
            pSetLayouts=[self.descriptor_set_layout],
        )
        self.descriptor_set = checked(vk, vk.vkAllocateDescriptorSets, self.device, dsai)[0]

        # Unsignalled; reset after every successful wait
        fence_ci = vk.VkFenceCreateInfo(sType=vk.VK_STRUCTURE_TYPE_FENCE_CREATE_INFO)
        self.fence = checked(vk, vk.vkCreateFence, self.device, fence_ci, None)
        stack.callback(vk.vkDestroyFence, self.device, self.fence, None)

        # Runs first on close: nothing may be destroyed while the queue is busy.
        stack.callback(vk.vkDeviceWaitIdle, self.device)
        LOGGER.debug("pipeline resources ready on device %d family %d", sel.device_index, sel.family_index)

    # ------------------------------
    # Use
    # ------------------------------
    def bind_matrix(self, buffer: Any, nbytes: int) -> None:
        """Point binding 0 of the descriptor set at ``buffer``."""

        vk = self._vk
        info = vk.VkDescriptorBufferInfo(buffer=buffer, offset=0, range=nbytes)
        write = vk.VkWriteDescriptorSet(
            sType=vk.VK_STRUCTURE_TYPE_WRITE_DESCRIPTOR_SET,
            dstSet=self.descriptor_set,
            dstBinding=0,
            descriptorCount=1,
            descriptorType=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
            pBufferInfo=[info],
        )
        vk.vkUpdateDescriptorSets(self.device, 1, [write], 0, None)

    @property
    def closed(self) -> bool:
        return self._stack is None

    def close(self) -> None:
        stack, self._stack = self._stack, None
        if stack is None:
            return
        stack.close()
        LOGGER.debug("pipeline resources released")
