"""An in-process stand-in for the ``vulkan`` binding.

Only the calls the solver makes are implemented. Handles are plain
objects tracked in ``FakeVulkan.live`` so tests can check that every
handle is destroyed, and destroyed in a valid order. Submitted dispatches
run ``kernel_launch``, a per-invocation model of
``vkgramschmidt/shaders/gram_schmidt.comp``, on the bytes behind the
bound storage buffer.
"""

from __future__ import annotations

import functools
import itertools
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Optional

import numpy as np

from vkgramschmidt import config

VK_QUEUE_GRAPHICS_BIT = 0x1
VK_QUEUE_COMPUTE_BIT = 0x2
VK_QUEUE_TRANSFER_BIT = 0x4

VK_MEMORY_PROPERTY_DEVICE_LOCAL_BIT = 0x1
VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT = 0x2
VK_MEMORY_PROPERTY_HOST_COHERENT_BIT = 0x4
VK_MEMORY_PROPERTY_HOST_CACHED_BIT = 0x8

HOST_MEMORY = VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | VK_MEMORY_PROPERTY_HOST_COHERENT_BIT

VK_SUCCESS = 0
VK_TIMEOUT = 2
VK_ERROR_OUT_OF_HOST_MEMORY = -1
VK_ERROR_OUT_OF_DEVICE_MEMORY = -2
VK_ERROR_INITIALIZATION_FAILED = -3
VK_ERROR_DEVICE_LOST = -4


class VkException(Exception):
    pass


class VkError(Exception):
    pass


class VkTimeout(VkException):
    pass


class VkErrorOutOfHostMemory(VkError):
    pass


class VkErrorOutOfDeviceMemory(VkError):
    pass


class VkErrorInitializationFailed(VkError):
    pass


class VkErrorDeviceLost(VkError):
    pass


exception_codes = {
    VK_TIMEOUT: VkTimeout,
    VK_ERROR_OUT_OF_HOST_MEMORY: VkErrorOutOfHostMemory,
    VK_ERROR_OUT_OF_DEVICE_MEMORY: VkErrorOutOfDeviceMemory,
    VK_ERROR_INITIALIZATION_FAILED: VkErrorInitializationFailed,
    VK_ERROR_DEVICE_LOST: VkErrorDeviceLost,
}

_CONSTANTS = {
    "VK_TRUE": 1,
    "VK_FALSE": 0,
    "VK_NULL_HANDLE": None,
    "VK_QUEUE_GRAPHICS_BIT": VK_QUEUE_GRAPHICS_BIT,
    "VK_QUEUE_COMPUTE_BIT": VK_QUEUE_COMPUTE_BIT,
    "VK_QUEUE_TRANSFER_BIT": VK_QUEUE_TRANSFER_BIT,
    "VK_MEMORY_PROPERTY_DEVICE_LOCAL_BIT": VK_MEMORY_PROPERTY_DEVICE_LOCAL_BIT,
    "VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT": VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT,
    "VK_MEMORY_PROPERTY_HOST_COHERENT_BIT": VK_MEMORY_PROPERTY_HOST_COHERENT_BIT,
    "VK_DESCRIPTOR_TYPE_STORAGE_BUFFER": 7,
    "VK_SHADER_STAGE_COMPUTE_BIT": 0x20,
    "VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT": 0x2,
    "VK_COMMAND_BUFFER_LEVEL_PRIMARY": 0,
    "VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT": 0x1,
    "VK_BUFFER_USAGE_TRANSFER_SRC_BIT": 0x1,
    "VK_BUFFER_USAGE_TRANSFER_DST_BIT": 0x2,
    "VK_BUFFER_USAGE_STORAGE_BUFFER_BIT": 0x20,
    "VK_SHARING_MODE_EXCLUSIVE": 0,
    "VK_PIPELINE_BIND_POINT_COMPUTE": 1,
    "VK_DEBUG_UTILS_MESSAGE_TYPE_GENERAL_BIT_EXT": 0x1,
    "VK_DEBUG_UTILS_MESSAGE_TYPE_VALIDATION_BIT_EXT": 0x2,
    "VK_DEBUG_UTILS_MESSAGE_TYPE_PERFORMANCE_BIT_EXT": 0x4,
}


def VK_MAKE_VERSION(major: int, minor: int, patch: int) -> int:
    return (major << 22) | (minor << 12) | patch


def _normalize(vectors: np.ndarray, v: int) -> None:
    with np.errstate(divide="ignore", invalid="ignore"):
        vectors[v] /= np.sqrt(np.dot(vectors[v], vectors[v]))


def kernel_launch(vectors: np.ndarray, pivot_index: int, groups: int) -> None:
    """One launch of gram_schmidt.comp over ``groups`` work groups.

    Mirrors the shader invocation by invocation: offset 0 normalises the
    previous pivot (and the current one on the last launch), every other
    offset projects its vector against the raw pivot. Invocations past
    the last vector return without touching memory.
    """

    vector_count = vectors.shape[0]
    # Every projecting invocation reads the pivot as it was at launch.
    pivot = vectors[pivot_index].copy()
    pp = np.dot(pivot, pivot)
    for offset in range(groups * config.WORKGROUP_SIZE):
        v = pivot_index + offset
        if v >= vector_count:
            break
        if offset == 0:
            if pivot_index > 0:
                _normalize(vectors, pivot_index - 1)
            if v + 1 == vector_count:
                _normalize(vectors, v)
            continue
        with np.errstate(divide="ignore", invalid="ignore"):
            vectors[v] -= (np.dot(vectors[v], pivot) / pp) * pivot


@dataclass
class FakeGpu:
    name: str = "Fake GPU"
    shader_float64: bool = True
    # (queueFlags, queueCount) per family
    queue_families: list = field(
        default_factory=lambda: [
            (VK_QUEUE_GRAPHICS_BIT | VK_QUEUE_COMPUTE_BIT | VK_QUEUE_TRANSFER_BIT, 1),
            (VK_QUEUE_COMPUTE_BIT | VK_QUEUE_TRANSFER_BIT, 2),
        ]
    )
    # (propertyFlags, heapIndex) per memory type
    memory_types: list = field(
        default_factory=lambda: [
            (VK_MEMORY_PROPERTY_DEVICE_LOCAL_BIT, 0),
            (HOST_MEMORY | VK_MEMORY_PROPERTY_HOST_CACHED_BIT, 1),
        ]
    )
    heap_sizes: list = field(default_factory=lambda: [1 << 30, 1 << 28])
    buffer_type_bits: int = 0xFFFFFFFF


class Handle:
    def __init__(self, kind: str, hid: int, **attrs) -> None:
        self.kind = kind
        self.id = hid
        self.__dict__.update(attrs)

    def __repr__(self) -> str:
        return f"<{self.kind} #{self.id}>"


class _FakeFFI:
    def new(self, ctype: str, init):
        return list(init)

    def string(self, value) -> bytes:
        return value if isinstance(value, bytes) else str(value).encode()


def _failable(fn):
    @functools.wraps(fn)
    def wrapper(self, *args):
        code = self.fail.get(fn.__name__)
        if code is not None:
            raise exception_codes[code]()
        return fn(self, *args)

    return wrapper


class FakeVulkan:
    """Module-like object exposing the subset of the binding the solver uses."""

    VkException = VkException
    VkError = VkError
    VkTimeout = VkTimeout
    exception_codes = exception_codes
    VK_MAKE_VERSION = staticmethod(VK_MAKE_VERSION)

    def __init__(
        self,
        gpus: Optional[list] = None,
        api_version: tuple = (1, 2),
        layers: tuple = ("VK_LAYER_KHRONOS_validation",),
    ) -> None:
        self.gpus = list(gpus) if gpus is not None else [FakeGpu()]
        self.api_version = api_version
        self.layers = list(layers)
        self.ffi = _FakeFFI()

        self._ids = itertools.count(1)
        self.live: dict = {}
        self.destroyed: list = []
        self.fail: dict = {}
        self.hang_at_pivot: Optional[int] = None
        self.dispatches: list = []
        self.wait_timeouts: list = []
        self.messengers: list = []
        self.instances: list = []
        self.devices: list = []

        self._physical = [Handle("physical_device", 0, gpu=g, index=i) for i, g in enumerate(self.gpus)]
        for name, value in _CONSTANTS.items():
            setattr(self, name, value)

    def __getattr__(self, name: str):
        if name.startswith("VK_STRUCTURE_TYPE_"):
            return name
        if name.startswith("Vk"):
            return lambda **kw: SimpleNamespace(_type=name, **kw)
        raise AttributeError(name)

    # ------------------------------
    # Bookkeeping
    # ------------------------------
    def _new(self, kind: str, **attrs) -> Handle:
        h = Handle(kind, next(self._ids), **attrs)
        self.live[h.id] = h
        return h

    def _destroy(self, handle: Handle, kind: str) -> None:
        assert handle is not None, f"destroying a null {kind}"
        assert handle.kind == kind, f"expected {kind}, got {handle.kind}"
        assert handle.id in self.live, f"{handle!r} destroyed twice"
        del self.live[handle.id]
        self.destroyed.append(kind)

    def live_kinds(self) -> list:
        return sorted(h.kind for h in self.live.values())

    def emit_validation(self, severity: int, text: str) -> None:
        for messenger in self.messengers:
            messenger.callback(severity, 0x2, SimpleNamespace(pMessage=text.encode()), None)

    # ------------------------------
    # Instance
    # ------------------------------
    def vkEnumerateInstanceVersion(self) -> int:
        return VK_MAKE_VERSION(self.api_version[0], self.api_version[1], 0)

    def vkEnumerateInstanceLayerProperties(self) -> list:
        return [SimpleNamespace(layerName=name.encode()) for name in self.layers]

    @_failable
    def vkCreateInstance(self, create_info, allocator):
        inst = self._new(
            "instance",
            layers=list(create_info.ppEnabledLayerNames or []),
            extensions=list(create_info.ppEnabledExtensionNames or []),
        )
        self.instances.append(inst)
        return inst

    def vkDestroyInstance(self, instance, allocator) -> None:
        leftovers = [h for h in self.live.values() if getattr(h, "instance", None) is instance]
        assert not leftovers, f"instance destroyed before {leftovers}"
        self._destroy(instance, "instance")

    def vkGetInstanceProcAddr(self, instance, name: str):
        return getattr(self, name)

    @_failable
    def vkCreateDebugUtilsMessengerEXT(self, instance, create_info, allocator):
        messenger = self._new("messenger", instance=instance, callback=create_info.pfnUserCallback)
        self.messengers.append(messenger)
        return messenger

    def vkDestroyDebugUtilsMessengerEXT(self, instance, messenger, allocator) -> None:
        self._destroy(messenger, "messenger")
        self.messengers.remove(messenger)

    @_failable
    def vkEnumeratePhysicalDevices(self, instance) -> list:
        return list(self._physical)

    def vkGetPhysicalDeviceFeatures(self, physical_device):
        return SimpleNamespace(shaderFloat64=int(physical_device.gpu.shader_float64))

    def vkGetPhysicalDeviceProperties(self, physical_device):
        return SimpleNamespace(deviceName=physical_device.gpu.name.encode())

    def vkGetPhysicalDeviceQueueFamilyProperties(self, physical_device) -> list:
        return [SimpleNamespace(queueFlags=f, queueCount=c) for f, c in physical_device.gpu.queue_families]

    def vkGetPhysicalDeviceMemoryProperties(self, physical_device):
        gpu = physical_device.gpu
        return SimpleNamespace(
            memoryTypeCount=len(gpu.memory_types),
            memoryTypes=[SimpleNamespace(propertyFlags=f, heapIndex=h) for f, h in gpu.memory_types],
            memoryHeapCount=len(gpu.heap_sizes),
            memoryHeaps=[SimpleNamespace(size=s) for s in gpu.heap_sizes],
        )

    # ------------------------------
    # Device
    # ------------------------------
    @_failable
    def vkCreateDevice(self, physical_device, create_info, allocator):
        assert create_info.pEnabledFeatures.shaderFloat64, "fp64 must be enabled"
        qci = create_info.pQueueCreateInfos[0]
        dev = self._new(
            "device",
            physical=physical_device,
            family=qci.queueFamilyIndex,
            queue_count=qci.queueCount,
        )
        self.devices.append(dev)
        return dev

    def vkDestroyDevice(self, device, allocator) -> None:
        children = [h for h in self.live.values() if getattr(h, "device", None) is device]
        assert not children, f"device destroyed before {children}"
        self._destroy(device, "device")

    def vkGetDeviceQueue(self, device, family: int, index: int):
        assert index < device.queue_count
        return Handle("queue", 0, device=device, family=family)

    def vkDeviceWaitIdle(self, device) -> None:
        assert device.id in self.live

    # ------------------------------
    # Pipeline objects
    # ------------------------------
    @_failable
    def vkCreateShaderModule(self, device, create_info, allocator):
        assert create_info.codeSize % 4 == 0
        return self._new("shader_module", device=device)

    def vkDestroyShaderModule(self, device, module, allocator) -> None:
        self._destroy(module, "shader_module")

    @_failable
    def vkCreateDescriptorSetLayout(self, device, create_info, allocator):
        bindings = [(b.binding, b.descriptorType) for b in create_info.pBindings]
        return self._new("descriptor_set_layout", device=device, bindings=bindings)

    def vkDestroyDescriptorSetLayout(self, device, layout, allocator) -> None:
        self._destroy(layout, "descriptor_set_layout")

    @_failable
    def vkCreatePipelineLayout(self, device, create_info, allocator):
        ranges = [(r.offset, r.size) for r in create_info.pPushConstantRanges]
        return self._new("pipeline_layout", device=device, push_ranges=ranges)

    def vkDestroyPipelineLayout(self, device, layout, allocator) -> None:
        self._destroy(layout, "pipeline_layout")

    @_failable
    def vkCreateComputePipelines(self, device, cache, count, create_infos, allocator) -> list:
        return [
            self._new("pipeline", device=device, layout=ci.layout, entry=ci.stage.pName)
            for ci in create_infos[:count]
        ]

    def vkDestroyPipeline(self, device, pipeline, allocator) -> None:
        self._destroy(pipeline, "pipeline")

    @_failable
    def vkCreateCommandPool(self, device, create_info, allocator):
        return self._new("command_pool", device=device, family=create_info.queueFamilyIndex)

    def vkDestroyCommandPool(self, device, pool, allocator) -> None:
        buffers = [h for h in self.live.values() if getattr(h, "pool", None) is pool]
        assert not buffers, "command buffers must be freed before their pool"
        self._destroy(pool, "command_pool")

    @_failable
    def vkAllocateCommandBuffers(self, device, alloc_info) -> list:
        return [
            self._new("command_buffer", device=device, pool=alloc_info.commandPool, commands=[], recording=False, ended=False)
            for _ in range(alloc_info.commandBufferCount)
        ]

    def vkFreeCommandBuffers(self, device, pool, count, buffers) -> None:
        for cb in buffers[:count]:
            self._destroy(cb, "command_buffer")

    @_failable
    def vkCreateDescriptorPool(self, device, create_info, allocator):
        return self._new("descriptor_pool", device=device, max_sets=create_info.maxSets, allocated=0)

    def vkDestroyDescriptorPool(self, device, pool, allocator) -> None:
        for h in [h for h in self.live.values() if getattr(h, "pool", None) is pool]:
            self._destroy(h, h.kind)
        self._destroy(pool, "descriptor_pool")

    @_failable
    def vkAllocateDescriptorSets(self, device, alloc_info) -> list:
        pool = alloc_info.descriptorPool
        assert pool.allocated + alloc_info.descriptorSetCount <= pool.max_sets, "descriptor pool exhausted"
        pool.allocated += alloc_info.descriptorSetCount
        return [
            self._new("descriptor_set", device=device, pool=pool, bindings={})
            for _ in range(alloc_info.descriptorSetCount)
        ]

    def vkUpdateDescriptorSets(self, device, count, writes, copy_count, copies) -> None:
        for w in writes[:count]:
            w.dstSet.bindings[w.dstBinding] = w.pBufferInfo[0].buffer

    @_failable
    def vkCreateFence(self, device, create_info, allocator):
        return self._new("fence", device=device, signaled=False)

    def vkDestroyFence(self, device, fence, allocator) -> None:
        self._destroy(fence, "fence")

    @_failable
    def vkResetFences(self, device, count, fences) -> None:
        for f in fences[:count]:
            f.signaled = False

    def vkWaitForFences(self, device, count, fences, wait_all, timeout) -> None:
        self.wait_timeouts.append(timeout)
        if not all(f.signaled for f in fences[:count]):
            raise VkTimeout()

    # ------------------------------
    # Buffers
    # ------------------------------
    @_failable
    def vkCreateBuffer(self, device, create_info, allocator):
        return self._new("buffer", device=device, size=create_info.size, memory=None)

    def vkDestroyBuffer(self, device, buffer, allocator) -> None:
        self._destroy(buffer, "buffer")

    def vkGetBufferMemoryRequirements(self, device, buffer):
        size = (buffer.size + 255) // 256 * 256
        return SimpleNamespace(size=size, alignment=256, memoryTypeBits=device.physical.gpu.buffer_type_bits)

    @_failable
    def vkAllocateMemory(self, device, alloc_info, allocator):
        return self._new(
            "memory",
            device=device,
            data=bytearray(alloc_info.allocationSize),
            type_index=alloc_info.memoryTypeIndex,
            mapped=False,
        )

    def vkFreeMemory(self, device, memory, allocator) -> None:
        assert not memory.mapped, "freeing mapped memory"
        self._destroy(memory, "memory")

    @_failable
    def vkBindBufferMemory(self, device, buffer, memory, offset) -> None:
        buffer.memory = memory

    @_failable
    def vkMapMemory(self, device, memory, offset, size, flags):
        assert not memory.mapped, "memory mapped twice"
        memory.mapped = True
        return memoryview(memory.data)[offset : offset + size]

    def vkUnmapMemory(self, device, memory) -> None:
        assert memory.mapped
        memory.mapped = False

    # ------------------------------
    # Commands
    # ------------------------------
    def vkResetCommandBuffer(self, cb, flags) -> None:
        cb.commands = []
        cb.recording = False
        cb.ended = False

    @_failable
    def vkBeginCommandBuffer(self, cb, begin_info) -> None:
        cb.commands = []
        cb.recording = True
        cb.ended = False

    def vkEndCommandBuffer(self, cb) -> None:
        assert cb.recording
        cb.recording = False
        cb.ended = True

    def vkCmdBindPipeline(self, cb, bind_point, pipeline) -> None:
        cb.commands.append(("pipeline", pipeline))

    def vkCmdBindDescriptorSets(self, cb, bind_point, layout, first, count, sets, dyn_count, dyn_offsets) -> None:
        cb.commands.append(("set", sets[0]))

    def vkCmdPushConstants(self, cb, layout, stages, offset, size, values) -> None:
        assert (offset, size) == (0, config.PUSH_CONSTANT_SIZE)
        cb.commands.append(("push", [int(v) for v in values]))

    def vkCmdDispatch(self, cb, x, y, z) -> None:
        cb.commands.append(("dispatch", (x, y, z)))

    @_failable
    def vkQueueSubmit(self, queue, count, submits, fence) -> None:
        assert not fence.signaled, "submitting with a signalled fence"
        pivot = None
        for submit in submits[:count]:
            for cb in submit.pCommandBuffers:
                assert cb.ended, "submitting a command buffer that is not ended"
                pivot = self._execute(cb)
        if self.hang_at_pivot is not None and pivot == self.hang_at_pivot:
            return
        fence.signaled = True

    def _execute(self, cb) -> Optional[int]:
        pipeline = dset = push = None
        pivot = None
        for op, arg in cb.commands:
            if op == "pipeline":
                pipeline = arg
            elif op == "set":
                dset = arg
            elif op == "push":
                push = arg
            elif op == "dispatch":
                assert pipeline is not None and dset is not None and push is not None
                dimension, vector_count, pivot = push
                groups = arg[0]
                self.dispatches.append((pivot, groups))
                assert groups * config.WORKGROUP_SIZE >= vector_count - pivot, "dispatch too small"
                memory = dset.bindings[0].memory
                vectors = np.frombuffer(memory.data, dtype=np.float64, count=dimension * vector_count)
                kernel_launch(vectors.reshape(vector_count, dimension), pivot, groups)
        return pivot
