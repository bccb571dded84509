"""Physical device and queue family selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import NoCapableDevice
from .registry import DeviceClaim, DeviceRegistry, default_registry
from .vulkan_backend import checked, decode_string

LOGGER = logging.getLogger(__name__)

# Solvers drive a single queue; the rest of the family stays available.
QUEUES_PER_SOLVER = 1


@dataclass(frozen=True)
class QueueFamilyInfo:
    index: int
    flags: int
    queue_count: int


@dataclass(frozen=True)
class DeviceCapabilities:
    """What one physical device offers, queried once."""

    index: int
    name: str
    physical_device: Any
    shader_float64: bool
    queue_families: tuple[QueueFamilyInfo, ...]


@dataclass(frozen=True)
class QueueSelection:
    device_index: int
    family_index: int
    physical_device: Any
    device_name: str
    compute_only: bool
    queue_count: int = QUEUES_PER_SOLVER

    @property
    def claim(self) -> DeviceClaim:
        return DeviceClaim(self.device_index, self.family_index, self.queue_count)


class DeviceSelector:
    """Pick an fp64-capable device and an unclaimed compute queue family.

    Capabilities are negotiated when the selector is built; ``select()``
    then only consults the cached records and the registry.
    """

    def __init__(self, vk: Any, instance: Any, registry: Optional[DeviceRegistry] = None) -> None:
        self._vk = vk
        self.registry = registry if registry is not None else default_registry()
        self.devices: tuple[DeviceCapabilities, ...] = self._negotiate(instance)

    def _negotiate(self, instance: Any) -> tuple[DeviceCapabilities, ...]:
        vk = self._vk
        devices = checked(vk, vk.vkEnumeratePhysicalDevices, instance)
        caps = []
        for i, pd in enumerate(devices or []):
            features = vk.vkGetPhysicalDeviceFeatures(pd)
            props = vk.vkGetPhysicalDeviceProperties(pd)
            families = tuple(
                QueueFamilyInfo(index=j, flags=int(qp.queueFlags), queue_count=int(qp.queueCount))
                for j, qp in enumerate(vk.vkGetPhysicalDeviceQueueFamilyProperties(pd))
            )
            cap = DeviceCapabilities(
                index=i,
                name=decode_string(vk, props.deviceName),
                physical_device=pd,
                shader_float64=bool(features.shaderFloat64),
                queue_families=families,
            )
            LOGGER.debug(
                "device %d %r: fp64=%s families=%s",
                i,
                cap.name,
                cap.shader_float64,
                [(f.index, hex(f.flags), f.queue_count) for f in families],
            )
            caps.append(cap)
        return tuple(caps)

    def _has_free_queue(self, device: DeviceCapabilities, family: QueueFamilyInfo) -> bool:
        return self.registry.occupancy(device.index, family.index) + QUEUES_PER_SOLVER <= family.queue_count

    def find(self) -> QueueSelection:
        """Choose a queue family without claiming it."""

        vk = self._vk
        compute_bit = vk.VK_QUEUE_COMPUTE_BIT
        graphics_bit = vk.VK_QUEUE_GRAPHICS_BIT

        fallback: Optional[QueueSelection] = None
        for device in self.devices:
            if not device.shader_float64:
                continue
            for family in device.queue_families:
                if (family.flags & compute_bit) == 0:
                    continue
                if not self._has_free_queue(device, family):
                    continue
                compute_only = (family.flags & graphics_bit) == 0
                selection = QueueSelection(
                    device_index=device.index,
                    family_index=family.index,
                    physical_device=device.physical_device,
                    device_name=device.name,
                    compute_only=compute_only,
                )
                if compute_only:
                    return selection
                if fallback is None:
                    fallback = selection

        if fallback is not None:
            return fallback
        if not any(d.shader_float64 for d in self.devices):
            raise NoCapableDevice("no Vulkan device supports double precision shader arithmetic")
        raise NoCapableDevice("all compute queues of fp64-capable devices are occupied")

    def select(self) -> QueueSelection:
        """Choose a queue family and record the claim in the registry."""

        selection = self.find()
        self.registry.claim(selection.device_index, selection.family_index, selection.queue_count)
        LOGGER.info(
            "selected device %d (%s) queue family %d%s",
            selection.device_index,
            selection.device_name,
            selection.family_index,
            " (compute only)" if selection.compute_only else "",
        )
        return selection
