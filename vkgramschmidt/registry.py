"""Occupancy accounting for compute queues shared by solver instances."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceClaim:
    """Queues of one (device, queue family) pair held by a solver."""

    device_index: int
    family_index: int
    queue_count: int = 1


class DeviceRegistry:
    """Counts claimed queues per (device index, queue family index).

    ``construction_lock`` serialises solver construction against this
    registry so queue selection and claiming happen as one step.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy: dict[tuple[int, int], int] = {}
        self.construction_lock = threading.Lock()

    def claim(self, device: int, family: int, count: int = 1) -> DeviceClaim:
        if count < 1:
            raise ValueError(f"claim count must be positive, got {count}")
        key = (int(device), int(family))
        with self._lock:
            self._busy[key] = self._busy.get(key, 0) + int(count)
            total = self._busy[key]
        LOGGER.debug("claimed %d queue(s) on device %d family %d (now %d)", count, key[0], key[1], total)
        return DeviceClaim(key[0], key[1], int(count))

    def release(self, device: int, family: int, count: int = 1) -> None:
        key = (int(device), int(family))
        with self._lock:
            held = self._busy.get(key, 0)
            if count > held:
                raise ValueError(
                    f"releasing {count} queue(s) on device {key[0]} family {key[1]} "
                    f"but only {held} claimed"
                )
            if held == count:
                del self._busy[key]
            else:
                self._busy[key] = held - count
        LOGGER.debug("released %d queue(s) on device %d family %d", count, key[0], key[1])

    def release_claim(self, claim: DeviceClaim) -> None:
        self.release(claim.device_index, claim.family_index, claim.queue_count)

    def occupancy(self, device: int, family: int) -> int:
        with self._lock:
            return self._busy.get((int(device), int(family)), 0)

    def snapshot(self) -> dict[tuple[int, int], int]:
        with self._lock:
            return dict(self._busy)


_DEFAULT_REGISTRY = DeviceRegistry()


def default_registry() -> DeviceRegistry:
    """The registry shared by every solver that is not given its own."""

    return _DEFAULT_REGISTRY
