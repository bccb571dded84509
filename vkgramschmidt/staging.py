"""Host <-> device staging of the matrix buffer.

On the device the matrix is always stored row-major with the vector index
outer and the coordinate index inner, so coordinate ``j`` of vector ``i``
sits at flat offset ``i*n + j``. When the caller keeps vectors in columns
the matrix is transposed on the way in and back on the way out.
"""

from __future__ import annotations

import logging
from collections.abc import MutableSequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .errors import NoSuitableMemory
from .resources import PipelineResources
from .vulkan_backend import checked, read_mapped, write_mapped

LOGGER = logging.getLogger(__name__)

ITEMSIZE = np.dtype(np.float64).itemsize


@dataclass
class MatrixBuffer:
    """A host-visible storage buffer holding one n x n float64 matrix."""

    n: int
    nbytes: int

    # Vulkan handles
    buffer: Any
    memory: Any

    _vk: Any = field(repr=False, default=None)
    _device: Any = field(repr=False, default=None)
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._vk.vkDestroyBuffer(self._device, self.buffer, None)
        self._vk.vkFreeMemory(self._device, self.memory, None)


def as_square_matrix(matrix) -> np.ndarray:
    """Validate ``matrix`` and return it as a float64 array (a copy)."""

    arr = np.array(matrix, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValueError(f"expected a square 2D matrix, got shape {arr.shape}")
    if arr.shape[0] == 0:
        raise ValueError("matrix must hold at least one vector")
    return arr


def check_writable(matrix) -> None:
    """Raise ``TypeError`` if the result cannot be written back into ``matrix``."""

    if isinstance(matrix, np.ndarray):
        _check_float_array(matrix, "matrix")
        return
    if not isinstance(matrix, MutableSequence):
        raise TypeError("matrix must be a NumPy array or a mutable sequence of mutable rows")
    for row in matrix:
        if isinstance(row, np.ndarray):
            _check_float_array(row, "matrix row")
        elif not isinstance(row, MutableSequence):
            raise TypeError(f"matrix row of type {type(row).__name__} is not mutable")


def _check_float_array(arr: np.ndarray, what: str) -> None:
    if not np.issubdtype(arr.dtype, np.floating):
        raise TypeError(f"{what} dtype {arr.dtype} cannot hold the orthonormal basis")
    if not arr.flags.writeable:
        raise TypeError(f"{what} array is read-only")


def find_memory_type(vk: Any, memory_properties: Any, type_bits: int, size: int) -> int:
    """Index of the first host-visible, host-coherent memory type that fits."""

    wanted = vk.VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | vk.VK_MEMORY_PROPERTY_HOST_COHERENT_BIT
    for i in range(memory_properties.memoryTypeCount):
        mem_type = memory_properties.memoryTypes[i]
        if (type_bits & (1 << i)) == 0:
            continue
        if (mem_type.propertyFlags & wanted) != wanted:
            continue
        if memory_properties.memoryHeaps[mem_type.heapIndex].size < size:
            continue
        return i
    raise NoSuitableMemory(f"no host-visible, host-coherent memory type can hold {size} bytes")


def _device_layout(arr: np.ndarray, vectors_as_columns: bool) -> np.ndarray:
    return np.ascontiguousarray(arr.T if vectors_as_columns else arr, dtype=np.float64)


def upload(vk: Any, resources: PipelineResources, matrix, vectors_as_columns: bool = True) -> MatrixBuffer:
    """Create the matrix buffer and copy ``matrix`` into it in device layout."""

    arr = as_square_matrix(matrix)
    n = arr.shape[0]
    nbytes = n * n * ITEMSIZE
    device = resources.device

    with ExitStack() as stack:
        bci = vk.VkBufferCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_BUFFER_CREATE_INFO,
            size=nbytes,
            usage=(
                vk.VK_BUFFER_USAGE_STORAGE_BUFFER_BIT
                | vk.VK_BUFFER_USAGE_TRANSFER_DST_BIT
                | vk.VK_BUFFER_USAGE_TRANSFER_SRC_BIT
            ),
            sharingMode=vk.VK_SHARING_MODE_EXCLUSIVE,
        )
        buf = checked(vk, vk.vkCreateBuffer, device, bci, None)
        stack.callback(vk.vkDestroyBuffer, device, buf, None)
        req = vk.vkGetBufferMemoryRequirements(device, buf)

        mem_type = find_memory_type(vk, resources.memory_properties, req.memoryTypeBits, req.size)
        mai = vk.VkMemoryAllocateInfo(
            sType=vk.VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
            allocationSize=req.size,
            memoryTypeIndex=mem_type,
        )
        mem = checked(vk, vk.vkAllocateMemory, device, mai, None)
        stack.callback(vk.vkFreeMemory, device, mem, None)
        checked(vk, vk.vkBindBufferMemory, device, buf, mem, 0)

        mapped = checked(vk, vk.vkMapMemory, device, mem, 0, nbytes, 0)
        try:
            write_mapped(mapped, _device_layout(arr, vectors_as_columns).tobytes())
        finally:
            vk.vkUnmapMemory(device, mem)

        stack.pop_all()

    LOGGER.debug("uploaded %dx%d matrix (%d bytes, memory type %d)", n, n, nbytes, mem_type)
    return MatrixBuffer(n=n, nbytes=nbytes, buffer=buf, memory=mem, _vk=vk, _device=device)


def _store(matrix, result: np.ndarray) -> None:
    if isinstance(matrix, np.ndarray):
        matrix[...] = result
        return
    for i, row in enumerate(matrix):
        for j in range(len(row)):
            row[j] = float(result[i, j])


def read_back(vk: Any, buffer: MatrixBuffer, vectors_as_columns: bool = True) -> np.ndarray:
    """Copy the buffer contents into a new array in the caller's orientation."""

    device = buffer._device
    mapped = checked(vk, vk.vkMapMemory, device, buffer.memory, 0, buffer.nbytes, 0)
    try:
        raw = read_mapped(mapped, buffer.nbytes)
    finally:
        vk.vkUnmapMemory(device, buffer.memory)
    vectors = np.frombuffer(raw, dtype=np.float64, count=buffer.n * buffer.n).reshape(buffer.n, buffer.n)
    return (vectors.T if vectors_as_columns else vectors).copy()


def download(vk: Any, buffer: MatrixBuffer, matrix, vectors_as_columns: bool = True) -> np.ndarray:
    """Write the buffer back into ``matrix`` in place and release the buffer."""

    try:
        result = read_back(vk, buffer, vectors_as_columns)
    finally:
        buffer.release()
    _store(matrix, result)
    return result
