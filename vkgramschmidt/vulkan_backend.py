# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Thin helpers around the ``vulkan`` Python bindings.

Everything that talks to Vulkan takes the binding module as an argument
(``vk``) so a different implementation of the same API can be injected.
``require_vulkan()`` returns the real binding, or raises
``UnsupportedPlatform`` if it could not be imported (missing package or a
missing Vulkan loader).

Helpers here:
- ``checked``: call a Vulkan function and map binding errors to ours
- ``create_instance``: version negotiation, validation layer, debug messenger
- ``load_kernel`` / ``create_shader_module``: SPIR-V loading (compiles with glslc)
- ``write_mapped`` / ``read_mapped``: copy through mapped device memory
"""

from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Optional

import ctypes
import logging
import subprocess

from . import config
from .errors import ResourceCreationFailed, UnsupportedPlatform, VulkanCallFailed

try:
    # python package: "vulkan" (cffi bindings, loads libvulkan on import)
    import vulkan as _vulkan  # type: ignore

    _HAS_VULKAN = True
    _VULKAN_DISABLED_REASON: Optional[str] = None
except Exception as e:  # pragma: no cover - depends on the host
    _vulkan = None
    _HAS_VULKAN = False
    _VULKAN_DISABLED_REASON = f"{type(e).__name__}: {e}"


LOGGER = logging.getLogger(__name__)
# Validation-layer output goes to its own logger so it can be filtered separately.
VALIDATION_LOGGER = logging.getLogger("vkgramschmidt.vulkan")

VALIDATION_LAYER = "VK_LAYER_KHRONOS_validation"
DEBUG_UTILS_EXTENSION = "VK_EXT_debug_utils"

# VkDebugUtilsMessageSeverityFlagBitsEXT
_SEVERITY_VERBOSE = 0x0001
_SEVERITY_INFO = 0x0010
_SEVERITY_WARNING = 0x0100
_SEVERITY_ERROR = 0x1000


def require_vulkan() -> Any:
    """Return the ``vulkan`` binding module or raise ``UnsupportedPlatform``."""

    if not _HAS_VULKAN:
        raise UnsupportedPlatform(
            f"Python package 'vulkan' is unavailable ({_VULKAN_DISABLED_REASON})"
        )
    return _vulkan


def vulkan_available() -> bool:
    return _HAS_VULKAN


# ------------------------------
# Checked calls
# ------------------------------
def status_code(vk: Any, exc: BaseException) -> Optional[int]:
    """Recover the VkResult behind a binding exception."""

    # python-vulkan raises KeyError(result) when it has no class for a result.
    if isinstance(exc, KeyError) and exc.args and isinstance(exc.args[0], int):
        return exc.args[0]
    for code, cls in getattr(vk, "exception_codes", {}).items():
        if type(exc) is cls:
            return int(code)
    return None


def _binding_errors(vk: Any) -> tuple[type, ...]:
    errors = [cls for cls in (getattr(vk, "VkError", None), getattr(vk, "VkException", None)) if cls]
    return tuple(errors)


def checked(
    vk: Any,
    fn: Callable[..., Any],
    *args: Any,
    error: type[VulkanCallFailed] = ResourceCreationFailed,
    message: str = "",
) -> Any:
    """Call ``fn(*args)`` and raise ``error`` if the binding reports a failure."""

    name = getattr(fn, "__name__", repr(fn))
    try:
        return fn(*args)
    except _binding_errors(vk) as e:
        raise error(name, status_code(vk, e), message or type(e).__name__) from e
    except KeyError as e:
        code = status_code(vk, e)
        if code is None:
            raise
        raise error(name, code, message or "unmapped VkResult") from e


# ------------------------------
# Instance
# ------------------------------
def decode_string(vk: Any, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return vk.ffi.string(value).decode("utf-8", errors="replace")


def api_version(vk: Any) -> tuple[int, int]:
    """(major, minor) of the instance-level Vulkan API, ``(1, 0)`` when unknown."""

    enumerate_version = getattr(vk, "vkEnumerateInstanceVersion", None)
    if enumerate_version is None:
        return (1, 0)
    try:
        version = int(enumerate_version())
    except Exception as e:
        # Vulkan 1.0 loaders do not export vkEnumerateInstanceVersion.
        raise UnsupportedPlatform(
            f"Vulkan {config.MIN_API_VERSION[0]}.{config.MIN_API_VERSION[1]} is not supported by this machine"
        ) from e
    return ((version >> 22) & 0x7F, (version >> 12) & 0x3FF)


def _check_validation_layer(vk: Any) -> None:
    layers = vk.vkEnumerateInstanceLayerProperties()
    names = {decode_string(vk, layer.layerName) for layer in layers}
    if VALIDATION_LAYER not in names:
        raise UnsupportedPlatform(f"Debug layer {VALIDATION_LAYER} was not found; diagnostics impossible")


def _validation_callback(vk: Any) -> Callable[..., int]:
    def callback(severity, message_types, callback_data, user_data):  # noqa: ARG001
        text = decode_string(vk, callback_data.pMessage)
        if severity & _SEVERITY_ERROR:
            VALIDATION_LOGGER.error("%s", text)
        elif severity & _SEVERITY_WARNING:
            VALIDATION_LOGGER.warning("%s", text)
        elif severity & _SEVERITY_INFO:
            VALIDATION_LOGGER.info("%s", text)
        else:
            VALIDATION_LOGGER.debug("%s", text)
        return 0

    return callback


def _install_debug_messenger(vk: Any, instance: Any, stack: ExitStack) -> None:
    create = checked(vk, vk.vkGetInstanceProcAddr, instance, "vkCreateDebugUtilsMessengerEXT")
    destroy = checked(vk, vk.vkGetInstanceProcAddr, instance, "vkDestroyDebugUtilsMessengerEXT")
    mci = vk.VkDebugUtilsMessengerCreateInfoEXT(
        sType=vk.VK_STRUCTURE_TYPE_DEBUG_UTILS_MESSENGER_CREATE_INFO_EXT,
        messageSeverity=_SEVERITY_VERBOSE | _SEVERITY_INFO | _SEVERITY_WARNING | _SEVERITY_ERROR,
        messageType=(
            vk.VK_DEBUG_UTILS_MESSAGE_TYPE_GENERAL_BIT_EXT
            | vk.VK_DEBUG_UTILS_MESSAGE_TYPE_VALIDATION_BIT_EXT
            | vk.VK_DEBUG_UTILS_MESSAGE_TYPE_PERFORMANCE_BIT_EXT
        ),
        pfnUserCallback=_validation_callback(vk),
    )
    messenger = checked(vk, create, instance, mci, None)
    stack.callback(destroy, instance, messenger, None)
    LOGGER.debug("validation messenger installed")


def create_instance(vk: Any, stack: ExitStack, enable_diagnostics: bool = False) -> Any:
    """Create a VkInstance and register its teardown on ``stack``.

    Raises ``UnsupportedPlatform`` when the loader is older than the
    minimum API version or, with diagnostics, when the validation layer is
    missing.
    """

    major, minor = api_version(vk)
    if (major, minor) < config.MIN_API_VERSION:
        need = "%d.%d" % config.MIN_API_VERSION
        raise UnsupportedPlatform(f"Vulkan {need} is required, this machine provides {major}.{minor}")

    layers: list[str] = []
    extensions: list[str] = []
    if enable_diagnostics:
        _check_validation_layer(vk)
        layers.append(VALIDATION_LAYER)
        extensions.append(DEBUG_UTILS_EXTENSION)

    app_info = vk.VkApplicationInfo(
        sType=vk.VK_STRUCTURE_TYPE_APPLICATION_INFO,
        pApplicationName=b"vkgramschmidt",
        applicationVersion=vk.VK_MAKE_VERSION(0, 1, 0),
        pEngineName=b"vkgramschmidt",
        engineVersion=vk.VK_MAKE_VERSION(0, 1, 0),
        apiVersion=vk.VK_MAKE_VERSION(*config.MIN_API_VERSION, 0),
    )
    create_info = vk.VkInstanceCreateInfo(
        sType=vk.VK_STRUCTURE_TYPE_INSTANCE_CREATE_INFO,
        pApplicationInfo=app_info,
        enabledLayerCount=len(layers),
        ppEnabledLayerNames=layers or None,
        enabledExtensionCount=len(extensions),
        ppEnabledExtensionNames=extensions or None,
    )
    instance = checked(vk, vk.vkCreateInstance, create_info, None)
    stack.callback(vk.vkDestroyInstance, instance, None)
    LOGGER.debug("Vulkan %d.%d instance created (diagnostics=%s)", major, minor, enable_diagnostics)

    if enable_diagnostics:
        _install_debug_messenger(vk, instance, stack)
    return instance


# ------------------------------
# Kernel binary
# ------------------------------
def _compile_kernel(comp_path: Path, spv_path: Path) -> None:
    # On most distributions glslc ships with shaderc / glslang-tools.
    try:
        subprocess.run(
            ["glslc", str(comp_path), "-o", str(spv_path)],
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ResourceCreationFailed(
            "load_kernel", None, f"{spv_path.name} is missing and glslc was not found to build it"
        ) from e
    except subprocess.CalledProcessError as e:
        raise ResourceCreationFailed(
            "load_kernel",
            e.returncode,
            f"failed compiling {comp_path.name}:\n{e.stderr.decode('utf-8', errors='replace')}",
        ) from e


def load_kernel(shader_dir: Optional[Path] = None) -> bytes:
    """Return the SPIR-V words of the orthogonalisation kernel."""

    directory = Path(shader_dir) if shader_dir is not None else config.shader_dir()
    spv_path = directory / f"{config.KERNEL_NAME}.spv"
    comp_path = directory / f"{config.KERNEL_NAME}.comp"

    stale = (
        spv_path.exists()
        and comp_path.exists()
        and spv_path.stat().st_mtime < comp_path.stat().st_mtime
    )
    if not spv_path.exists() or stale:
        if not comp_path.exists():
            raise ResourceCreationFailed("load_kernel", None, f"kernel binary not found: {spv_path}")
        LOGGER.info("compiling %s", comp_path)
        _compile_kernel(comp_path, spv_path)

    try:
        spv = spv_path.read_bytes()
    except OSError as e:
        raise ResourceCreationFailed("load_kernel", None, f"cannot read {spv_path}: {e}") from e
    # Vulkan expects uint32 words.
    if not spv or len(spv) % 4 != 0:
        raise ResourceCreationFailed(
            "load_kernel", None, f"{spv_path} is not SPIR-V (length {len(spv)} is not a multiple of 4)"
        )
    return spv


def create_shader_module(vk: Any, device: Any, spv: bytes) -> Any:
    code_u32 = (ctypes.c_uint32 * (len(spv) // 4)).from_buffer_copy(spv)
    smci = vk.VkShaderModuleCreateInfo(
        sType=vk.VK_STRUCTURE_TYPE_SHADER_MODULE_CREATE_INFO,
        codeSize=len(spv),
        pCode=code_u32,
    )
    return checked(vk, vk.vkCreateShaderModule, device, smci, None)


# ------------------------------
# Mapped memory
# ------------------------------
def _mapped_pointer(mapped: Any) -> Any:
    if isinstance(mapped, (tuple, list)):
        mapped = mapped[1]
    # Some bindings return a pointer wrapper; normalize to its underlying value early.
    if hasattr(mapped, "value"):
        mapped = mapped.value
    return mapped


def write_mapped(mapped: Any, data: bytes) -> None:
    """Copy ``data`` to the start of a mapped range."""

    ptr = _mapped_pointer(mapped)
    if isinstance(ptr, int):
        ctypes.memmove(ptr, data, len(data))
        return
    try:
        view = memoryview(ptr).cast("B")
    except TypeError as e:
        raise ResourceCreationFailed("vkMapMemory", None, f"unusable mapping {type(ptr).__name__}") from e
    if view.readonly:
        raise ResourceCreationFailed("vkMapMemory", None, "mapped memory is not writable")
    view[: len(data)] = data


def read_mapped(mapped: Any, nbytes: int) -> bytes:
    """Copy ``nbytes`` out of a mapped range."""

    ptr = _mapped_pointer(mapped)
    if isinstance(ptr, int):
        return ctypes.string_at(ptr, nbytes)
    try:
        view = memoryview(ptr).cast("B")
    except TypeError as e:
        raise ResourceCreationFailed("vkMapMemory", None, f"unusable mapping {type(ptr).__name__}") from e
    return bytes(view[:nbytes])
