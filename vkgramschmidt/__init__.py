from importlib.metadata import PackageNotFoundError, version

from .errors import (
	DispatchFailed,
	DispatchTimeout,
	GramSchmidtError,
	NoCapableDevice,
	NoSuitableMemory,
	ResourceCreationFailed,
	SolverStateError,
	UnsupportedPlatform,
	VulkanCallFailed,
)
from .registry import DeviceClaim, DeviceRegistry, default_registry
from .solver import GramSchmidtSolver
from .reference import gram_schmidt
from . import config

try:
	__version__ = version("vkgramschmidt")
except PackageNotFoundError:  # pragma: no cover
	__version__ = "0.1.0"

__all__ = [
	"GramSchmidtSolver",
	"DeviceRegistry",
	"DeviceClaim",
	"default_registry",
	"gram_schmidt",
	"config",
	"GramSchmidtError",
	"UnsupportedPlatform",
	"NoCapableDevice",
	"VulkanCallFailed",
	"ResourceCreationFailed",
	"DispatchFailed",
	"NoSuitableMemory",
	"DispatchTimeout",
	"SolverStateError",
	"__version__",
]
