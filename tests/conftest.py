import pytest

from _fake_vulkan import FakeVulkan

from vkgramschmidt import config
from vkgramschmidt.registry import DeviceRegistry
from vkgramschmidt.solver import GramSchmidtSolver


@pytest.fixture
def fake_vk() -> FakeVulkan:
    return FakeVulkan()


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry()


@pytest.fixture
def kernel_dir(tmp_path):
    """A directory holding a stand-in kernel binary (SPIR-V magic + padding)."""

    d = tmp_path / "kernels"
    d.mkdir()
    (d / f"{config.KERNEL_NAME}.spv").write_bytes(b"\x03\x02\x23\x07" + bytes(28))
    return d


@pytest.fixture(autouse=True)
def _reset_config(monkeypatch):
    monkeypatch.delenv("VKGS_SHADER_DIR", raising=False)
    monkeypatch.delenv("VKGS_FENCE_TIMEOUT", raising=False)
    yield
    config.set_shader_dir(None)
    config.set_fence_timeout(None)


@pytest.fixture
def make_solver(fake_vk, registry, kernel_dir):
    solvers = []

    def make(**kwargs) -> GramSchmidtSolver:
        kwargs.setdefault("vk", fake_vk)
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("shader_dir", kernel_dir)
        solver = GramSchmidtSolver(**kwargs)
        solvers.append(solver)
        return solver

    yield make
    for solver in solvers:
        solver.close()
