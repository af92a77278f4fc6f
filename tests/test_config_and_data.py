from pathlib import Path

import numpy as np
import pytest

from devmatrix import ComputeContext, Config, DeviceUnavailable
from devmatrix import vulkan_backend
from devmatrix.data import DataLoader, TensorDataset


def test_config_defaults(monkeypatch) -> None:
    for var in (
        "DEVMATRIX_BACKEND",
        "DEVMATRIX_SHADER_CACHE",
        "DEVMATRIX_GLSLC",
        "DEVMATRIX_FENCE_TIMEOUT_NS",
        "DEVMATRIX_LOCAL_SIZE",
    ):
        monkeypatch.delenv(var, raising=False)

    cfg = Config.from_env()

    assert cfg.backend == "auto"
    assert cfg.glslc == "glslc"
    assert cfg.local_size == 64
    assert cfg.fence_timeout_ns == 10_000_000_000
    assert cfg.shader_cache_dir.parts[-2:] == ("devmatrix", "shaders")


def test_config_from_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("DEVMATRIX_BACKEND", "NumPy")
    monkeypatch.setenv("DEVMATRIX_SHADER_CACHE", str(tmp_path))
    monkeypatch.setenv("DEVMATRIX_GLSLC", "/opt/bin/glslc")
    monkeypatch.setenv("DEVMATRIX_FENCE_TIMEOUT_NS", "5")
    monkeypatch.setenv("DEVMATRIX_LOCAL_SIZE", "128")

    cfg = Config.from_env()

    assert cfg.backend == "numpy"
    assert cfg.shader_cache_dir == Path(tmp_path)
    assert cfg.glslc == "/opt/bin/glslc"
    assert cfg.fence_timeout_ns == 5
    assert cfg.local_size == 128

    assert Config.from_env(backend="vulkan").backend == "vulkan"


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        Config(backend="cuda")
    with pytest.raises(ValueError):
        Config(local_size=0)


def test_context_honours_env_backend(monkeypatch) -> None:
    monkeypatch.setenv("DEVMATRIX_BACKEND", "numpy")
    with ComputeContext() as ctx:
        assert ctx.backend == "numpy"


def test_strict_vulkan_raises_when_unavailable(monkeypatch) -> None:
    def broken(config):
        raise RuntimeError("no Vulkan loader")

    monkeypatch.setattr(vulkan_backend, "VulkanDevice", broken)
    with pytest.raises(DeviceUnavailable, match="no Vulkan loader"):
        ComputeContext("vulkan")


def test_auto_falls_back_to_numpy(monkeypatch, caplog) -> None:
    def broken(config):
        raise RuntimeError("no Vulkan loader")

    monkeypatch.setattr(vulkan_backend, "VulkanDevice", broken)
    with caplog.at_level("WARNING", logger="devmatrix.context"):
        with ComputeContext("auto") as ctx:
            assert ctx.backend == "numpy"
    assert "falling back to NumPy" in caplog.text


def test_tensor_dataset_reshapes_vectors() -> None:
    ds = TensorDataset(np.arange(5), np.arange(10).reshape(5, 2))
    assert len(ds) == 5
    x, y = ds[2]
    assert x.shape == (1,) and x.dtype == np.float32
    np.testing.assert_array_equal(y, [4.0, 5.0])

    with pytest.raises(ValueError):
        TensorDataset(np.zeros(3), np.zeros(4))
    with pytest.raises(ValueError):
        TensorDataset()


def test_data_loader_batches_in_order() -> None:
    x = np.arange(10, dtype=np.float32).reshape(-1, 1)
    y = 2 * x
    loader = DataLoader(TensorDataset(x, y), batch_size=4, shuffle=False)

    batches = list(loader)

    assert len(loader) == 3
    assert [xb.shape for xb, _ in batches] == [(4, 1), (4, 1), (2, 1)]
    np.testing.assert_array_equal(batches[2][0], [[8.0], [9.0]])
    np.testing.assert_array_equal(batches[0][1], 2 * batches[0][0])
    assert batches[0][0].flags["C_CONTIGUOUS"]


def test_data_loader_drop_last_and_shuffle_seed() -> None:
    x = np.arange(10, dtype=np.float32).reshape(-1, 1)
    ds = TensorDataset(x, x)

    loader = DataLoader(ds, batch_size=4, shuffle=True, drop_last=True, seed=3)
    batches = list(loader)
    assert len(loader) == 2
    assert [xb.shape for xb, _ in batches] == [(4, 1), (4, 1)]
    for xb, yb in batches:
        np.testing.assert_array_equal(xb, yb)

    again = list(DataLoader(ds, batch_size=4, shuffle=True, drop_last=True, seed=3))
    np.testing.assert_array_equal(batches[0][0], again[0][0])

    with pytest.raises(ValueError):
        DataLoader(ds, batch_size=0)
