from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


_BACKENDS = ("auto", "vulkan", "numpy")


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "devmatrix" / "shaders"


@dataclass
class Config:
    """Runtime settings for a ComputeContext.

    backend: "auto" tries Vulkan and falls back to NumPy, "vulkan" fails fast,
    "numpy" never touches the GPU.
    """

    backend: str = "auto"
    shader_cache_dir: Path = field(default_factory=_default_cache_dir)
    glslc: str = "glslc"
    fence_timeout_ns: int = 10_000_000_000  # 10s
    local_size: int = 64

    def __post_init__(self) -> None:
        self.backend = self.backend.lower()
        if self.backend not in _BACKENDS:
            raise ValueError(f"unknown backend {self.backend!r}; expected one of {_BACKENDS}")
        self.shader_cache_dir = Path(self.shader_cache_dir)
        if self.local_size <= 0:
            raise ValueError("local_size must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        values: dict = {}
        env = os.environ
        if "DEVMATRIX_BACKEND" in env:
            values["backend"] = env["DEVMATRIX_BACKEND"]
        if "DEVMATRIX_SHADER_CACHE" in env:
            values["shader_cache_dir"] = Path(env["DEVMATRIX_SHADER_CACHE"]).expanduser()
        if "DEVMATRIX_GLSLC" in env:
            values["glslc"] = env["DEVMATRIX_GLSLC"]
        if "DEVMATRIX_FENCE_TIMEOUT_NS" in env:
            values["fence_timeout_ns"] = int(env["DEVMATRIX_FENCE_TIMEOUT_NS"])
        if "DEVMATRIX_LOCAL_SIZE" in env:
            values["local_size"] = int(env["DEVMATRIX_LOCAL_SIZE"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
