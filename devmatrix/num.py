from __future__ import annotations

"""Element types understood by the kernels.

Every kernel is compiled once per (operation, element type). The element type
name is the stable suffix used in kernel names, e.g. ``vector_add_float``.
"""

import enum
from typing import Any

import numpy as np


class NumType(enum.Enum):
    FLOAT = ("float", np.float32, "float")
    DOUBLE = ("double", np.float64, "double")
    INT = ("int", np.int32, "int")
    UINT = ("uint", np.uint32, "uint")

    def __init__(self, type_name: str, np_type: type, glsl: str) -> None:
        self.type_name = type_name
        self.dtype = np.dtype(np_type)
        self.glsl = glsl

    @property
    def is_integer(self) -> bool:
        return self.dtype.kind in "iu"

    def scalar(self, value: Any) -> Any:
        """Convert ``value`` into this element type's NumPy scalar."""
        return self.dtype.type(value)


_BY_DTYPE = {t.dtype: t for t in NumType}
_BY_NAME = {t.type_name: t for t in NumType}


def from_dtype(dtype: Any) -> NumType | None:
    return _BY_DTYPE.get(np.dtype(dtype))


def from_name(name: str) -> NumType | None:
    return _BY_NAME.get(name)


def type_name(dtype: Any) -> str:
    """Kernel-name suffix for ``dtype``.

    Unsupported dtypes fall through to NumPy's own name (``float16``,
    ``complex64``...) so the kernel lookup fails with a clear KernelNotFound.
    """
    t = from_dtype(dtype)
    if t is not None:
        return t.type_name
    return np.dtype(dtype).name
