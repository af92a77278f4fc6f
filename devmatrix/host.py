from __future__ import annotations

from typing import Any, Iterable

import numpy as np


def as_host_matrix(data: Any, dtype: Any = None) -> np.ndarray:
    """Return ``data`` as a C-contiguous (row-major) 2-D array.

    1-D input is treated as a single row.
    """

    arr = np.asarray(data, dtype=dtype)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2:
        raise ValueError(f"host matrix must be 2-D, got shape {arr.shape}")
    return np.ascontiguousarray(arr)


def from_vec(rows: int, columns: int, values: Iterable[Any], dtype: Any = None) -> np.ndarray:
    """Build a ``rows x columns`` host matrix from a flat row-major sequence.

    Without ``dtype``, Python ints that fit become int32 (NumPy would infer
    int64, which has no kernels). Arrays and other values keep their type.
    """

    from_python = not isinstance(values, np.ndarray)
    if from_python:
        values = list(values)
    arr = np.asarray(values, dtype=dtype)
    if from_python and dtype is None and arr.dtype.kind == "i" and arr.dtype != np.int32 and arr.size:
        info = np.iinfo(np.int32)
        if info.min <= arr.min() and arr.max() <= info.max:
            arr = arr.astype(np.int32)
    if arr.size != rows * columns:
        raise ValueError(f"expected {rows * columns} values for a {rows}x{columns} matrix, got {arr.size}")
    return np.ascontiguousarray(arr.reshape(rows, columns))
