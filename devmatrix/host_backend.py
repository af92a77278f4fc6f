from __future__ import annotations

"""NumPy fallback device.

Used when Vulkan is unavailable (or explicitly requested). It mirrors the
device model closely enough that the dependency protocol is exercised for
real: kernels run on a single worker thread in submission order, each one
first waiting on its wait-list, and every dispatch returns a future-backed
completion event.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np

from .errors import DispatchFailure, KernelNotFound
from .kernels import SPECS, KernelSpec, Op, kernel_name
from .num import NumType


logger = logging.getLogger(__name__)


@dataclass
class HostBuffer:
    """Flat host array standing in for device memory."""

    data: np.ndarray
    mode: Any = None

    @property
    def length(self) -> int:
        return int(self.data.size)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype


class HostEvent:
    """Completion token for one queued NumPy kernel."""

    def __init__(self, future: Future, name: str) -> None:
        self._future = future
        self.name = name

    @property
    def complete(self) -> bool:
        return self._future.done()

    @property
    def failure(self) -> Optional[BaseException]:
        if not self._future.done():
            return None
        return self._future.exception()

    def wait(self, timeout: Optional[float] = None) -> None:
        try:
            self._future.result(timeout=timeout)
        except DispatchFailure:
            raise
        except Exception as e:
            raise DispatchFailure(f"kernel {self.name} failed: {e}") from e

    def __repr__(self) -> str:  # pragma: no cover - cosmetic
        state = "complete" if self.complete else "pending"
        return f"HostEvent({self.name}, {state})"


KernelFn = Callable[[Sequence[np.ndarray], tuple, NumType], None]


def _divide(total: np.ndarray, n: int, num_type: NumType) -> np.ndarray:
    # Integer kernels truncate toward zero like device integer division.
    if num_type.is_integer:
        return np.trunc(total.astype(np.float64) / n).astype(num_type.dtype)
    return (total / num_type.scalar(n)).astype(num_type.dtype)


def _binary(ufunc) -> KernelFn:
    def run(arrays, params, num_type):
        a, b, out = arrays
        (n,) = params
        ufunc(a[:n], b[:n], out=out[:n])

    return run


def _copy_to(arrays, params, num_type):
    a, out = arrays
    (n,) = params
    np.copyto(out[:n], a[:n])


def _threshold(ufunc) -> KernelFn:
    def run(arrays, params, num_type):
        a, out = arrays
        n, threshold = params
        ufunc(a[:n], num_type.scalar(threshold), out=out[:n])

    return run


def _indicator(compare) -> KernelFn:
    def run(arrays, params, num_type):
        a, out = arrays
        n, threshold = params
        out[:n] = compare(a[:n], num_type.scalar(threshold))

    return run


def _transpose(arrays, params, num_type):
    a, out = arrays
    rows, columns = params
    n = rows * columns
    out[:n] = np.ascontiguousarray(a[:n].reshape(rows, columns).T).reshape(-1)


def _dot(arrays, params, num_type):
    a, b, out = arrays
    m, k, n = params
    lhs = a[: m * k].reshape(m, k)
    rhs = b[: k * n].reshape(k, n)
    out[: m * n] = np.matmul(lhs, rhs).astype(num_type.dtype, copy=False).reshape(-1)


def _column_diff(arrays, params) -> tuple[np.ndarray, np.ndarray, int, int]:
    a, b, out = arrays
    rows, columns = params
    n = rows * columns
    diff = a[:n].reshape(rows, columns) - b[:n].reshape(rows, columns)
    return diff, out, rows, columns


def _mse(arrays, params, num_type):
    diff, out, rows, columns = _column_diff(arrays, params)
    total = (diff * diff).sum(axis=0, dtype=num_type.dtype)
    out[:columns] = _divide(total, rows, num_type)


def _dmse(arrays, params, num_type):
    diff, out, rows, columns = _column_diff(arrays, params)
    total = diff.sum(axis=0, dtype=num_type.dtype) * num_type.scalar(2)
    out[:columns] = _divide(total, rows, num_type)


HOST_KERNELS: dict[Op, KernelFn] = {
    Op.COPY_TO: _copy_to,
    Op.ADD: _binary(np.add),
    Op.SUB: _binary(np.subtract),
    Op.MULTIPLY: _binary(np.multiply),
    Op.TRANSPOSE: _transpose,
    Op.DOT: _dot,
    Op.MAX: _threshold(np.maximum),
    Op.MIN: _threshold(np.minimum),
    Op.DMAX: _indicator(np.greater),
    Op.DMIN: _indicator(np.less),
    Op.MSE: _mse,
    Op.DMSE: _dmse,
}


@dataclass(frozen=True)
class HostKernel:
    name: str
    spec: KernelSpec
    num_type: NumType
    fn: KernelFn


class HostDevice:
    """In-order NumPy "device" driven by a single worker thread."""

    name = "numpy"

    def __init__(self, config: Any = None) -> None:
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="devmatrix-queue")
        self._last: Optional[Future] = None
        self._closed = False

    # ------------------------------
    # Buffers
    # ------------------------------
    def allocate(self, length: int, dtype: Any, mode: Any = None) -> HostBuffer:
        return HostBuffer(data=np.empty(int(length), dtype=dtype), mode=mode)

    def free(self, buffer: HostBuffer) -> None:
        # Nothing to release; the array goes with the last reference.
        return None

    def write(self, buffer: HostBuffer, data: np.ndarray) -> None:
        np.copyto(buffer.data, np.asarray(data, dtype=buffer.dtype).reshape(-1))

    def read(self, buffer: HostBuffer, wait_list: Sequence[HostEvent]) -> np.ndarray:
        for event in wait_list:
            event.wait()
        return buffer.data.copy()

    # ------------------------------
    # Kernels
    # ------------------------------
    def supports(self, num_type: NumType) -> bool:
        return True

    def kernel(self, op: Op, num_type: NumType) -> HostKernel:
        name = kernel_name(op, num_type)
        fn = HOST_KERNELS.get(op)
        if fn is None:  # pragma: no cover - HOST_KERNELS covers every Op
            raise KernelNotFound(name)
        return HostKernel(name=name, spec=SPECS[op], num_type=num_type, fn=fn)

    def dispatch(
        self,
        kernel: HostKernel,
        buffers: Sequence[HostBuffer],
        params: tuple,
        work_size: tuple[int, ...],
        wait_list: Sequence[HostEvent],
    ) -> HostEvent:
        if self._closed:
            raise DispatchFailure("queue is closed")
        arrays = [b.data for b in buffers]
        waits = list(wait_list)

        def run() -> None:
            for event in waits:
                event.wait()
            kernel.fn(arrays, params, kernel.num_type)

        future = self._executor.submit(run)
        self._last = future
        return HostEvent(future, kernel.name)

    def finish(self) -> None:
        # Single worker: once the newest submission is done, all of them are.
        # Failures stay on their events and surface from get().
        if self._last is not None:
            wait([self._last])

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        logger.debug("numpy queue shut down")
