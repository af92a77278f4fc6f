from __future__ import annotations

"""Device-resident matrices.

A :class:`DeviceMatrix` owns one device buffer of ``rows * columns`` elements
(row-major) plus the completion event of the last kernel that wrote it, its
*producer*. Every operation:

1. checks shapes, element types and access modes,
2. waits on the producers of all of its inputs,
3. enqueues one kernel,
4. and makes that kernel's event the producer of its output.

Operations never block. Only :meth:`DeviceMatrix.get` waits, on the producer
of the matrix being read, which transitively covers every kernel it depends
on.

Example::

    with ComputeContext() as ctx:
        a = DeviceMatrix.from_matrix(ctx, np.ones((2, 3), np.float32), MatrixMode.READ_ONLY)
        b = DeviceMatrix.from_matrix(ctx, np.ones((2, 3), np.float32), MatrixMode.READ_ONLY)
        c = DeviceMatrix.new(ctx, 2, 3, MatrixMode.READ_WRITE)
        a.add(ctx, b, c)
        c.get(ctx)  # array([[2., 2., 2.], [2., 2., 2.]], dtype=float32)
"""

import enum
import threading
import weakref
from typing import Any, Optional, Sequence

import numpy as np

from .context import ComputeContext
from .errors import AllocationFailure, DeviceMatrixError, DispatchFailure, ModeViolation, ShapeMismatch
from .host import as_host_matrix
from .kernels import Op
from .num import NumType, from_dtype


class MatrixMode(enum.Enum):
    """How kernels may access a matrix; fixed at creation."""

    READ_ONLY = "read_only"
    WRITE_ONLY = "write_only"
    READ_WRITE = "read_write"

    @property
    def readable(self) -> bool:
        return self is not MatrixMode.WRITE_ONLY

    @property
    def writable(self) -> bool:
        return self is not MatrixMode.READ_ONLY


class DeviceMatrix:
    """A ``rows x columns`` matrix of one element type living in device memory.

    Use :meth:`new` or :meth:`from_matrix` to create one.
    """

    def __init__(
        self,
        ctx: ComputeContext,
        rows: int,
        columns: int,
        mode: MatrixMode,
        buffer: Any,
        dtype: np.dtype,
    ) -> None:
        self._ctx = ctx
        self._rows = int(rows)
        self._columns = int(columns)
        self._mode = mode
        self._buffer = buffer
        self._dtype = np.dtype(dtype)
        self._producer: Optional[Any] = None
        self._lock = threading.Lock()
        self._finalizer = weakref.finalize(self, ctx.free_buffer, buffer)

    # ------------------------------
    # Construction
    # ------------------------------
    @classmethod
    def new(
        cls,
        ctx: ComputeContext,
        rows: int,
        columns: int,
        mode: MatrixMode,
        dtype: Any = np.float32,
    ) -> "DeviceMatrix":
        """Allocate an uninitialized matrix; no device work is enqueued."""

        rows, columns = int(rows), int(columns)
        if rows <= 0 or columns <= 0:
            raise AllocationFailure(f"matrix dimensions must be positive, got {rows}x{columns}")
        buffer = ctx.allocate_buffer(rows * columns, mode, dtype)
        return cls(ctx, rows, columns, mode, buffer, np.dtype(dtype))

    @classmethod
    def from_matrix(cls, ctx: ComputeContext, host_matrix: Any, mode: MatrixMode) -> "DeviceMatrix":
        """Allocate a matrix shaped like ``host_matrix`` and upload it (blocking)."""

        arr = as_host_matrix(host_matrix)
        rows, columns = arr.shape
        m = cls.new(ctx, rows, columns, mode, arr.dtype)
        ctx.enqueue_write(m._buffer, arr)
        return m

    # ------------------------------
    # Accessors
    # ------------------------------
    @property
    def rows(self) -> int:
        return self._rows

    @property
    def columns(self) -> int:
        return self._columns

    @property
    def shape(self) -> tuple[int, int]:
        return self._rows, self._columns

    @property
    def mode(self) -> MatrixMode:
        return self._mode

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def num_type(self) -> Optional[NumType]:
        return from_dtype(self._dtype)

    @property
    def buffer(self) -> Any:
        return self._buffer

    @property
    def producer(self) -> Optional[Any]:
        """Completion event of the last kernel that wrote this matrix, if any."""
        with self._lock:
            return self._producer

    def _set_producer(self, event: Any) -> None:
        with self._lock:
            self._producer = event

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def __len__(self) -> int:
        return self._rows * self._columns

    def __repr__(self) -> str:
        state = "released" if self.released else self._mode.value
        return f"DeviceMatrix({self._rows}x{self._columns}, {self._dtype.name}, {state})"

    def release(self) -> None:
        """Free the device buffer now instead of at garbage collection.

        Kernels still in flight keep the memory alive until they finish.
        """
        self._finalizer()

    def _check_usable(self, ctx: ComputeContext) -> None:
        if self.released:
            raise DeviceMatrixError(f"{self!r} has been released")
        if ctx is not self._ctx:
            raise DispatchFailure(f"{self!r} belongs to a different ComputeContext")

    # ------------------------------
    # Transfers
    # ------------------------------
    def get(self, ctx: ComputeContext) -> np.ndarray:
        """Wait for the producer (if any), then copy the matrix to the host."""

        self._check_usable(ctx)
        producer = self.producer
        wait_list = [producer] if producer is not None else []
        flat = ctx.enqueue_read(self._buffer, wait_list)
        return flat.reshape(self._rows, self._columns)

    def set(self, ctx: ComputeContext, host_matrix: Any) -> None:
        """Overwrite the matrix from the host.

        Neither waits on nor replaces the producer: calling this while a kernel
        still reads or writes the matrix races with it. Use ``ctx.finish()``
        first when reusing a matrix that may be in flight.
        """

        self._check_usable(ctx)
        arr = as_host_matrix(host_matrix)
        if arr.shape != self.shape:
            raise ShapeMismatch(f"cannot set a {self._rows}x{self._columns} matrix from shape {arr.shape}")
        ctx.enqueue_write(self._buffer, arr.astype(self._dtype, copy=False))

    # ------------------------------
    # Dispatch
    # ------------------------------
    def _enqueue(
        self,
        ctx: ComputeContext,
        op: Op,
        inputs: Sequence["DeviceMatrix"],
        output: "DeviceMatrix",
        params: tuple,
        work_size: tuple[int, ...],
    ) -> None:
        for m in (*inputs, output):
            m._check_usable(ctx)
        for m in inputs:
            if not m.mode.readable:
                raise ModeViolation(f"{op.value}: input {m!r} is write-only")
        if not output.mode.writable:
            raise ModeViolation(f"{op.value}: output {output!r} is read-only")
        for m in (*inputs, output):
            if m.dtype != self._dtype:
                raise ShapeMismatch(f"{op.value}: element types differ ({self._dtype.name} vs {m.dtype.name})")

        kernel = ctx.kernel(op, self._dtype)

        wait_list: list[Any] = []
        for m in inputs:
            producer = m.producer
            if producer is not None and all(producer is not w for w in wait_list):
                wait_list.append(producer)

        buffers = [m._buffer for m in inputs] + [output._buffer]
        event = ctx.enqueue_kernel(kernel, buffers, params, work_size, wait_list=wait_list)
        output._set_producer(event)

    def _elementwise(self, ctx: ComputeContext, op: Op, other: "DeviceMatrix", output: "DeviceMatrix") -> None:
        n = len(self)
        if len(other) != n or len(output) != n:
            raise ShapeMismatch(
                f"{op.value}: lengths differ ({n}, {len(other)} -> {len(output)})"
            )
        self._enqueue(ctx, op, (self, other), output, (n,), (n,))

    def _threshold_value(self, op: Op, threshold: Any) -> Any:
        """``threshold`` as this matrix's element type; it must be representable exactly for integers."""

        try:
            value = self._dtype.type(threshold)
        except (OverflowError, ValueError, TypeError) as e:
            raise ShapeMismatch(f"{op.value}: threshold {threshold!r} does not fit {self._dtype.name}") from e
        if self._dtype.kind in "iu" and value != threshold:
            raise ShapeMismatch(f"{op.value}: threshold {threshold!r} is not a {self._dtype.name} value")
        return value

    def _thresholded(self, ctx: ComputeContext, op: Op, threshold: Any, output: "DeviceMatrix") -> None:
        n = len(self)
        if len(output) != n:
            raise ShapeMismatch(f"{op.value}: output length {len(output)} != {n}")
        self._enqueue(ctx, op, (self,), output, (n, self._threshold_value(op, threshold)), (n,))

    # ------------------------------
    # Operations
    # ------------------------------
    def copy_to(self, ctx: ComputeContext, output: "DeviceMatrix") -> None:
        """output[i] = self[i]"""
        n = len(self)
        if len(output) != n:
            raise ShapeMismatch(f"copy_to: output length {len(output)} != {n}")
        self._enqueue(ctx, Op.COPY_TO, (self,), output, (n,), (n,))

    def add(self, ctx: ComputeContext, other: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """output = self + other"""
        self._elementwise(ctx, Op.ADD, other, output)

    def sub(self, ctx: ComputeContext, other: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """output = self - other"""
        self._elementwise(ctx, Op.SUB, other, output)

    def multiply(self, ctx: ComputeContext, other: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """Elementwise product."""
        self._elementwise(ctx, Op.MULTIPLY, other, output)

    def transpose(self, ctx: ComputeContext, output: "DeviceMatrix") -> None:
        """output[c, r] = self[r, c]; output must be ``columns x rows``."""

        if output.shape != (self._columns, self._rows):
            raise ShapeMismatch(
                f"transpose: output must be {self._columns}x{self._rows}, got {output.rows}x{output.columns}"
            )
        self._enqueue(
            ctx,
            Op.TRANSPOSE,
            (self,),
            output,
            (self._rows, self._columns),
            (self._rows, self._columns),
        )

    def dot(self, ctx: ComputeContext, other: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """Matrix product ``self @ other`` into a ``self.rows x other.columns`` output."""

        if self._columns != other.rows:
            raise ShapeMismatch(
                f"dot: {self._rows}x{self._columns} @ {other.rows}x{other.columns} is undefined"
            )
        if output.shape != (self._rows, other.columns):
            raise ShapeMismatch(
                f"dot: output must be {self._rows}x{other.columns}, got {output.rows}x{output.columns}"
            )
        self._enqueue(
            ctx,
            Op.DOT,
            (self, other),
            output,
            (self._rows, self._columns, other.columns),
            (self._rows, other.columns),
        )

    def max(self, ctx: ComputeContext, threshold: Any, output: "DeviceMatrix") -> None:
        """output[i] = max(self[i], threshold); ``max(0)`` is ReLU.

        The threshold must be exactly representable in the element type
        (no fractional thresholds on integer matrices), else ShapeMismatch.
        """
        self._thresholded(ctx, Op.MAX, threshold, output)

    def min(self, ctx: ComputeContext, threshold: Any, output: "DeviceMatrix") -> None:
        self._thresholded(ctx, Op.MIN, threshold, output)

    def dmax(self, ctx: ComputeContext, threshold: Any, output: "DeviceMatrix") -> None:
        """Derivative of :meth:`max`: 1 where self[i] > threshold, else 0."""
        self._thresholded(ctx, Op.DMAX, threshold, output)

    def dmin(self, ctx: ComputeContext, threshold: Any, output: "DeviceMatrix") -> None:
        """Derivative of :meth:`min`: 1 where self[i] < threshold, else 0."""
        self._thresholded(ctx, Op.DMIN, threshold, output)

    def _loss(self, ctx: ComputeContext, op: Op, train: "DeviceMatrix", output: "DeviceMatrix") -> None:
        if train.shape != self.shape:
            raise ShapeMismatch(
                f"{op.value}: prediction is {self._rows}x{self._columns}, target is {train.rows}x{train.columns}"
            )
        if len(output) != self._columns:
            raise ShapeMismatch(f"{op.value}: output needs {self._columns} elements, has {len(output)}")
        self._enqueue(
            ctx,
            op,
            (self, train),
            output,
            (self._rows, self._columns),
            (self._columns,),
        )

    def mse(self, ctx: ComputeContext, train: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """Per-column mean squared error: output[c] = sum_r (self[r, c] - train[r, c])**2 / rows."""
        self._loss(ctx, Op.MSE, train, output)

    def dmse(self, ctx: ComputeContext, train: "DeviceMatrix", output: "DeviceMatrix") -> None:
        """Per-column gradient of :meth:`mse`: output[c] = 2 * sum_r (self[r, c] - train[r, c]) / rows.

        That is the derivative of ``mse[c]`` with respect to a constant added
        to column ``c`` (a bias). Integer types truncate toward zero.
        """
        self._loss(ctx, Op.DMSE, train, output)
