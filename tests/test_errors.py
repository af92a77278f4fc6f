import numpy as np
import pytest

from devmatrix import (
    AllocationFailure,
    ComputeContext,
    DeviceMatrix,
    DeviceMatrixError,
    DeviceUnavailable,
    DispatchFailure,
    KernelNotFound,
    MatrixMode,
    ModeViolation,
    ShapeMismatch,
)


RO = MatrixMode.READ_ONLY
WO = MatrixMode.WRITE_ONLY
RW = MatrixMode.READ_WRITE


@pytest.mark.parametrize("rows,columns", [(0, 5), (5, 0), (0, 0), (-1, 3)])
def test_zero_or_negative_dimensions_rejected(ctx, rows, columns) -> None:
    with pytest.raises(AllocationFailure):
        DeviceMatrix.new(ctx, rows, columns, RW)


def test_empty_host_matrix_rejected(ctx) -> None:
    with pytest.raises(AllocationFailure):
        DeviceMatrix.from_matrix(ctx, np.zeros((0, 3), dtype=np.float32), RO)


def test_elementwise_length_mismatch(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 3, RW)
    b = DeviceMatrix.new(ctx, 2, 2, RW)
    out = DeviceMatrix.new(ctx, 2, 3, RW)
    with pytest.raises(ShapeMismatch):
        a.add(ctx, b, out)
    with pytest.raises(ShapeMismatch):
        a.copy_to(ctx, b)
    with pytest.raises(ShapeMismatch):
        a.max(ctx, 0.0, b)
    # ShapeMismatch is also a ValueError
    with pytest.raises(ValueError):
        a.multiply(ctx, out, b)


def test_transpose_output_shape(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 3, RW)
    with pytest.raises(ShapeMismatch):
        a.transpose(ctx, DeviceMatrix.new(ctx, 2, 3, RW))


def test_dot_shape_checks(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 3, RW)
    b = DeviceMatrix.new(ctx, 4, 5, RW)
    with pytest.raises(ShapeMismatch):
        a.dot(ctx, b, DeviceMatrix.new(ctx, 2, 5, RW))

    c = DeviceMatrix.new(ctx, 3, 5, RW)
    with pytest.raises(ShapeMismatch):
        a.dot(ctx, c, DeviceMatrix.new(ctx, 5, 2, RW))


def test_mse_shape_checks(ctx) -> None:
    a = DeviceMatrix.new(ctx, 4, 3, RW)
    with pytest.raises(ShapeMismatch):
        a.mse(ctx, DeviceMatrix.new(ctx, 3, 4, RW), DeviceMatrix.new(ctx, 1, 3, RW))
    with pytest.raises(ShapeMismatch):
        a.dmse(ctx, DeviceMatrix.new(ctx, 4, 3, RW), DeviceMatrix.new(ctx, 1, 4, RW))


def test_element_type_mismatch(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 2, RW)
    b = DeviceMatrix.new(ctx, 2, 2, RW, dtype=np.int32)
    with pytest.raises(ShapeMismatch):
        a.add(ctx, b, a)


def test_threshold_must_fit_element_type(ctx) -> None:
    u = DeviceMatrix.from_matrix(ctx, np.arange(4, dtype=np.uint32).reshape(1, 4), RO)
    u_out = DeviceMatrix.new(ctx, 1, 4, RW, dtype=np.uint32)
    with pytest.raises(ShapeMismatch, match="uint32") as excinfo:
        u.max(ctx, -1, u_out)
    assert isinstance(excinfo.value, DeviceMatrixError)
    assert isinstance(excinfo.value, ValueError)
    with pytest.raises(ShapeMismatch):
        u.min(ctx, 2**40, u_out)
    assert u_out.producer is None


def test_fractional_threshold_on_integer_matrix(ctx) -> None:
    i = DeviceMatrix.from_matrix(ctx, np.array([[-1, 0, 1, 2]], dtype=np.int32), RO)
    out = DeviceMatrix.new(ctx, 1, 4, RW, dtype=np.int32)
    with pytest.raises(ShapeMismatch, match="0.5"):
        i.dmax(ctx, 0.5, out)
    with pytest.raises(ShapeMismatch):
        i.max(ctx, float("nan"), out)
    assert out.producer is None

    # Integral floats are exact.
    i.max(ctx, 1.0, out)
    np.testing.assert_array_equal(out.get(ctx), [[1, 1, 1, 2]])


def test_set_shape_mismatch(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 2, RW)
    with pytest.raises(ShapeMismatch):
        a.set(ctx, np.zeros((4, 1), dtype=np.float32))


def test_mode_violations(ctx) -> None:
    ro = DeviceMatrix.from_matrix(ctx, np.ones((2, 2), dtype=np.float32), RO)
    wo = DeviceMatrix.new(ctx, 2, 2, WO)
    rw = DeviceMatrix.new(ctx, 2, 2, RW)

    with pytest.raises(ModeViolation):
        ro.add(ctx, ro, ro)  # read-only output
    with pytest.raises(ModeViolation):
        wo.add(ctx, ro, rw)  # write-only input
    with pytest.raises(DispatchFailure):
        ro.copy_to(ctx, ro)

    # Write-only outputs are fine.
    ro.add(ctx, ro, wo)
    np.testing.assert_array_equal(wo.get(ctx), np.full((2, 2), 2.0, dtype=np.float32))


def test_failed_validation_enqueues_nothing(ctx) -> None:
    ro = DeviceMatrix.from_matrix(ctx, np.ones((2, 2), dtype=np.float32), RO)
    with pytest.raises(ModeViolation):
        ro.add(ctx, ro, ro)
    assert ro.producer is None


def test_unsupported_element_type(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 2, RW, dtype=np.float16)
    with pytest.raises(KernelNotFound, match="vector_add_float16"):
        a.add(ctx, a, a)


def test_lookup_kernel_by_name(ctx) -> None:
    k = ctx.lookup_kernel("vector_add_float")
    assert k.name == "vector_add_float"
    assert ctx.lookup_kernel("vector_add_float") is k

    with pytest.raises(KernelNotFound):
        ctx.lookup_kernel("vector_frobnicate_float")
    with pytest.raises(KeyError):
        ctx.lookup_kernel("not_a_kernel")


def test_released_matrix_cannot_be_used(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 2, RW)
    a.release()
    with pytest.raises(DeviceMatrixError):
        a.get(ctx)
    with pytest.raises(DeviceMatrixError):
        a.add(ctx, a, a)


def test_matrix_bound_to_its_context(ctx) -> None:
    a = DeviceMatrix.new(ctx, 2, 2, RW)
    with ComputeContext("numpy") as other:
        b = DeviceMatrix.new(other, 2, 2, RW)
        with pytest.raises(DispatchFailure):
            a.add(ctx, b, a)


def test_closed_context() -> None:
    ctx = ComputeContext("numpy")
    a = DeviceMatrix.new(ctx, 2, 2, RW)
    ctx.close()
    ctx.close()
    assert ctx.closed
    with pytest.raises(DeviceUnavailable):
        a.get(ctx)
    with pytest.raises(DeviceUnavailable):
        DeviceMatrix.new(ctx, 2, 2, RW)
