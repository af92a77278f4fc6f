from __future__ import annotations


class DeviceMatrixError(RuntimeError):
    """Base class for every error raised by devmatrix."""


class DeviceUnavailable(DeviceMatrixError):
    """The requested compute backend could not be initialized."""


class AllocationFailure(DeviceMatrixError):
    """Device buffer could not be allocated (out of memory or invalid shape)."""


class KernelNotFound(DeviceMatrixError, KeyError):
    """No compiled kernel exists for the requested operation/element type."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class DispatchFailure(DeviceMatrixError):
    """The queue rejected a kernel dispatch, or the kernel failed while running."""


class ModeViolation(DispatchFailure):
    """A kernel would read a write-only matrix or write a read-only one."""


class TransferFailure(DeviceMatrixError):
    """A host/device copy failed."""


class ShapeMismatch(DeviceMatrixError, ValueError):
    """Operand shapes (or element types) are incompatible for an operation."""
