from importlib.metadata import PackageNotFoundError, version

from .config import Config
from .context import ComputeContext
from .errors import (
	AllocationFailure,
	DeviceMatrixError,
	DeviceUnavailable,
	DispatchFailure,
	KernelNotFound,
	ModeViolation,
	ShapeMismatch,
	TransferFailure,
)
from .host import as_host_matrix, from_vec
from .kernels import Op
from .matrix import DeviceMatrix, MatrixMode
from .num import NumType
from . import data, training

try:
	__version__ = version("devmatrix")
except PackageNotFoundError:  # pragma: no cover
	__version__ = "0.1.0"

__all__ = [
	"AllocationFailure",
	"ComputeContext",
	"Config",
	"DeviceMatrix",
	"DeviceMatrixError",
	"DeviceUnavailable",
	"DispatchFailure",
	"KernelNotFound",
	"MatrixMode",
	"ModeViolation",
	"NumType",
	"Op",
	"ShapeMismatch",
	"TransferFailure",
	"__version__",
	"as_host_matrix",
	"data",
	"from_vec",
	"training",
]
