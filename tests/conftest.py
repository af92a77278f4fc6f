import numpy as np
import pytest

from devmatrix import ComputeContext, KernelNotFound, Op


def _open_context() -> ComputeContext:
    ctx = ComputeContext()
    if ctx.backend == "vulkan":
        # A Vulkan device without a working shader compiler can't run kernels;
        # don't skip, run on the NumPy fallback instead.
        try:
            ctx.kernel(Op.ADD, np.float32)
        except KernelNotFound:
            ctx.close()
            ctx = ComputeContext("numpy")
    return ctx


@pytest.fixture
def ctx():
    c = _open_context()
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def host_ctx():
    c = ComputeContext("numpy")
    try:
        yield c
    finally:
        c.close()
