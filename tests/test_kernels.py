import struct

import numpy as np
import pytest

from devmatrix.kernels import (
    SPECS,
    Op,
    glsl_source,
    group_counts,
    kernel_name,
    pack_params,
    parse_kernel_name,
)
from devmatrix.num import NumType, from_dtype, type_name


def test_kernel_names() -> None:
    assert kernel_name(Op.ADD, NumType.FLOAT) == "vector_add_float"
    assert kernel_name(Op.COPY_TO, NumType.UINT) == "vector_copy_to_uint"
    assert kernel_name(Op.DMSE, NumType.DOUBLE) == "vector_dmse_double"


@pytest.mark.parametrize("op", list(Op))
@pytest.mark.parametrize("num_type", list(NumType))
def test_parse_kernel_name_inverts_kernel_name(op, num_type) -> None:
    assert parse_kernel_name(kernel_name(op, num_type)) == (op, num_type)


@pytest.mark.parametrize("name", ["vector_add", "add_float", "vector_add_half", "vector__float", ""])
def test_parse_kernel_name_rejects_unknown(name) -> None:
    assert parse_kernel_name(name) is None


def test_element_type_names() -> None:
    assert from_dtype(np.float32) is NumType.FLOAT
    assert from_dtype(np.int64) is None
    assert type_name(np.uint32) == "uint"
    assert type_name(np.float16) == "float16"
    assert NumType.INT.is_integer and not NumType.DOUBLE.is_integer


def test_pack_params_layout() -> None:
    assert pack_params(SPECS[Op.ADD], NumType.FLOAT, (10,)) == struct.pack("<I", 10)
    assert pack_params(SPECS[Op.DOT], NumType.INT, (2, 3, 4)) == struct.pack("<III", 2, 3, 4)
    assert pack_params(SPECS[Op.MAX], NumType.FLOAT, (5, 0.5)) == struct.pack("<If", 5, 0.5)
    assert pack_params(SPECS[Op.DMIN], NumType.INT, (5, -2)) == struct.pack("<Ii", 5, -2)
    # std430 aligns the double threshold to 8 bytes
    packed = pack_params(SPECS[Op.MAX], NumType.DOUBLE, (5, 1.25))
    assert len(packed) == 16
    assert struct.unpack("<I4xd", packed) == (5, 1.25)


def test_pack_params_arity() -> None:
    with pytest.raises(ValueError):
        pack_params(SPECS[Op.TRANSPOSE], NumType.FLOAT, (3,))


def test_glsl_source_declares_bindings_and_params() -> None:
    src = glsl_source(Op.DOT, NumType.FLOAT)
    assert src.startswith("#version 450")
    assert "binding = 0" in src and "binding = 1" in src and "binding = 2" in src
    assert "uint m; uint k; uint n;" in src
    assert "local_size_x = 8, local_size_y = 8" in src

    src = glsl_source(Op.MAX, NumType.INT, local_size=128)
    assert "binding = 2" not in src
    assert "int threshold;" in src
    assert "local_size_x = 128" in src


def test_glsl_double_enables_fp64() -> None:
    assert "GL_ARB_gpu_shader_fp64" in glsl_source(Op.ADD, NumType.DOUBLE)
    assert "GL_ARB_gpu_shader_fp64" not in glsl_source(Op.ADD, NumType.FLOAT)


@pytest.mark.parametrize("op", list(Op))
def test_every_op_has_glsl(op) -> None:
    for num_type in NumType:
        assert "void main()" in glsl_source(op, num_type)


def test_group_counts() -> None:
    assert group_counts(SPECS[Op.ADD], (10000,), 64) == (157, 1, 1)
    assert group_counts(SPECS[Op.ADD], (64,), 64) == (1, 1, 1)
    # 2-D work sizes are (rows, columns); x walks columns
    assert group_counts(SPECS[Op.DOT], (9, 17), 64) == (3, 2, 1)
    assert group_counts(SPECS[Op.TRANSPOSE], (8, 8), 64) == (1, 1, 1)
