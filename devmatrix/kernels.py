from __future__ import annotations

"""Kernel table for device matrices.

One kernel exists per (operation, element type) and is named
``vector_{op}_{type}``, e.g. ``vector_dot_int``. This module only describes
kernels: their buffer/parameter layout and, for the Vulkan backend, the GLSL
compute-shader source. Backends turn these descriptions into something they
can dispatch.
"""

import enum
import struct
from dataclasses import dataclass
from typing import Optional

from .num import NumType, from_name


class Op(enum.Enum):
    COPY_TO = "copy_to"
    ADD = "add"
    SUB = "sub"
    MULTIPLY = "multiply"
    TRANSPOSE = "transpose"
    DOT = "dot"
    MAX = "max"
    MIN = "min"
    DMAX = "dmax"
    DMIN = "dmin"
    MSE = "mse"
    DMSE = "dmse"


@dataclass(frozen=True)
class KernelSpec:
    """Binding layout of one operation.

    Buffers are bound inputs first, output last. ``params`` are pushed in
    order; every parameter is a uint32 except ``threshold``, which has the
    kernel's element type.
    """

    op: Op
    inputs: int
    params: tuple[str, ...]
    dims: int = 1

    @property
    def buffers(self) -> int:
        return self.inputs + 1


SPECS: dict[Op, KernelSpec] = {
    Op.COPY_TO: KernelSpec(Op.COPY_TO, 1, ("n",)),
    Op.ADD: KernelSpec(Op.ADD, 2, ("n",)),
    Op.SUB: KernelSpec(Op.SUB, 2, ("n",)),
    Op.MULTIPLY: KernelSpec(Op.MULTIPLY, 2, ("n",)),
    Op.TRANSPOSE: KernelSpec(Op.TRANSPOSE, 1, ("rows", "columns"), dims=2),
    Op.DOT: KernelSpec(Op.DOT, 2, ("m", "k", "n"), dims=2),
    Op.MAX: KernelSpec(Op.MAX, 1, ("n", "threshold")),
    Op.MIN: KernelSpec(Op.MIN, 1, ("n", "threshold")),
    Op.DMAX: KernelSpec(Op.DMAX, 1, ("n", "threshold")),
    Op.DMIN: KernelSpec(Op.DMIN, 1, ("n", "threshold")),
    Op.MSE: KernelSpec(Op.MSE, 2, ("rows", "columns")),
    Op.DMSE: KernelSpec(Op.DMSE, 2, ("rows", "columns")),
}

_OPS_BY_NAME = {op.value: op for op in Op}

_STRUCT_CHARS = {
    NumType.FLOAT: "f",
    NumType.DOUBLE: "d",
    NumType.INT: "i",
    NumType.UINT: "I",
}


def kernel_name(op: Op, num_type: NumType) -> str:
    return f"vector_{op.value}_{num_type.type_name}"


def parse_kernel_name(name: str) -> Optional[tuple[Op, NumType]]:
    """Inverse of :func:`kernel_name`; ``None`` for unknown names."""

    if not name.startswith("vector_"):
        return None
    body = name[len("vector_"):]
    op_name, sep, type_part = body.rpartition("_")
    if not sep:
        return None
    op = _OPS_BY_NAME.get(op_name)
    num_type = from_name(type_part)
    if op is None or num_type is None:
        return None
    return op, num_type


def pack_params(spec: KernelSpec, num_type: NumType, params: tuple) -> bytes:
    """Pack kernel parameters as a std430 push-constant block."""

    if len(params) != len(spec.params):
        raise ValueError(
            f"{spec.op.value} expects {len(spec.params)} parameters {spec.params}, got {len(params)}"
        )
    fmt = "<" + "".join(_STRUCT_CHARS[num_type] if p == "threshold" else "I" for p in spec.params)
    values = [num_type.scalar(v).item() if p == "threshold" else int(v) for p, v in zip(spec.params, params)]
    if num_type is NumType.DOUBLE and "threshold" in spec.params:
        # std430 aligns a double member to 8 bytes.
        fmt = "<I4xd"
    return struct.pack(fmt, *values)


# ------------------------------
# GLSL sources (Vulkan backend)
# ------------------------------
LOCAL_SIZE_2D = (8, 8)

_HEADER = """#version 450
{extensions}
layout(local_size_x = {lx}, local_size_y = {ly}, local_size_z = 1) in;
"""

_ELEMENTWISE_BODY = {
    Op.COPY_TO: "out_[i] = a[i];",
    Op.ADD: "out_[i] = a[i] + b[i];",
    Op.SUB: "out_[i] = a[i] - b[i];",
    Op.MULTIPLY: "out_[i] = a[i] * b[i];",
    Op.MAX: "out_[i] = a[i] > p.threshold ? a[i] : p.threshold;",
    Op.MIN: "out_[i] = a[i] < p.threshold ? a[i] : p.threshold;",
    Op.DMAX: "out_[i] = a[i] > p.threshold ? {T}(1) : {T}(0);",
    Op.DMIN: "out_[i] = a[i] < p.threshold ? {T}(1) : {T}(0);",
}

_TRANSPOSE_MAIN = """
void main() {{
    uint col = gl_GlobalInvocationID.x;
    uint row = gl_GlobalInvocationID.y;
    if (row >= p.rows || col >= p.columns) {{
        return;
    }}
    out_[col * p.rows + row] = a[row * p.columns + col];
}}
"""

_DOT_MAIN = """
void main() {{
    uint col = gl_GlobalInvocationID.x;
    uint row = gl_GlobalInvocationID.y;
    if (row >= p.m || col >= p.n) {{
        return;
    }}
    {T} acc = {T}(0);
    for (uint kk = 0; kk < p.k; ++kk) {{
        acc += a[row * p.k + kk] * b[kk * p.n + col];
    }}
    out_[row * p.n + col] = acc;
}}
"""

_MSE_MAIN = """
void main() {{
    uint col = gl_GlobalInvocationID.x;
    if (col >= p.columns) {{
        return;
    }}
    {T} acc = {T}(0);
    for (uint r = 0; r < p.rows; ++r) {{
        {T} d = a[r * p.columns + col] - b[r * p.columns + col];
        acc += {accumulate};
    }}
    out_[col] = {result};
}}
"""


def _buffer_decls(spec: KernelSpec, glsl_type: str) -> str:
    names = ["a", "b"][: spec.inputs] + ["out_"]
    return "".join(
        f"layout(std430, set = 0, binding = {i}) buffer Buf{i} {{ {glsl_type} {name}[]; }};\n"
        for i, name in enumerate(names)
    )


def _push_block(spec: KernelSpec, glsl_type: str) -> str:
    members = " ".join(
        f"{glsl_type if name == 'threshold' else 'uint'} {name};" for name in spec.params
    )
    return f"layout(push_constant) uniform Params {{ {members} }} p;\n"


def glsl_source(op: Op, num_type: NumType, local_size: int = 64) -> str:
    spec = SPECS[op]
    T = num_type.glsl
    extensions = ""
    if num_type is NumType.DOUBLE:
        extensions = "#extension GL_ARB_gpu_shader_fp64 : enable"

    if spec.dims == 2:
        lx, ly = LOCAL_SIZE_2D
    else:
        lx, ly = local_size, 1

    src = _HEADER.format(extensions=extensions, lx=lx, ly=ly)
    src += _buffer_decls(spec, T)
    src += _push_block(spec, T)

    if op in _ELEMENTWISE_BODY:
        body = _ELEMENTWISE_BODY[op].format(T=T)
        src += (
            "\nvoid main() {\n"
            "    uint i = gl_GlobalInvocationID.x;\n"
            "    if (i >= p.n) {\n"
            "        return;\n"
            "    }\n"
            f"    {body}\n"
            "}\n"
        )
    elif op is Op.TRANSPOSE:
        src += _TRANSPOSE_MAIN.format(T=T)
    elif op is Op.DOT:
        src += _DOT_MAIN.format(T=T)
    elif op is Op.MSE:
        src += _MSE_MAIN.format(T=T, accumulate="d * d", result=f"acc / {T}(p.rows)")
    elif op is Op.DMSE:
        src += _MSE_MAIN.format(T=T, accumulate="d", result=f"({T}(2) * acc) / {T}(p.rows)")
    else:  # pragma: no cover - every Op is handled above
        raise ValueError(f"no GLSL source for {op}")
    return src


def group_counts(spec: KernelSpec, work_size: tuple[int, ...], local_size: int) -> tuple[int, int, int]:
    """Workgroup counts covering ``work_size``.

    2-D work sizes are (rows, columns); invocation x walks columns.
    """

    if spec.dims == 2:
        rows, columns = work_size
        lx, ly = LOCAL_SIZE_2D
        return (columns + lx - 1) // lx, (rows + ly - 1) // ly, 1
    (n,) = work_size
    return (n + local_size - 1) // local_size, 1, 1
