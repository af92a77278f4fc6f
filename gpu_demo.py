import argparse
import logging
import time

import numpy as np

from devmatrix import ComputeContext, DeviceMatrix, DeviceUnavailable, MatrixMode


RO = MatrixMode.READ_ONLY
RW = MatrixMode.READ_WRITE


def _stats_ms(samples_ns: list[int]) -> dict[str, float]:
    arr = (np.array(samples_ns, dtype=np.float64) / 1e6)  # ms
    return {
        "n": float(arr.size),
        "min_ms": float(arr.min()),
        "p50_ms": float(np.percentile(arr, 50)),
        "p95_ms": float(np.percentile(arr, 95)),
        "mean_ms": float(arr.mean()),
        "std_ms": float(arr.std(ddof=0)),
    }


def _fmt_stats(label: str, s: dict[str, float]) -> str:
    return (
        f"{label}: n={int(s['n'])} "
        f"min={s['min_ms']:.3f}ms "
        f"p50={s['p50_ms']:.3f}ms "
        f"p95={s['p95_ms']:.3f}ms "
        f"mean={s['mean_ms']:.3f}ms ±{s['std_ms']:.3f}ms"
    )


def _bench(fn, warmup: int, iters: int) -> list[int]:
    for _ in range(warmup):
        fn()
    times: list[int] = []
    for _ in range(iters):
        t0 = time.perf_counter_ns()
        fn()
        t1 = time.perf_counter_ns()
        times.append(t1 - t0)
    return times


def _assert_close(name: str, got: np.ndarray, expected: np.ndarray, *, rtol: float = 1e-4, atol: float = 1e-5) -> None:
    got = np.asarray(got)
    expected = np.asarray(expected)
    if got.shape != expected.shape:
        raise AssertionError(f"{name}: shape mismatch {got.shape} vs {expected.shape}")
    if not np.allclose(got, expected, rtol=rtol, atol=atol):
        max_abs = float(np.max(np.abs(got - expected)))
        raise AssertionError(f"{name}: values differ (max_abs={max_abs})")


def run_smoke_tests(ctx: ComputeContext) -> None:
    """Check every kernel against NumPy once (float32)."""

    rng = np.random.default_rng(0)

    x = rng.standard_normal((33, 17), dtype=np.float32)
    y = rng.standard_normal((33, 17), dtype=np.float32)
    a = DeviceMatrix.from_matrix(ctx, x, RO)
    b = DeviceMatrix.from_matrix(ctx, y, RO)
    out = DeviceMatrix.new(ctx, 33, 17, RW)

    # (x*y + x).max(0): three chained kernels, one readback.
    a.multiply(ctx, b, out)
    out.add(ctx, a, out)
    out.max(ctx, 0.0, out)
    _assert_close("multiply/add/max", out.get(ctx), np.maximum(x * y + x, 0.0))

    for name, expected in (
        ("copy_to", x),
        ("sub", x - y),
        ("min", np.minimum(x, 0.5)),
        ("dmax", (x > 0.0).astype(np.float32)),
        ("dmin", (x < 0.5).astype(np.float32)),
    ):
        if name == "copy_to":
            a.copy_to(ctx, out)
        elif name == "sub":
            a.sub(ctx, b, out)
        elif name == "min":
            a.min(ctx, 0.5, out)
        elif name == "dmax":
            a.dmax(ctx, 0.0, out)
        else:
            a.dmin(ctx, 0.5, out)
        _assert_close(name, out.get(ctx), expected)

    # Transpose
    t = DeviceMatrix.new(ctx, 17, 33, RW)
    a.transpose(ctx, t)
    _assert_close("transpose", t.get(ctx), x.T)

    # Dot
    a_np = rng.standard_normal((64, 32), dtype=np.float32)
    b_np = rng.standard_normal((32, 16), dtype=np.float32)
    c = DeviceMatrix.new(ctx, 64, 16, RW)
    DeviceMatrix.from_matrix(ctx, a_np, RO).dot(ctx, DeviceMatrix.from_matrix(ctx, b_np, RO), c)
    _assert_close("dot", c.get(ctx), a_np @ b_np, rtol=2e-3, atol=1e-3)

    # Loss kernels
    pred = rng.standard_normal((9, 4), dtype=np.float32)
    target = rng.standard_normal((9, 4), dtype=np.float32)
    p = DeviceMatrix.from_matrix(ctx, pred, RO)
    q = DeviceMatrix.from_matrix(ctx, target, RO)
    loss = DeviceMatrix.new(ctx, 1, 4, RW)
    p.mse(ctx, q, loss)
    _assert_close("mse", loss.get(ctx), ((pred - target) ** 2).mean(axis=0, keepdims=True))
    p.dmse(ctx, q, loss)
    _assert_close("dmse", loss.get(ctx), 2.0 * (pred - target).mean(axis=0, keepdims=True))


def run_benchmarks(ctx: ComputeContext) -> None:
    warmup = 5
    iters = 50

    rng = np.random.default_rng(0)

    # -----------------
    # Elementwise chain
    # -----------------
    n = 1_000_000
    x_np = np.linspace(-1, 1, n, dtype=np.float32).reshape(1, -1)
    y_np = np.full((1, n), 3.0, dtype=np.float32)

    def cpu_elemwise() -> np.ndarray:
        return np.maximum(x_np * y_np + x_np, 0.0)

    t0 = time.perf_counter_ns()
    a = DeviceMatrix.from_matrix(ctx, x_np, RO)
    b = DeviceMatrix.from_matrix(ctx, y_np, RO)
    t1 = time.perf_counter_ns()
    upload_ms = (t1 - t0) / 1e6
    out = DeviceMatrix.new(ctx, 1, n, RW)

    def gpu_elemwise_enqueue() -> None:
        a.multiply(ctx, b, out)
        out.add(ctx, a, out)
        out.max(ctx, 0.0, out)

    def gpu_elemwise_with_readback() -> np.ndarray:
        gpu_elemwise_enqueue()
        return out.get(ctx)

    cpu_times = _bench(cpu_elemwise, warmup, iters)
    gpu_rw_times = _bench(gpu_elemwise_with_readback, warmup, iters)
    gpu_enq_times = _bench(gpu_elemwise_enqueue, warmup, iters)
    ctx.finish()

    cpu_s = _stats_ms(cpu_times)
    gpu_rw_s = _stats_ms(gpu_rw_times)
    gpu_enq_s = _stats_ms(gpu_enq_times)
    speedup_rw = cpu_s["mean_ms"] / gpu_rw_s["mean_ms"] if gpu_rw_s["mean_ms"] > 0 else float("inf")

    print("\n=== Benchmark: elementwise max(x*y + x, 0) ===")
    print(f"shape: {x_np.shape}  dtype: float32  backend: {ctx.backend}")
    print(f"upload once: {upload_ms:.3f}ms")
    print(_fmt_stats("CPU (NumPy)", cpu_s))
    print(_fmt_stats("device compute+readback", gpu_rw_s))
    print(f"speedup (mean): {speedup_rw:.2f}x")
    print(_fmt_stats("device enqueue only", gpu_enq_s))

    # ---
    # Dot
    # ---
    m, k, p = 256, 256, 256
    a_np = rng.standard_normal((m, k), dtype=np.float32)
    b_np = rng.standard_normal((k, p), dtype=np.float32)

    def cpu_dot() -> np.ndarray:
        return a_np @ b_np

    a = DeviceMatrix.from_matrix(ctx, a_np, RO)
    b = DeviceMatrix.from_matrix(ctx, b_np, RO)
    c = DeviceMatrix.new(ctx, m, p, RW)

    def gpu_dot_with_readback() -> np.ndarray:
        a.dot(ctx, b, c)
        return c.get(ctx)

    cpu_times = _bench(cpu_dot, warmup, iters)
    gpu_rw_times = _bench(gpu_dot_with_readback, warmup, iters)

    cpu_s = _stats_ms(cpu_times)
    gpu_rw_s = _stats_ms(gpu_rw_times)
    speedup_rw = cpu_s["mean_ms"] / gpu_rw_s["mean_ms"] if gpu_rw_s["mean_ms"] > 0 else float("inf")

    print("\n=== Benchmark: dot (A @ B) ===")
    print(f"A: {a_np.shape}  B: {b_np.shape}  dtype: float32  backend: {ctx.backend}")
    print(_fmt_stats("CPU (NumPy)", cpu_s))
    print(_fmt_stats("device compute+readback", gpu_rw_s))
    print(f"speedup (mean): {speedup_rw:.2f}x")


def run_gpu_demo(ctx: ComputeContext) -> None:
    # 1x10000 add: C = A + B, then D = C * A waits on C's producer.
    a_np = np.full((1, 10000), 2.0, dtype=np.float32)
    b_np = np.full((1, 10000), 3.0, dtype=np.float32)
    a = DeviceMatrix.from_matrix(ctx, a_np, RO)
    b = DeviceMatrix.from_matrix(ctx, b_np, RO)
    c = DeviceMatrix.new(ctx, 1, 10000, RW)
    d = DeviceMatrix.new(ctx, 1, 10000, RW)
    a.add(ctx, b, c)
    c.multiply(ctx, a, d)

    print("A + B (first 5):", c.get(ctx).ravel()[:5])
    print("(A + B) * A (first 5):", d.get(ctx).ravel()[:5])

    x_np = np.random.randn(4, 3).astype("float32")
    y_np = np.random.randn(3, 2).astype("float32")
    x = DeviceMatrix.from_matrix(ctx, x_np, RO)
    y = DeviceMatrix.from_matrix(ctx, y_np, RO)
    z = DeviceMatrix.new(ctx, 4, 2, RW)
    x.dot(ctx, y, z)
    print("X . Y shape:", z.shape)
    print("X . Y:")
    print(z.get(ctx))


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="devmatrix demo/bench")
    p.add_argument("--backend", choices=["auto", "vulkan", "numpy"], default="vulkan")
    p.add_argument("--smoke-only", action="store_true", help="Run correctness smoke tests only")
    p.add_argument("--bench-only", action="store_true", help="Run benchmarks only")
    p.add_argument("--log-level", default="WARNING")
    args = p.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    try:
        ctx = ComputeContext(args.backend)
    except DeviceUnavailable as e:
        print("Vulkan init failed:")
        print(f"  {e}")
        print(
            "Tip: ensure Vulkan is installed and working, the Python 'vulkan' package is available, "
            "and 'glslc' (shader compiler) is installed on the system. Use --backend numpy to skip the GPU."
        )
        raise SystemExit(1) from e

    with ctx:
        if not args.bench_only:
            print("=== Smoke tests ===")
            run_smoke_tests(ctx)
            print("PASS")

        if not args.smoke_only:
            run_gpu_demo(ctx)
            run_benchmarks(ctx)
