from __future__ import annotations

"""Two-layer MLP regression trained entirely with DeviceMatrix operations.

Forward, loss, backward and the SGD update are all device kernels chained
through producer events; the host only uploads batches and reads the loss
once per step.

The loss is the per-column mean squared error summed over output columns
(plain MSE for a single output), so the output-bias gradient is exactly
``dmse(pred, target)``.
"""

import logging
import pickle
from typing import Optional

import numpy as np

from .context import ComputeContext
from .data import DataLoader, TensorDataset
from .host import as_host_matrix
from .matrix import DeviceMatrix, MatrixMode


logger = logging.getLogger(__name__)

RW = MatrixMode.READ_WRITE
RO = MatrixMode.READ_ONLY


class GpuMLP:
    def __init__(
        self,
        ctx: ComputeContext,
        in_features: int,
        hidden: int,
        out_features: int,
        *,
        seed: int = 0,
    ) -> None:
        self.ctx = ctx
        self.in_features = int(in_features)
        self.hidden = int(hidden)
        self.out_features = int(out_features)
        rng = np.random.default_rng(seed)

        # Matmul-friendly layout: W1 [in, hidden], W2 [hidden, out]; biases are row vectors.
        w1_scale = np.sqrt(2.0 / max(1, in_features))
        w2_scale = np.sqrt(2.0 / max(1, hidden))

        w1 = (rng.standard_normal((in_features, hidden)) * w1_scale).astype(np.float32)
        b1 = np.zeros((1, hidden), dtype=np.float32)
        w2 = (rng.standard_normal((hidden, out_features)) * w2_scale).astype(np.float32)
        b2 = np.zeros((1, out_features), dtype=np.float32)

        self.w1 = DeviceMatrix.from_matrix(ctx, w1, RW)
        self.b1 = DeviceMatrix.from_matrix(ctx, b1, RW)
        self.w2 = DeviceMatrix.from_matrix(ctx, w2, RW)
        self.b2 = DeviceMatrix.from_matrix(ctx, b2, RW)

        # Gradients, the transposed W2 and SGD scratch do not depend on the batch.
        self._grads = {
            "w1": self._empty(self.in_features, self.hidden),
            "b1": self._empty(1, self.hidden),
            "w2": self._empty(self.hidden, self.out_features),
            "b2": self._empty(1, self.out_features),
        }
        self._steps = {name: self._empty(*g.shape) for name, g in self._grads.items()}
        self._w2t = self._empty(self.out_features, self.hidden)

        # Per-batch-size buffers, reused across steps.
        self._batch_cache: dict[int, dict[str, DeviceMatrix]] = {}
        self._lr: Optional[float] = None
        self._lr_mats: dict[str, DeviceMatrix] = {}

    def _empty(self, rows: int, columns: int, mode: MatrixMode = RW) -> DeviceMatrix:
        return DeviceMatrix.new(self.ctx, rows, columns, mode)

    def _const(self, rows: int, columns: int, value: float) -> DeviceMatrix:
        return DeviceMatrix.from_matrix(self.ctx, np.full((rows, columns), value, dtype=np.float32), RO)

    def _get_batch_buffers(self, batch: int) -> dict[str, DeviceMatrix]:
        batch = int(batch)
        bufs = self._batch_cache.get(batch)
        if bufs is not None:
            return bufs

        h, o, i = self.hidden, self.out_features, self.in_features
        bufs = {
            "x": self._empty(batch, i),
            "y_true": self._empty(batch, o),
            "ones": self._const(batch, 1, 1.0),
            "ones_t": self._const(1, batch, 1.0),
            "grad_scale": self._const(batch, o, 2.0 / batch),
            "z1": self._empty(batch, h),
            "bias1": self._empty(batch, h),
            "z1b": self._empty(batch, h),
            "a1": self._empty(batch, h),
            "z2": self._empty(batch, o),
            "bias2": self._empty(batch, o),
            "y_pred": self._empty(batch, o),
            "loss": self._empty(1, o),
            "diff": self._empty(batch, o),
            "dY": self._empty(batch, o),
            "a1_t": self._empty(h, batch),
            "dA1": self._empty(batch, h),
            "relu_mask": self._empty(batch, h),
            "dZ1": self._empty(batch, h),
            "x_t": self._empty(i, batch),
        }
        self._batch_cache[batch] = bufs
        return bufs

    def _lr_matrices(self, lr: float) -> dict[str, DeviceMatrix]:
        if self._lr != lr:
            for m in self._lr_mats.values():
                m.release()
            self._lr_mats = {name: self._const(*g.shape, lr) for name, g in self._grads.items()}
            self._lr = lr
        return self._lr_mats

    def _params(self) -> dict[str, DeviceMatrix]:
        return {"w1": self.w1, "b1": self.b1, "w2": self.w2, "b2": self.b2}

    def state_dict(self) -> dict[str, np.ndarray]:
        ctx = self.ctx
        return {
            "w1": self.w1.get(ctx),
            "b1": self.b1.get(ctx).reshape(-1),
            "w2": self.w2.get(ctx),
            "b2": self.b2.get(ctx).reshape(-1),
        }

    def save(self, path: str) -> None:
        payload = {
            "arch": "GpuMLP",
            "in_features": self.in_features,
            "hidden": self.hidden,
            "out_features": self.out_features,
            "state_dict": self.state_dict(),
        }
        with open(path, "wb") as f:
            pickle.dump(payload, f)
        logger.info("saved GpuMLP weights to %s", path)

    def close(self) -> None:
        for m in self._params().values():
            m.release()
        for bufs in self._batch_cache.values():
            for m in bufs.values():
                m.release()
        self._batch_cache.clear()
        for group in (self._grads, self._steps, self._lr_mats):
            for m in group.values():
                m.release()
        self._lr_mats = {}
        self._w2t.release()

    def _forward(self, bufs: dict[str, DeviceMatrix]) -> DeviceMatrix:
        ctx = self.ctx
        bufs["x"].dot(ctx, self.w1, bufs["z1"])
        bufs["ones"].dot(ctx, self.b1, bufs["bias1"])  # broadcast b1 over rows
        bufs["z1"].add(ctx, bufs["bias1"], bufs["z1b"])
        bufs["z1b"].max(ctx, 0.0, bufs["a1"])
        bufs["a1"].dot(ctx, self.w2, bufs["z2"])
        bufs["ones"].dot(ctx, self.b2, bufs["bias2"])
        bufs["z2"].add(ctx, bufs["bias2"], bufs["y_pred"])
        return bufs["y_pred"]

    def predict(self, x_np: np.ndarray) -> np.ndarray:
        x_np = as_host_matrix(x_np, dtype=np.float32)
        bufs = self._get_batch_buffers(x_np.shape[0])
        self.ctx.finish()
        bufs["x"].set(self.ctx, x_np)
        return self._forward(bufs).get(self.ctx)

    def train_step(self, x_np: np.ndarray, y_np: np.ndarray, *, lr: float) -> float:
        ctx = self.ctx
        x_np = as_host_matrix(x_np, dtype=np.float32)
        y_np = as_host_matrix(y_np, dtype=np.float32)
        bufs = self._get_batch_buffers(x_np.shape[0])
        lr_mats = self._lr_matrices(float(lr))

        # The previous step may still be reading the batch buffers.
        ctx.finish()
        bufs["x"].set(ctx, x_np)
        bufs["y_true"].set(ctx, y_np)

        # Forward + loss
        y_pred = self._forward(bufs)
        y_pred.mse(ctx, bufs["y_true"], bufs["loss"])

        # Backward
        g = self._grads
        y_pred.sub(ctx, bufs["y_true"], bufs["diff"])
        bufs["diff"].multiply(ctx, bufs["grad_scale"], bufs["dY"])  # [batch, out]

        bufs["a1"].transpose(ctx, bufs["a1_t"])
        bufs["a1_t"].dot(ctx, bufs["dY"], g["w2"])  # [hidden, out]
        y_pred.dmse(ctx, bufs["y_true"], g["b2"])  # [1, out]

        self.w2.transpose(ctx, self._w2t)
        bufs["dY"].dot(ctx, self._w2t, bufs["dA1"])  # [batch, hidden]
        bufs["z1b"].dmax(ctx, 0.0, bufs["relu_mask"])
        bufs["dA1"].multiply(ctx, bufs["relu_mask"], bufs["dZ1"])

        bufs["x"].transpose(ctx, bufs["x_t"])
        bufs["x_t"].dot(ctx, bufs["dZ1"], g["w1"])  # [in, hidden]
        bufs["ones_t"].dot(ctx, bufs["dZ1"], g["b1"])  # [1, hidden]

        # SGD update (in-place)
        for name, param in self._params().items():
            g[name].multiply(ctx, lr_mats[name], self._steps[name])
            param.sub(ctx, self._steps[name], param)

        # Loss readback for logging only; waits for the forward pass, not the update.
        return float(bufs["loss"].get(ctx).sum())


def train_mlp_regression(
    x: np.ndarray,
    y: np.ndarray,
    *,
    epochs: int = 50,
    batch_size: int = 32,
    lr: float = 0.1,
    hidden: int = 16,
    seed: int = 0,
    log_every: int = 10,
    save_path: str | None = None,
    ctx: Optional[ComputeContext] = None,
    backend: Optional[str] = None,
) -> list[float]:
    """Train a 2-layer MLP with DeviceMatrix kernels; returns the mean loss of each epoch.

    Uses ``ctx`` if given, otherwise opens (and closes) a context for ``backend``.
    """

    own_ctx = ctx is None
    if ctx is None:
        ctx = ComputeContext(backend)
    print(f"Training backend: {ctx.backend}")

    dataset = TensorDataset(x, y)
    in_features = dataset.arrays[0].shape[1]
    out_features = dataset.arrays[1].shape[1]
    loader = DataLoader(dataset, batch_size=batch_size, shuffle=True, seed=seed)

    history: list[float] = []
    model = GpuMLP(ctx, in_features=in_features, hidden=hidden, out_features=out_features, seed=seed)
    try:
        for epoch in range(epochs):
            epoch_loss = 0.0
            num_batches = 0
            for xb_np, yb_np in loader:
                epoch_loss += model.train_step(xb_np, yb_np, lr=lr)
                num_batches += 1

            avg_loss = epoch_loss / max(1, num_batches)
            history.append(avg_loss)
            if log_every and epoch % log_every == 0:
                print(f"Epoch {epoch}: loss={avg_loss:.6f}")

        if save_path:
            model.save(save_path)
            print(f"Saved model to: {save_path}")
    finally:
        model.close()
        if own_ctx:
            ctx.close()
    return history
