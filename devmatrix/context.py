from __future__ import annotations

"""Compute context: one device, one in-order queue and the kernel table.

All backend-native failures are turned into :mod:`devmatrix.errors` here, so
DeviceMatrix (and user code) only ever sees one error hierarchy.
"""

import logging
from dataclasses import replace
from typing import Any, Optional, Sequence

import numpy as np

from . import vulkan_backend
from .config import Config
from .errors import (
    AllocationFailure,
    DeviceMatrixError,
    DeviceUnavailable,
    DispatchFailure,
    KernelNotFound,
    TransferFailure,
)
from .host_backend import HostDevice
from .kernels import Op, kernel_name, parse_kernel_name
from .num import NumType, from_dtype, type_name


logger = logging.getLogger(__name__)


def _open_device(config: Config):
    if config.backend == "numpy":
        logger.info("Compute backend: numpy")
        return HostDevice(config)

    try:
        device = vulkan_backend.VulkanDevice(config)
    except Exception as e:
        if config.backend == "vulkan":
            raise DeviceUnavailable(f"Vulkan backend unavailable: {e}") from e
        logger.warning("Vulkan unavailable (%s); falling back to NumPy", e)
        return HostDevice(config)

    logger.info("Compute backend: vulkan (%s)", device.device_name)
    return device


class ComputeContext:
    """Owns a compute device and its single in-order command queue.

    Kernels enqueued through one context run in submission order relative to
    each other. Completion events returned by :meth:`enqueue_kernel` expose
    ``complete``, ``failure`` and ``wait()``.

    backend: ``"auto"`` (Vulkan, else NumPy), ``"vulkan"`` (strict) or
    ``"numpy"``. Defaults to ``DEVMATRIX_BACKEND`` or ``"auto"``.
    """

    def __init__(self, backend: Optional[str] = None, *, config: Optional[Config] = None) -> None:
        config = config or Config.from_env()
        if backend is not None:
            config = replace(config, backend=backend)
        self.config = config
        self.device = _open_device(config)
        self._kernels: dict[tuple[Op, NumType], Any] = {}
        self._closed = False

    @property
    def backend(self) -> str:
        return self.device.name

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise DeviceUnavailable("ComputeContext is closed")

    # ------------------------------
    # Buffers
    # ------------------------------
    def allocate_buffer(self, length: int, mode: Any, dtype: Any = np.float32):
        self._check_open()
        length = int(length)
        if length <= 0:
            raise AllocationFailure(f"cannot allocate a buffer of {length} elements")
        try:
            return self.device.allocate(length, np.dtype(dtype), mode)
        except DeviceMatrixError:
            raise
        except Exception as e:
            raise AllocationFailure(f"allocating {length} x {np.dtype(dtype).name} failed: {e}") from e

    def free_buffer(self, buffer: Any) -> None:
        if self._closed:
            # close() already released everything.
            return
        self.device.free(buffer)

    def enqueue_write(self, buffer: Any, host_array: np.ndarray) -> None:
        """Copy ``host_array`` into ``buffer``; returns once the host copy is done."""

        self._check_open()
        arr = np.asarray(host_array)
        if arr.size != buffer.length:
            raise TransferFailure(f"cannot write {arr.size} elements into a buffer of {buffer.length}")
        try:
            self.device.write(buffer, arr)
        except DeviceMatrixError:
            raise
        except Exception as e:
            raise TransferFailure(f"host->device copy failed: {e}") from e

    def enqueue_read(self, buffer: Any, wait_list: Sequence[Any] = ()) -> np.ndarray:
        """Block on ``wait_list``, then copy ``buffer`` into a new flat array."""

        self._check_open()
        try:
            return self.device.read(buffer, list(wait_list))
        except DeviceMatrixError:
            raise
        except TimeoutError as e:
            raise DispatchFailure(f"waiting for producer failed: {e}") from e
        except Exception as e:
            raise TransferFailure(f"device->host copy failed: {e}") from e

    # ------------------------------
    # Kernels
    # ------------------------------
    def lookup_kernel(self, name: str):
        """Resolve a kernel by name, e.g. ``"vector_add_float"``."""

        parsed = parse_kernel_name(name)
        if parsed is None:
            raise KernelNotFound(f"no kernel named {name!r}")
        return self.kernel(*parsed)

    def kernel(self, op: Op, dtype: Any):
        if isinstance(dtype, NumType):
            num_type = dtype
        else:
            num_type = from_dtype(dtype)
            if num_type is None:
                raise KernelNotFound(f"no kernel named 'vector_{op.value}_{type_name(dtype)}'")

        key = (op, num_type)
        cached = self._kernels.get(key)
        if cached is not None:
            return cached

        self._check_open()
        try:
            k = self.device.kernel(op, num_type)
        except DeviceMatrixError:
            raise
        except Exception as e:
            raise KernelNotFound(f"building {kernel_name(op, num_type)} failed: {e}") from e
        self._kernels[key] = k
        return k

    def enqueue_kernel(
        self,
        kernel: Any,
        buffers: Sequence[Any],
        params: tuple,
        work_size: tuple[int, ...],
        local_size: Optional[int] = None,
        wait_list: Sequence[Any] = (),
    ):
        """Enqueue ``kernel`` after every event in ``wait_list``; returns its completion event."""

        self._check_open()
        if len(buffers) != kernel.spec.buffers:
            raise DispatchFailure(
                f"{kernel.name} binds {kernel.spec.buffers} buffers, got {len(buffers)}"
            )
        compiled = getattr(kernel, "local_size", None)
        if local_size is not None and compiled is not None and int(local_size) != compiled:
            raise DispatchFailure(f"{kernel.name} was compiled with local size {compiled}, not {local_size}")

        # Completed producers need no wait; failed ones stay so the failure propagates.
        waits = [e for e in wait_list if not e.complete or e.failure is not None]

        logger.debug("enqueue %s work=%s waits=%d", kernel.name, tuple(work_size), len(waits))
        try:
            return self.device.dispatch(kernel, list(buffers), tuple(params), tuple(work_size), waits)
        except DeviceMatrixError:
            raise
        except Exception as e:
            raise DispatchFailure(f"enqueueing {kernel.name} failed: {e}") from e

    # ------------------------------
    # Lifecycle
    # ------------------------------
    def finish(self) -> None:
        """Block until every enqueued kernel has run."""

        self._check_open()
        try:
            self.device.finish()
        except DeviceMatrixError:
            raise
        except Exception as e:
            raise DispatchFailure(f"draining the queue failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._kernels.clear()
        try:
            self.device.close()
        finally:
            self._closed = True

    def __enter__(self) -> "ComputeContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:  # pragma: no cover - cosmetic
        state = "closed" if self._closed else "open"
        return f"ComputeContext(backend={self.backend!r}, {state})"
