from __future__ import annotations

from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

from .host import as_host_matrix


class TensorDataset:
    """Rows of one or more host arrays with equal leading dimension.

    1-D arrays are treated as one feature per sample, so ``TensorDataset(x, y)``
    with ``x.shape == (n,)`` yields ``(1,)``-shaped samples.
    """

    def __init__(self, *arrays, dtype=np.float32) -> None:
        if not arrays:
            raise ValueError("TensorDataset requires at least one array")
        converted = []
        for arr in arrays:
            a = np.asarray(arr, dtype=dtype)
            if a.ndim == 1:
                a = a.reshape(-1, 1)
            converted.append(as_host_matrix(a))
        length = converted[0].shape[0]
        for a in converted[1:]:
            if a.shape[0] != length:
                raise ValueError("All arrays must have the same number of rows")
        self._arrays = tuple(converted)
        self._length = length

    @property
    def arrays(self) -> tuple[np.ndarray, ...]:
        return self._arrays

    def __len__(self) -> int:
        return self._length

    def __getitem__(self, index):
        return tuple(arr[index] for arr in self._arrays)


class DataLoader(Iterable):
    """Yields batches as tuples of C-contiguous 2-D arrays, ready for ``DeviceMatrix.set``.

    ``drop_last`` skips a trailing short batch so every batch has the same
    shape (and can reuse the same device buffers).
    """

    def __init__(
        self,
        dataset: TensorDataset,
        batch_size: int = 32,
        shuffle: bool = True,
        *,
        drop_last: bool = False,
        seed: Optional[int] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.dataset = dataset
        self.batch_size = batch_size
        self.shuffle = shuffle
        self.drop_last = drop_last
        self._rng = np.random.default_rng(seed)

    def __len__(self) -> int:
        full, rest = divmod(len(self.dataset), self.batch_size)
        return full if (self.drop_last or rest == 0) else full + 1

    def __iter__(self) -> Iterator[tuple[np.ndarray, ...]]:
        indices = np.arange(len(self.dataset))
        if self.shuffle:
            self._rng.shuffle(indices)
        for start in range(0, len(indices), self.batch_size):
            batch = indices[start : start + self.batch_size]
            if len(batch) < self.batch_size and self.drop_last:
                return
            yield self._fetch_batch(batch)

    def _fetch_batch(self, indices: Sequence[int]) -> tuple[np.ndarray, ...]:
        return tuple(np.ascontiguousarray(arr[indices]) for arr in self.dataset.arrays)
