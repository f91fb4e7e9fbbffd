"""Opening backing arrays, and lazy views over them.

Arrays handled here only need ``shape``, ``dtype`` and numpy-style basic
indexing (ints and slices), so numpy arrays, tensorstore handles and zarr
arrays all work. Reading a view converts to numpy at the last moment.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from n5view._container import Container

__all__ = [
    "ArrayOpener",
    "AxisSliceView",
    "SingletonAxisView",
    "add_dimension",
    "numpy_dtype",
    "open_tensorstore",
]

Key = tuple[int | slice, ...]


class ArrayOpener(Protocol):
    """Return a lazily loaded array for the dataset at `path` of `container`.

    Spatial axes must come in N5 order (x, y, z).
    """

    def __call__(self, container: Any, path: str) -> Any: ...


def open_tensorstore(container: Container, path: str) -> Any:
    """Default `ArrayOpener`, backed by tensorstore.

    Raises
    ------
    OSError
        If the dataset cannot be opened.
    """
    store = container.open_array(path).to_tensorstore()
    if container.format != "n5":
        # zarr arrays are indexed in C order; reverse into N5 order
        return store.T
    return store


def numpy_dtype(array: Any) -> np.dtype:
    """The numpy dtype of any supported array (tensorstore dtypes included)."""
    dtype = array.dtype
    return np.dtype(getattr(dtype, "numpy_dtype", dtype))


def normalize_key(key: Any, shape: Sequence[int]) -> Key:
    """Expand `key` into one int or slice per axis, with bounds checked."""
    if not isinstance(key, tuple):
        key = (key,)
    if any(k is Ellipsis for k in key):
        i = next(i for i, k in enumerate(key) if k is Ellipsis)
        fill = (slice(None),) * (len(shape) - len(key) + 1)
        key = key[:i] + fill + key[i + 1 :]
    if len(key) > len(shape):
        raise IndexError(f"too many indices: {len(key)} for {len(shape)} dimensions")
    key = key + (slice(None),) * (len(shape) - len(key))

    out: list[int | slice] = []
    for k, n in zip(key, shape):
        if isinstance(k, slice):
            out.append(slice(*k.indices(n)))
        elif isinstance(k, (int, np.integer)):
            k = int(k)
            if not -n <= k < n:
                raise IndexError(f"index {k} is out of bounds for axis with size {n}")
            out.append(k % n)
        else:
            raise TypeError(f"Only integers and slices are supported, got {k!r}")
    return tuple(out)


def result_shape(key: Key, shape: Sequence[int]) -> tuple[int, ...]:
    """Shape of ``array[key]`` for a normalized `key`."""
    return tuple(
        len(range(n)[k]) for k, n in zip(key, shape) if isinstance(k, slice)
    )


class _View:
    """Base for lazy views. Subclasses implement `shape` and `_read`."""

    shape: tuple[int, ...]

    def __init__(self, array: Any) -> None:
        self._array = array

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def dtype(self) -> np.dtype:
        return numpy_dtype(self._array)

    @property
    def base(self) -> Any:
        return self._array

    def __getitem__(self, key: Any) -> NDArray:
        return self._read(normalize_key(key, self.shape))

    def _read(self, key: Key) -> NDArray:
        raise NotImplementedError

    def __array__(self, dtype: Any = None, copy: Any = None) -> NDArray:
        data = self[...]
        return data if dtype is None else data.astype(dtype)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} shape={self.shape} dtype={self.dtype}>"


class SingletonAxisView(_View):
    """A 2D array seen as 3D, with a third axis of extent 1."""

    def __init__(self, array: Any) -> None:
        if len(array.shape) != 2:
            raise ValueError(f"Expected a 2D array, got shape {tuple(array.shape)}")
        super().__init__(array)
        self.shape = (*tuple(array.shape), 1)

    def _read(self, key: Key) -> NDArray:
        *inner, last = key
        data = np.asarray(self._array[tuple(inner)])
        if isinstance(last, slice):
            return np.expand_dims(data, axis=data.ndim)[..., last]
        return data


class AxisSliceView(_View):
    """Select up to three spatial axes of an N-dimensional array.

    Parameters
    ----------
    array
        The array to view.
    spatial_axes
        Axes of `array` giving x, y (and z), in that order.
    fixed
        Index to use for every other axis of `array`. Missing axes are read at
        index 0.
    """

    def __init__(
        self, array: Any, spatial_axes: Sequence[int], fixed: dict[int, int] | None = None
    ) -> None:
        super().__init__(array)
        if not 1 <= len(spatial_axes) <= 3:
            raise ValueError(f"Expected 1 to 3 spatial axes, got {len(spatial_axes)}")
        self._spatial = tuple(spatial_axes)
        self._fixed = dict(fixed or {})
        self.shape = tuple(int(array.shape[a]) for a in self._spatial)

    def _read(self, key: Key) -> NDArray:
        full: list[int | slice] = [
            self._fixed.get(i, 0) for i in range(len(self._array.shape))
        ]
        for axis, k in zip(self._spatial, key):
            full[axis] = k
        data = np.asarray(self._array[tuple(full)])
        # remaining axes come out in the array's order; put them in view order
        kept = [j for j, k in enumerate(key) if isinstance(k, slice)]
        in_data = sorted(kept, key=lambda j: self._spatial[j])
        return np.transpose(data, [in_data.index(j) for j in kept])


def add_dimension(array: Any) -> Any:
    """Lift a 2D array to 3D by appending an axis of extent 1."""
    return SingletonAxisView(array)
