"""Lazily evaluated volumetric sources.

A source exposes every scale level as a 3D array addressed by
``(timepoint, level)``, together with the transform placing that level in
physical space. Level 0 is the finest level.
"""

from __future__ import annotations

import functools
import logging
import operator
import os
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import TYPE_CHECKING, Any, Callable, NamedTuple, TypeVar

import cachetools
import numpy as np

from n5view._arrays import (
    AxisSliceView,
    add_dimension,
    normalize_key,
    numpy_dtype,
    result_shape,
)
from n5view._pixel import PixelType, pixel_type_of
from n5view._transform import AffineTransform

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from n5view._arrays import ArrayOpener, Key
    from n5view._axis import Axis
    from n5view._metadata import GenericDataset
    from n5view._resolve import ScaleLevelRef

__all__ = [
    "FetchQueue",
    "ImageSource",
    "MetadataSource",
    "ScaleLevel",
    "VolatileBlock",
    "VolatileSource",
    "assemble",
    "build_metadata_sources",
    "is_2d_batch",
]

logger = logging.getLogger(__name__)

_R = TypeVar("_R")

FETCH_WORKERS_ENV = "N5VIEW_FETCH_WORKERS"
TILE_CACHE_ENV = "N5VIEW_TILE_CACHE_SIZE"
DEFAULT_TILE_CACHE_SIZE = 1024


def _positive_env(name: str) -> int | None:
    if not (env := os.getenv(name)):
        return None
    try:
        value = int(env)
    except ValueError:
        raise ValueError(f"{name} must be a positive integer, got {env!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be a positive integer, got {env!r}")
    return value


def default_num_workers() -> int:
    """Half the available CPUs, at least 1.

    Set ``N5VIEW_FETCH_WORKERS`` to override.
    """
    if (n := _positive_env(FETCH_WORKERS_ENV)) is not None:
        return n
    return max(1, (os.cpu_count() or 1) // 2)


def default_tile_cache_size() -> int:
    """Tiles kept per volatile source; ``N5VIEW_TILE_CACHE_SIZE`` overrides."""
    return _positive_env(TILE_CACHE_ENV) or DEFAULT_TILE_CACHE_SIZE


class FetchQueue:
    """The worker pool shared by every volatile source of a viewer session.

    Create one per session and close it with the session; it can be used as
    a context manager.
    """

    def __init__(self, num_workers: int | None = None) -> None:
        if num_workers is None:
            num_workers = default_num_workers()
        elif num_workers < 1:
            raise ValueError(f"num_workers must be at least 1, got {num_workers}")
        self.num_workers = num_workers
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers, thread_name_prefix="n5view-fetch"
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, fn: Callable[..., _R], *args: Any) -> Future[_R]:
        if self._closed:
            raise RuntimeError("FetchQueue is closed")
        return self._executor.submit(fn, *args)

    def close(self, cancel_pending: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=True, cancel_futures=cancel_pending)

    def __enter__(self) -> FetchQueue:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<FetchQueue workers={self.num_workers} closed={self._closed}>"


class ScaleLevel(NamedTuple):
    """One opened scale level.

    ``array`` is always 3D; ``ndim`` is the dimensionality of the array as
    stored.
    """

    array: Any
    transform: AffineTransform
    ndim: int


class ImageSource:
    """A multiscale source backed by one opened array per level."""

    def __init__(
        self, name: str, levels: Sequence[ScaleLevel], num_timepoints: int = 1
    ) -> None:
        if not levels:
            raise ValueError("A source needs at least one scale level")
        self.name = name
        self._levels = tuple(levels)
        self._num_timepoints = num_timepoints
        # every level is assumed to share the data type of the first
        self._dtype = numpy_dtype(self._levels[0].array)

    @property
    def levels(self) -> tuple[ScaleLevel, ...]:
        return self._levels

    @property
    def num_levels(self) -> int:
        return len(self._levels)

    @property
    def num_timepoints(self) -> int:
        return self._num_timepoints

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def pixel_type(self) -> PixelType:
        return pixel_type_of(self._dtype)

    @property
    def is_2d(self) -> bool:
        return all(lvl.ndim == 2 for lvl in self._levels)

    def _check(self, t: int, level: int) -> None:
        if not 0 <= t < self._num_timepoints:
            raise IndexError(f"timepoint {t} out of range [0, {self._num_timepoints})")
        if not 0 <= level < len(self._levels):
            raise IndexError(f"level {level} out of range [0, {len(self._levels)})")

    def get_source(self, t: int, level: int) -> Any:
        self._check(t, level)
        return self._levels[level].array

    def get_transform(self, t: int, level: int) -> AffineTransform:
        self._check(t, level)
        return self._levels[level].transform

    def as_volatile(
        self, queue: FetchQueue, cache_size: int | None = None
    ) -> VolatileSource:
        return VolatileSource(self, queue, cache_size)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.name!r} levels={self.num_levels} "
            f"dtype={self._dtype}>"
        )


class VolatileBlock(NamedTuple):
    """Result of reading a volatile source.

    ``valid`` is False while the data is still being fetched, in which case
    ``data`` is a zero-filled placeholder of the right shape.
    """

    data: NDArray
    valid: bool


def _hashable(key: Key) -> tuple:
    return tuple((k.start, k.stop, k.step) if isinstance(k, slice) else k for k in key)


class VolatileView:
    """One level of a `VolatileSource`; indexing returns a `VolatileBlock`."""

    def __init__(self, source: VolatileSource, level: int) -> None:
        self._source = source
        self._level = level
        self.shape: tuple[int, ...] = tuple(source.levels[level].array.shape)

    @property
    def dtype(self) -> np.dtype:
        return self._source.dtype

    def __getitem__(self, key: Any) -> VolatileBlock:
        return self._source._fetch(self._level, normalize_key(key, self.shape))


class VolatileSource:
    """Progressive view of an `ImageSource`.

    Shares the scale levels and transforms of the source it was made from.
    Reads never block: tiles that are not resident are scheduled on the
    shared `FetchQueue` and reported as invalid until they arrive. At most
    `cache_size` tiles stay resident, least recently used first out.
    """

    def __init__(
        self, source: ImageSource, queue: FetchQueue, cache_size: int | None = None
    ) -> None:
        if cache_size is None:
            cache_size = default_tile_cache_size()
        elif cache_size < 1:
            raise ValueError(f"cache_size must be at least 1, got {cache_size}")
        self._source = source
        self._queue = queue
        self._lock = threading.RLock()
        self._cache: cachetools.LRUCache[tuple, NDArray] = cachetools.LRUCache(cache_size)
        self._pending: dict[tuple, Future] = {}
        self._errors: cachetools.LRUCache[tuple, BaseException] = cachetools.LRUCache(
            cache_size
        )

    @property
    def name(self) -> str:
        return self._source.name

    @property
    def source(self) -> ImageSource:
        return self._source

    @property
    def cache_size(self) -> int:
        return int(self._cache.maxsize)

    @property
    def num_cached(self) -> int:
        return len(self._cache)

    @property
    def levels(self) -> tuple[ScaleLevel, ...]:
        return self._source.levels

    @property
    def num_levels(self) -> int:
        return self._source.num_levels

    @property
    def num_timepoints(self) -> int:
        return self._source.num_timepoints

    @property
    def dtype(self) -> np.dtype:
        return self._source.dtype

    @property
    def pixel_type(self) -> PixelType:
        return self._source.pixel_type.as_volatile()

    @property
    def is_2d(self) -> bool:
        return self._source.is_2d

    def get_source(self, t: int, level: int) -> VolatileView:
        self._source._check(t, level)
        return VolatileView(self, level)

    def get_transform(self, t: int, level: int) -> AffineTransform:
        return self._source.get_transform(t, level)

    def _fetch(self, level: int, key: Key) -> VolatileBlock:
        ck = (level, _hashable(key))
        with self._lock:
            if ck in self._cache:
                return VolatileBlock(self._cache[ck], True)
            if ck in self._errors:
                raise self._errors.pop(ck)
            if ck not in self._pending:
                future = self._queue.submit(self._load, ck, level, key)
                self._pending[ck] = future
                future.add_done_callback(functools.partial(self._done, ck))
        shape = result_shape(key, self.levels[level].array.shape)
        return VolatileBlock(np.zeros(shape, dtype=self.dtype), False)

    def _load(self, ck: tuple, level: int, key: Key) -> NDArray:
        try:
            data = np.asarray(self.levels[level].array[key])
        except Exception as e:
            with self._lock:
                self._errors[ck] = e
            raise
        with self._lock:
            self._cache[ck] = data
        return data

    def _done(self, ck: tuple, future: Future) -> None:
        with self._lock:
            self._pending.pop(ck, None)
            if future.cancelled():
                return
            if (exc := future.exception()) is not None:
                logger.warning("Fetching %s of %r failed: %s", ck, self.name, exc)

    def wait(self, timeout: float | None = None) -> None:
        """Block until every fetch scheduled so far has finished."""
        with self._lock:
            pending = list(self._pending.values())
        wait_futures(pending, timeout=timeout)

    def discard_pending(self) -> None:
        """Abandon fetches that have not started. Resident tiles stay cached."""
        with self._lock:
            pending = list(self._pending.values())
        for future in pending:
            future.cancel()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} levels={self.num_levels}>"


def assemble(
    name: str,
    levels: Sequence[ScaleLevelRef],
    container: Any,
    opener: ArrayOpener,
) -> ImageSource:
    """Open every level of a resolved pyramid and build a source from them.

    2D arrays are lifted to 3D with a third axis of extent 1.

    Raises
    ------
    OSError
        If a level cannot be opened.
    ValueError
        If `levels` is empty, or a level is neither 2D nor 3D.
    """
    opened = []
    for ref in levels:
        array = opener(container, ref.path)
        ndim = len(array.shape)
        if ndim == 2:
            array = add_dimension(array)
        elif ndim != 3:
            raise ValueError(f"Dataset {ref.path!r} is {ndim}D; expected 2D or 3D")
        opened.append(ScaleLevel(array, ref.transform, ndim))
    return ImageSource(name, opened)


def is_2d_batch(sources: Iterable[ImageSource | VolatileSource]) -> bool:
    """True when every array of every source was stored as 2D."""
    return functools.reduce(operator.and_, (s.is_2d for s in sources), True)


# ------------------------------------------------------------------------------
# auxiliary sources
# ------------------------------------------------------------------------------

_SPATIAL_ORDER = {"x": 0, "y": 1, "z": 2}


class MetadataSource:
    """A single-level source over a dataset with labelled axes.

    Space axes become x, y (and z); a time axis becomes the timepoint index;
    every other axis is read at index 0.
    """

    def __init__(
        self,
        name: str,
        array: Any,
        axes: Sequence[Axis],
        transform: AffineTransform | None = None,
    ) -> None:
        if len(axes) != len(array.shape):
            raise ValueError(
                f"{len(axes)} axes given for an array of shape {tuple(array.shape)}"
            )
        spatial = [i for i, ax in enumerate(axes) if ax.type == "space"]
        spatial.sort(key=lambda i: _SPATIAL_ORDER.get(axes[i].label.lower(), 3 + i))
        if not 2 <= len(spatial) <= 3:
            raise ValueError(f"Expected 2 or 3 space axes, got {len(spatial)}")
        time = [i for i, ax in enumerate(axes) if ax.type == "time"]

        self.name = name
        self._array = array
        self._spatial = spatial
        self._time_axis = time[0] if time else None
        self._transform = transform or AffineTransform.identity()

    @property
    def num_levels(self) -> int:
        return 1

    @property
    def num_timepoints(self) -> int:
        if self._time_axis is None:
            return 1
        return int(self._array.shape[self._time_axis])

    @property
    def dtype(self) -> np.dtype:
        return numpy_dtype(self._array)

    @property
    def pixel_type(self) -> PixelType:
        return pixel_type_of(self.dtype)

    @property
    def is_2d(self) -> bool:
        return len(self._spatial) == 2

    def get_source(self, t: int, level: int = 0) -> Any:
        if level != 0:
            raise IndexError(f"level {level} out of range [0, 1)")
        if not 0 <= t < self.num_timepoints:
            raise IndexError(f"timepoint {t} out of range [0, {self.num_timepoints})")
        fixed = {self._time_axis: t} if self._time_axis is not None else {}
        view = AxisSliceView(self._array, self._spatial, fixed)
        return add_dimension(view) if self.is_2d else view

    def get_transform(self, t: int, level: int = 0) -> AffineTransform:
        return self._transform

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} nt={self.num_timepoints}>"


def build_metadata_sources(
    name: str,
    metadata: GenericDataset,
    container: Any,
    opener: ArrayOpener,
) -> list[MetadataSource]:
    """Build the auxiliary sources of a labelled dataset.

    Returns an empty list when the axes do not describe an image.
    """
    if not metadata.axes:
        return []
    array = opener(container, metadata.path)
    try:
        return [MetadataSource(name, array, metadata.axes)]
    except ValueError as e:
        logger.warning("No source for %r: %s", metadata.path, e)
        return []
