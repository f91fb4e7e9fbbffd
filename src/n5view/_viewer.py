"""Build viewer sources from a selection of metadata.

A `ViewerSession` owns the resources shared by everything it shows: the
`FetchQueue` used by volatile sources and the counter handing out setup ids.
Metadata problems in one selected entry skip that entry; I/O errors abort
the whole batch.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

from n5view._arrays import open_tensorstore
from n5view._binding import SetupIdCounter, UnsupportedPixelTypeError, bind
from n5view._metadata import ChannelGroup, GenericDataset, MetadataVariant
from n5view._parsers import collect_selection, discover
from n5view._resolve import ScaleLevelRef, resolve
from n5view._source import (
    FetchQueue,
    ImageSource,
    MetadataSource,
    VolatileSource,
    assemble,
    build_metadata_sources,
    is_2d_batch,
)

if TYPE_CHECKING:
    from typing_extensions import Self

    from n5view._arrays import ArrayOpener
    from n5view._binding import ConverterSetup, SourceAndConverter

__all__ = [
    "BuildResult",
    "DataSelection",
    "SkippedEntry",
    "Viewer",
    "ViewerSession",
]

logger = logging.getLogger(__name__)


class Viewer(Protocol):
    """What a session needs from the display it feeds."""

    def add_source(
        self,
        source_and_converter: SourceAndConverter,
        setup: ConverterSetup,
        ordinal: int,
    ) -> None: ...

    def set_num_timepoints(self, n: int) -> None: ...

    def set_2d(self, flag: bool) -> None: ...


@dataclass(frozen=True)
class DataSelection:
    """Metadata chosen for display, and the container it was read from."""

    container: Any
    metadata: Sequence[MetadataVariant]

    @classmethod
    def from_container(cls, container: Any, path: str = "", **kwargs: Any) -> Self:
        """Select the top-most metadata found below `path`.

        Keyword arguments are passed to `discover`.
        """
        tree = discover(container, path, **kwargs)
        return cls(container, collect_selection(tree))


class SkippedEntry(NamedTuple):
    """A selected entry (or channel of one) that produced no source."""

    index: int
    path: str
    reason: str


@dataclass
class BuildResult:
    sources: list[ImageSource] = field(default_factory=list)
    volatile_sources: list[VolatileSource] = field(default_factory=list)
    auxiliary_sources: list[MetadataSource] = field(default_factory=list)
    bound: list[tuple[SourceAndConverter, ConverterSetup]] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)
    num_timepoints: int = 1
    is_2d: bool = False


def _entry_levels(
    meta: MetadataVariant,
) -> list[tuple[str, list[ScaleLevelRef]]]:
    """(name, levels) of every source an entry contributes."""
    if isinstance(meta, ChannelGroup):
        return [(c.path, resolve(c)) for c in meta.children]
    return [(meta.path, resolve(meta))]


class ViewerSession:
    """Turn selections into bound sources and register them with a viewer.

    Parameters
    ----------
    viewer
        Receives the bound sources in `show` and `add_data`. Not needed for
        `build_sources`.
    opener
        Opens the array behind a dataset path; defaults to tensorstore.
    num_workers
        Size of the fetch pool shared by volatile sources.
    cache_size
        Number of tiles each volatile source keeps resident.
    """

    def __init__(
        self,
        viewer: Viewer | None = None,
        *,
        opener: ArrayOpener | None = None,
        num_workers: int | None = None,
        cache_size: int | None = None,
    ) -> None:
        self.viewer = viewer
        self._opener: ArrayOpener = opener or open_tensorstore
        self._queue = FetchQueue(num_workers)
        self._cache_size = cache_size
        self._setup_ids = SetupIdCounter()
        self._results: list[BuildResult] = []
        self._num_registered = 0
        self._num_timepoints = 1

    @property
    def fetch_queue(self) -> FetchQueue:
        return self._queue

    @property
    def num_timepoints(self) -> int:
        return self._num_timepoints

    def _skip(self, result: BuildResult, index: int, path: str, reason: str) -> None:
        logger.warning("Skipping entry %d (%r): %s", index, path, reason)
        result.skipped.append(SkippedEntry(index, path, reason))

    def _bind(
        self,
        result: BuildResult,
        source: VolatileSource | MetadataSource,
        index: int,
        path: str,
    ) -> bool:
        try:
            pair = bind(source, self._setup_ids.next())
        except UnsupportedPixelTypeError as e:
            self._skip(result, index, path, str(e))
            return False
        result.bound.append(pair)
        return True

    def build_sources(self, selection: DataSelection) -> BuildResult:
        """Resolve, assemble and bind every entry of `selection`.

        Raises
        ------
        OSError
            If an array cannot be opened. Sources built earlier in the batch
            are discarded with it.
        """
        result = BuildResult()
        container = selection.container
        auxiliary: list[tuple[int, str, MetadataSource]] = []

        for index, meta in enumerate(selection.metadata):
            if isinstance(meta, GenericDataset) and meta.axes:
                aux = build_metadata_sources(meta.path, meta, container, self._opener)
                if not aux:
                    self._skip(result, index, meta.path, "axes describe no image")
                auxiliary.extend((index, meta.path, src) for src in aux)
                continue

            for name, levels in _entry_levels(meta):
                if not levels:
                    self._skip(result, index, name, "no scale level has a transform")
                    continue
                try:
                    source = assemble(name, levels, container, self._opener)
                except ValueError as e:
                    self._skip(result, index, name, str(e))
                    continue
                volatile = source.as_volatile(self._queue, self._cache_size)
                if self._bind(result, volatile, index, name):
                    result.sources.append(source)
                    result.volatile_sources.append(volatile)

        # auxiliary sources are registered after every spatial source
        for index, path, src in auxiliary:
            if self._bind(result, src, index, path):
                result.auxiliary_sources.append(src)

        result.num_timepoints = max(
            (soc.source.num_timepoints for soc, _ in result.bound), default=1
        )
        result.is_2d = is_2d_batch(result.sources)
        self._results.append(result)
        return result

    def _register(self, result: BuildResult) -> None:
        if self.viewer is None:
            raise RuntimeError("ViewerSession has no viewer to show sources in")
        for soc, setup in result.bound:
            self.viewer.add_source(soc, setup, self._num_registered)
            self._num_registered += 1
        self._num_timepoints = max(self._num_timepoints, result.num_timepoints)
        self.viewer.set_num_timepoints(self._num_timepoints)

    def show(self, selection: DataSelection) -> BuildResult:
        """Build `selection` and register it with a freshly set up viewer."""
        result = self.build_sources(selection)
        self._register(result)
        self.viewer.set_2d(result.is_2d)  # type: ignore[union-attr]
        return result

    def add_data(self, selection: DataSelection) -> BuildResult:
        """Add `selection` to what the viewer already shows.

        The timepoint count grows to cover the new sources; 2D mode is left as
        set by `show`.
        """
        result = self.build_sources(selection)
        self._register(result)
        return result

    def close(self) -> None:
        """Abandon pending tile fetches and shut the fetch pool down."""
        for result in self._results:
            for volatile in result.volatile_sources:
                volatile.discard_pending()
        self._queue.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()
