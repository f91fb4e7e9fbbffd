from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Callable

import numpy as np
import pytest

from n5view import (
    AffineTransform,
    ChannelGroup,
    DataSelection,
    GenericDataset,
    GenericSingleScale,
    MultiScale,
    MultiScaleUnsorted,
    SingleScale,
    SkippedEntry,
    ViewerSession,
)

if TYPE_CHECKING:
    from n5view import Container, ConverterSetup, SourceAndConverter

T = AffineTransform.from_scale_translation([1, 1, 1])
T2 = AffineTransform.from_scale_translation([2, 2, 2])


class RecordingViewer:
    def __init__(self) -> None:
        self.added: list[tuple[SourceAndConverter, ConverterSetup, int]] = []
        self.num_timepoints: list[int] = []
        self.is_2d: list[bool] = []

    def add_source(self, soc: SourceAndConverter, setup: ConverterSetup, ordinal: int) -> None:
        self.added.append((soc, setup, ordinal))

    def set_num_timepoints(self, n: int) -> None:
        self.num_timepoints.append(n)

    def set_2d(self, flag: bool) -> None:
        self.is_2d.append(flag)


@pytest.fixture
def viewer() -> RecordingViewer:
    return RecordingViewer()


@pytest.fixture
def session(
    viewer: RecordingViewer, numpy_opener: Callable
) -> Iterator[Callable[[dict[str, np.ndarray]], ViewerSession]]:
    sessions: list[ViewerSession] = []

    def _make(arrays: dict[str, np.ndarray]) -> ViewerSession:
        sessions.append(ViewerSession(viewer, opener=numpy_opener(arrays), num_workers=1))
        return sessions[-1]

    yield _make
    for s in sessions:
        s.close()


def _vol(*shape: int, dtype: str = "uint8") -> np.ndarray:
    return np.zeros(shape, dtype=dtype)


def test_entry_without_transform_is_skipped(session: Callable) -> None:
    s = session({"a": _vol(4, 4, 4), "b": _vol(4, 4, 4), "c": _vol(4, 4, 4)})
    selection = DataSelection(
        None,
        [
            SingleScale(path="a", transform=T),
            SingleScale(path="b", transform=None),
            SingleScale(path="c", transform=T),
        ],
    )
    result = s.build_sources(selection)
    assert [src.name for src in result.sources] == ["a", "c"]
    assert len(result.volatile_sources) == 2
    assert len(result.skipped) == 1
    assert result.skipped[0][:2] == (1, "b")
    assert isinstance(result.skipped[0], SkippedEntry)


def test_bound_in_resolution_order(session: Callable, viewer: RecordingViewer) -> None:
    s = session({"g/s0": _vol(8, 8, 8), "g/s1": _vol(4, 4, 4), "x": _vol(4, 4, 4)})
    selection = DataSelection(
        None,
        [
            MultiScaleUnsorted(path="g", paths=("g/s1", "g/s0"), transforms=(T2, T)),
            GenericSingleScale(path="x", transform=T),
        ],
    )
    result = s.show(selection)

    first = result.volatile_sources[0]
    assert first.get_source(0, 0).shape == (8, 8, 8)
    assert first.get_transform(0, 1) == T2

    assert [setup.setup_id for _, setup, _ in viewer.added] == [1, 2]
    assert [ordinal for *_, ordinal in viewer.added] == [0, 1]
    # the volatile form is what the viewer displays
    assert viewer.added[0][0].source.wrapped_source is first
    assert viewer.num_timepoints == [1]
    assert viewer.is_2d == [False]


def test_channel_group_gives_one_source_per_channel(session: Callable) -> None:
    arrays = {f"c{c}/s{i}": _vol(8 >> i, 8 >> i, 8 >> i) for c in range(2) for i in range(3)}
    children = tuple(
        MultiScale(
            path=f"c{c}",
            paths=tuple(f"c{c}/s{i}" for i in range(3)),
            transforms=(T, T2, AffineTransform.from_scale_translation([4, 4, 4])),
        )
        for c in range(2)
    )
    s = session(arrays)
    result = s.build_sources(DataSelection(None, [ChannelGroup(path="", children=children)]))
    assert [src.name for src in result.sources] == ["c0", "c1"]
    assert all(src.num_levels == 3 for src in result.sources)
    assert [setup.setup_id for _, setup in result.bound] == [1, 2]


def test_2d_classification_is_batch_wide(session: Callable, viewer: RecordingViewer) -> None:
    s = session({"flat": _vol(4, 4), "flat2": _vol(8, 8), "deep": _vol(4, 4, 4)})
    mixed = s.build_sources(
        DataSelection(
            None,
            [SingleScale(path="flat", transform=T), SingleScale(path="deep", transform=T)],
        )
    )
    assert not mixed.is_2d

    # the 3D entry coming first must not be overridden by a later 2D one
    mixed = s.build_sources(
        DataSelection(
            None,
            [SingleScale(path="deep", transform=T), SingleScale(path="flat", transform=T)],
        )
    )
    assert not mixed.is_2d

    flat = s.show(
        DataSelection(
            None,
            [SingleScale(path="flat", transform=T), SingleScale(path="flat2", transform=T)],
        )
    )
    assert flat.is_2d
    assert viewer.is_2d == [True]
    assert flat.sources[0].get_source(0, 0).shape == (4, 4, 1)


def test_timepoints_are_max_over_sources(session: Callable, viewer: RecordingViewer) -> None:
    s = session(
        {
            "img": _vol(4, 4, 4),
            "movie": _vol(4, 4, 7),
            "short": _vol(4, 4, 3),
        }
    )
    selection = DataSelection(
        None,
        [
            GenericDataset(path="movie", axes=["x", "y", "t"]),
            SingleScale(path="img", transform=T),
            GenericDataset(path="short", axes=["x", "y", "t"]),
        ],
    )
    result = s.show(selection)
    assert result.num_timepoints == 7
    assert len(result.auxiliary_sources) == 2
    assert viewer.num_timepoints == [7]
    # auxiliary sources are registered after the spatial ones
    assert [soc.source.name for soc, *_ in viewer.added] == ["img", "movie", "short"]


def test_generic_dataset_without_axes_is_identity(session: Callable) -> None:
    s = session({"table": _vol(3, 3)})
    result = s.build_sources(DataSelection(None, [GenericDataset(path="table")]))
    (source,) = result.sources
    assert source.get_transform(0, 0) == AffineTransform.identity()


def test_unsupported_pixel_type_skips_only_that_source(session: Callable) -> None:
    s = session({"ok": _vol(4, 4, 4), "weird": _vol(4, 4, 4, dtype="complex64")})
    selection = DataSelection(
        None,
        [SingleScale(path="weird", transform=T), SingleScale(path="ok", transform=T)],
    )
    result = s.build_sources(selection)
    assert [src.name for src in result.sources] == ["ok"]
    assert result.skipped[0].index == 0
    assert "No converter" in result.skipped[0].reason


def test_io_errors_abort_the_batch(session: Callable) -> None:
    s = session({"a": _vol(4, 4, 4)})
    selection = DataSelection(
        None,
        [SingleScale(path="a", transform=T), SingleScale(path="gone", transform=T)],
    )
    with pytest.raises(FileNotFoundError):
        s.build_sources(selection)


def test_add_data_keeps_counting(session: Callable, viewer: RecordingViewer) -> None:
    s = session({"a": _vol(4, 4, 4), "b": _vol(4, 4, 9), "c": _vol(4, 4)})
    s.show(DataSelection(None, [SingleScale(path="a", transform=T)]))
    s.add_data(
        DataSelection(
            None,
            [
                GenericDataset(path="b", axes=["x", "y", "t"]),
                SingleScale(path="c", transform=T),
            ],
        )
    )
    assert [soc.source.name for soc, *_ in viewer.added] == ["a", "c", "b"]
    assert [setup.setup_id for _, setup, _ in viewer.added] == [1, 2, 3]
    assert [ordinal for *_, ordinal in viewer.added] == [0, 1, 2]
    assert viewer.num_timepoints == [1, 9]
    # 2D mode is only decided by show()
    assert viewer.is_2d == [False]


def test_show_needs_a_viewer(numpy_opener: Callable) -> None:
    with ViewerSession(opener=numpy_opener({"a": _vol(2, 2, 2)}), num_workers=1) as s:
        selection = DataSelection(None, [SingleScale(path="a", transform=T)])
        assert len(s.build_sources(selection).bound) == 1
        with pytest.raises(RuntimeError):
            s.show(selection)


def test_close_shuts_down_fetch_queue(numpy_opener: Callable) -> None:
    s = ViewerSession(opener=numpy_opener({}), num_workers=1)
    s.close()
    assert s.fetch_queue.closed


def test_selection_from_container(
    n5_container: Callable[..., Container],
    n5_dataset: Callable[..., dict],
    numpy_opener: Callable,
) -> None:
    container = n5_container(
        {
            "em/s0": n5_dataset([8, 8, 8], downsamplingFactors=[1, 1, 1]),
            "em/s1": n5_dataset([4, 4, 4], downsamplingFactors=[2, 2, 2]),
            "overview": n5_dataset([8, 8], resolution=[16, 16]),
        }
    )
    selection = DataSelection.from_container(container)
    assert [m.path for m in selection.metadata] == ["em", "overview"]

    arrays = {"em/s0": _vol(8, 8, 8), "em/s1": _vol(4, 4, 4), "overview": _vol(8, 8)}
    with ViewerSession(opener=numpy_opener(arrays), num_workers=1) as s:
        result = s.build_sources(selection)
    assert [src.num_levels for src in result.sources] == [2, 1]
    assert result.sources[0].get_transform(0, 1).translation == (0.5, 0.5, 0.5)
    assert not result.is_2d
