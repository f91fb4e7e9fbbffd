from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import pytest

from n5view import (
    GROUP_PARSERS,
    LEAF_PARSERS,
    AffineTransform,
    ChannelGroup,
    DiscoveredNode,
    GenericDataset,
    GenericSingleScale,
    MultiScale,
    MultiScaleUnsorted,
    SingleScale,
    collect_selection,
    discover,
    resolve,
)
from n5view._parsers import (
    CanonicalParser,
    CosemParser,
    GenericSingleScaleParser,
    N5ViewerMultichannelParser,
    N5ViewerSingleScaleParser,
    parse_node,
)

if TYPE_CHECKING:
    from n5view import Container


def _dataset(path: str, shape: tuple[int, ...] = (8, 8, 8), **attrs: Any) -> DiscoveredNode:
    node = DiscoveredNode(path=path, attributes=attrs, shape=shape, data_type="uint8")
    node.metadata = parse_node(node, LEAF_PARSERS)
    return node


def _group(path: str, children: list[DiscoveredNode], **attrs: Any) -> DiscoveredNode:
    node = DiscoveredNode(path=path, attributes=attrs, children=children)
    node.metadata = parse_node(node, GROUP_PARSERS)
    return node


def _cosem(scale: list[float], translate: list[float] | None = None) -> dict:
    return {
        "axes": ["z", "y", "x"][-len(scale) :],
        "units": ["nm"] * len(scale),
        "scale": scale,
        "translate": translate or [0.0] * len(scale),
    }


def _pyramid(path: str, n: int = 2) -> DiscoveredNode:
    children = [
        _dataset(
            f"{path}/s{i}",
            downsamplingFactors=[2**i] * 3,
            pixelResolution={"dimensions": [4, 4, 40], "unit": "nm"},
        )
        for i in range(n)
    ]
    return _group(path, children)


# ------------------------------------------------------------------------------
# leaf parsers
# ------------------------------------------------------------------------------


def test_n5viewer_single_scale() -> None:
    node = _dataset(
        "s1", downsamplingFactors=[2, 2, 1], pixelResolution={"dimensions": [4, 4, 40]}
    )
    assert isinstance(node.metadata, SingleScale)
    assert node.metadata.transform.scale_diagonal == (8.0, 8.0, 40.0)
    assert node.metadata.transform.translation == (2.0, 2.0, 0.0)


@pytest.mark.parametrize(
    "attrs",
    [{"pixelResolution": [1, 2, 3]}, {"resolution": [1, 2, 3]}],
)
def test_n5viewer_resolution_spellings(attrs: dict) -> None:
    meta = N5ViewerSingleScaleParser().parse(DiscoveredNode("d", attrs, shape=(4, 4, 4)))
    assert isinstance(meta, SingleScale)
    assert meta.transform.scale_diagonal == (1.0, 2.0, 3.0)


def test_cosem_reverses_c_order() -> None:
    node = _dataset("d", transform=_cosem([40.0, 4.0, 2.0], [1.0, 2.0, 3.0]))
    meta = node.metadata
    assert isinstance(meta, GenericSingleScale)
    assert meta.scheme == "cosem"
    assert meta.axis_labels == ("x", "y", "z")
    assert meta.transform.scale_diagonal == (2.0, 4.0, 40.0)
    assert meta.transform.translation == (3.0, 2.0, 1.0)


def test_cosem_mixed_units_warns() -> None:
    attrs = {"transform": {**_cosem([1, 1, 1]), "units": ["nm", "nm", "um"]}}
    with pytest.warns(UserWarning, match="mixed units"):
        meta = CosemParser().parse(DiscoveredNode("d", attrs, shape=(2, 2, 2)))
    assert meta is not None


def test_canonical_spatial() -> None:
    affine = [2, 0, 0, 10, 0, 3, 0, 20, 0, 0, 4, 30]
    node = _dataset(
        "d",
        spatialTransform={"transform": {"type": "affine", "affine": affine}, "unit": "um"},
        axes=[{"label": "x"}, {"label": "y"}, {"label": "z"}],
    )
    meta = node.metadata
    assert isinstance(meta, GenericSingleScale)
    assert meta.scheme == "canonical"
    assert meta.axis_labels == ("x", "y", "z")
    assert meta.transform == AffineTransform.from_flat(affine)


def test_canonical_dataset_with_axes() -> None:
    node = _dataset("d", shape=(3, 5, 7, 11), axisLabels=["x", "y", "z", "t"])
    meta = node.metadata
    assert isinstance(meta, GenericDataset)
    assert meta.axis_labels == ("x", "y", "z", "t")
    assert [ax.type for ax in meta.axes] == ["space", "space", "space", "time"]


def test_generic_fallback() -> None:
    node = _dataset("plain", shape=(16, 16))
    meta = node.metadata
    assert isinstance(meta, GenericSingleScale)
    assert meta.scheme == "generic"
    assert meta.transform == AffineTransform.identity()

    calibrated = _dataset("cal", resolution=[2, 2, 5], offset=[1, 1, 1])
    # "resolution" is also the N5 viewer spelling, which comes first
    assert isinstance(calibrated.metadata, SingleScale)

    meta = GenericSingleScaleParser().parse(
        DiscoveredNode("cal", {"resolution": [2, 2, 5], "offset": [1, 1, 1]}, (4, 4, 4))
    )
    assert isinstance(meta, GenericSingleScale)
    assert meta.transform.translation == (1.0, 1.0, 1.0)


def test_leaf_priority_first_match_wins() -> None:
    attrs = {
        "transform": _cosem([1.0, 2.0, 3.0]),
        "pixelResolution": [9, 9, 9],
    }
    node = _dataset("both", **attrs)
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "cosem"

    reordered = (N5ViewerSingleScaleParser(), CosemParser())
    meta = parse_node(DiscoveredNode("both", attrs, shape=(4, 4, 4)), reordered)
    assert isinstance(meta, SingleScale)


def test_malformed_transform_falls_through() -> None:
    # a 2D COSEM transform on a 3D dataset is a parse-miss
    node = _dataset("d", transform=_cosem([1.0, 1.0]))
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "generic"

    # too many resolution entries
    node = _dataset("d", pixelResolution=[1, 1, 1, 1])
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "generic"


def test_singular_transform_falls_through() -> None:
    node = _dataset("d", transform=_cosem([0.0, 1.0, 1.0]))
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "generic"

    node = _dataset("d", pixelResolution=[4, 0, 40])
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "generic"

    flat = [1, 0, 0, 0, 1, 0, 0, 0, 0, 0, 0, 0]
    node = _dataset("d", spatialTransform={"transform": {"type": "affine", "affine": flat}})
    assert node.metadata.scheme == "generic"


@pytest.mark.parametrize(
    "transform",
    [
        {"type": "affine", "affine": [2, 0, 1, 0, 2, 1]},
        {"type": "scale", "scale": [2, 2]},
    ],
)
def test_canonical_transform_must_match_dataset(transform: dict) -> None:
    node = _dataset("d", shape=(8, 8, 8), spatialTransform={"transform": transform})
    assert isinstance(node.metadata, GenericSingleScale)
    assert node.metadata.scheme == "generic"

    flat = _dataset("d", shape=(8, 8), spatialTransform={"transform": transform})
    assert flat.metadata.scheme == "canonical"


def test_malformed_attributes_never_raise() -> None:
    node = DiscoveredNode("d", {"transform": "nonsense", "axes": 12}, shape=(4, 4, 4))
    for parser in LEAF_PARSERS:
        parser.parse(node)  # no exception
    assert CanonicalParser().parse(node) is None


def test_datasets_beyond_3d_without_axes_have_no_metadata() -> None:
    node = _dataset("d", shape=(2, 2, 2, 2))
    assert node.metadata is None


# ------------------------------------------------------------------------------
# group parsers
# ------------------------------------------------------------------------------


def test_n5viewer_multiscale_orders_by_index() -> None:
    children = [
        _dataset("g/s10", downsamplingFactors=[4, 4, 4]),
        _dataset("g/s2", downsamplingFactors=[2, 2, 2]),
        _dataset("g/s0", downsamplingFactors=[1, 1, 1]),
        _dataset("g/other", downsamplingFactors=[1, 1, 1]),
    ]
    meta = _group("g", children).metadata
    assert isinstance(meta, MultiScale)
    assert meta.paths == ("g/s0", "g/s2", "g/s10")


def test_n5viewer_multiscale_uses_group_scales() -> None:
    children = [_dataset("g/s0", shape=(8, 8, 8)), _dataset("g/s1", shape=(4, 4, 4))]
    meta = _group(
        "g", children, scales=[[1, 1, 1], [2, 2, 2]], pixelResolution=[1, 1, 10]
    ).metadata
    assert isinstance(meta, MultiScale)
    assert meta.transforms[1].scale_diagonal == (2.0, 2.0, 20.0)
    assert meta.transforms[1].translation == (0.5, 0.5, 5.0)


def test_channel_group_selects_only_multiscale_channels() -> None:
    root = _group(
        "root",
        [
            _pyramid("root/c0"),
            _pyramid("root/c1"),
            _pyramid("root/other"),
            _dataset("root/c2"),
        ],
    )
    meta = root.metadata
    assert isinstance(meta, ChannelGroup)
    assert [c.path for c in meta.children] == ["root/c0", "root/c1"]
    assert all(isinstance(c, MultiScale) for c in meta.children)


def test_channel_group_sorted_by_channel_index() -> None:
    root = _group("r", [_pyramid("r/c10"), _pyramid("r/c2")])
    assert root.metadata.paths == ("r/c2", "r/c10")


def test_channel_group_empty_is_no_match() -> None:
    node = DiscoveredNode("r", children=[_dataset("r/c0"), _dataset("r/c1")])
    assert N5ViewerMultichannelParser().parse(node) is None


def test_cosem_multiscale() -> None:
    children = [
        _dataset("g/s1", transform=_cosem([2.0, 2.0, 2.0])),
        _dataset("g/s0", transform=_cosem([1.0, 1.0, 1.0])),
    ]
    meta = _group("g", children, multiscales=[{"name": "g", "datasets": []}]).metadata
    assert isinstance(meta, MultiScaleUnsorted)
    assert meta.scheme == "cosem"
    # discovery order is kept; sorting is the resolver's job
    assert meta.paths == ("g/s1", "g/s0")


def test_cosem_multiscale_from_group_attributes() -> None:
    children = [_dataset("g/s0", shape=(8, 8, 8)), _dataset("g/s1", shape=(4, 4, 4))]
    datasets = [
        {"path": "s0", "transform": _cosem([1.0, 1.0, 1.0])},
        {"path": "s1", "transform": _cosem([2.0, 2.0, 2.0])},
        {"path": "missing", "transform": _cosem([4.0, 4.0, 4.0])},
    ]
    meta = _group("g", children, multiscales=[{"datasets": datasets}]).metadata
    assert isinstance(meta, MultiScaleUnsorted)
    assert meta.paths == ("g/s0", "g/s1")
    assert meta.transforms[1].scale_diagonal == (2.0, 2.0, 2.0)


def test_canonical_groups() -> None:
    def level(path: str, s: float) -> DiscoveredNode:
        return _dataset(
            path, spatialTransform={"transform": {"type": "scale", "scale": [s, s, s]}}
        )

    ms = _group("a", [level("a/big", 2.0), level("a/small", 1.0)], multiscales={"name": "a"})
    assert isinstance(ms.metadata, MultiScaleUnsorted)
    assert ms.metadata.scheme == "canonical"
    assert ms.metadata.paths == ("a/big", "a/small")

    mc = _group("root", [ms, _dataset("root/x")], multichannels={"name": "root"})
    assert isinstance(mc.metadata, ChannelGroup)
    assert mc.metadata.scheme == "canonical"
    assert mc.metadata.paths == ("a",)


def test_canonical_pyramid_named_like_n5_levels_is_sorted() -> None:
    def level(path: str, s: float) -> DiscoveredNode:
        return _dataset(
            path, spatialTransform={"transform": {"type": "scale", "scale": [s, s, s]}}
        )

    node = _group("a", [level("a/s0", 2.0), level("a/s1", 1.0)], multiscales={"name": "a"})
    meta = node.metadata
    assert isinstance(meta, MultiScaleUnsorted)
    assert meta.scheme == "canonical"
    assert [lvl.path for lvl in resolve(meta)] == ["a/s1", "a/s0"]


# ------------------------------------------------------------------------------
# discovery
# ------------------------------------------------------------------------------


def test_discover_n5_tree(
    n5_container: Callable[..., Container], n5_dataset: Callable[..., dict]
) -> None:
    res = {"pixelResolution": {"dimensions": [4, 4, 40], "unit": "nm"}}
    container = n5_container(
        {
            "volume/c0/s0": n5_dataset([64, 64, 8], downsamplingFactors=[1, 1, 1], **res),
            "volume/c0/s1": n5_dataset([32, 32, 8], downsamplingFactors=[2, 2, 1], **res),
            "volume/c1/s0": n5_dataset([64, 64, 8], downsamplingFactors=[1, 1, 1], **res),
            "volume/notes": {"description": "not an image"},
            "labels": n5_dataset([64, 64], "uint64"),
        }
    )
    tree = discover(container)
    assert [c.name for c in tree.children] == ["labels", "volume"]

    volume = tree.children[1]
    assert isinstance(volume.metadata, ChannelGroup)
    assert volume.metadata.paths == ("volume/c0", "volume/c1")

    selection = collect_selection(tree)
    assert [m.path for m in selection] == ["labels", "volume"]
    assert isinstance(selection[0], GenericSingleScale)


def test_discover_custom_parsers(
    n5_container: Callable[..., Container], n5_dataset: Callable[..., dict]
) -> None:
    container = n5_container({"d": n5_dataset([4, 4, 4], resolution=[1, 2, 3])})
    tree = discover(container, leaf_parsers=(GenericSingleScaleParser(),))
    meta = tree.children[0].metadata
    assert isinstance(meta, GenericSingleScale)
    assert meta.transform.scale_diagonal == (1.0, 2.0, 3.0)
