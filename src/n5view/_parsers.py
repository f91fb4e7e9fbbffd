"""Metadata parsers and hierarchy discovery.

A parser looks at one node (and, for group parsers, at the metadata already
resolved for its direct children) and either returns a metadata variant or
``None``. Parsers are tried in list order and the first match wins, so more
specific conventions must come before more generic ones.

Dataset nodes are offered to `LEAF_PARSERS`, group nodes to `GROUP_PARSERS`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from pydantic import ValidationError

from n5view._conventions import (
    CanonicalDatasetAttributes,
    CanonicalMultichannelAttributes,
    CanonicalMultiscaleAttributes,
    CanonicalSpatialAttributes,
    CosemAttributes,
    CosemGroupAttributes,
    GenericAttributes,
    N5ViewerAttributes,
    N5ViewerGroupAttributes,
)
from n5view._metadata import (
    ChannelGroup,
    GenericDataset,
    GenericSingleScale,
    MetadataVariant,
    MultiScale,
    MultiScaleUnsorted,
    SingleScale,
)
from n5view._transform import AffineTransform

if TYPE_CHECKING:
    from n5view._container import Container

__all__ = [
    "GROUP_PARSERS",
    "LEAF_PARSERS",
    "DiscoveredNode",
    "MetadataParser",
    "collect_selection",
    "discover",
    "parse_node",
]

logger = logging.getLogger(__name__)

CHANNEL_RE = re.compile(r"^c(\d+)$")
SCALE_RE = re.compile(r"^s(\d+)$")


@dataclass
class DiscoveredNode:
    """One node of a container hierarchy, with its parsed metadata."""

    path: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    shape: tuple[int, ...] | None = None
    data_type: str | None = None
    children: list[DiscoveredNode] = field(default_factory=list)
    metadata: MetadataVariant | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def is_dataset(self) -> bool:
        return self.shape is not None

    @property
    def ndim(self) -> int:
        return len(self.shape) if self.shape is not None else 0

    @property
    def dtype(self) -> np.dtype | None:
        return np.dtype(self.data_type) if self.data_type else None

    def walk(self) -> Iterator[DiscoveredNode]:
        """Yield this node and all descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


class MetadataParser(Protocol):
    def parse(self, node: DiscoveredNode) -> MetadataVariant | None: ...


class _Parser:
    """Base parser: attribute validation errors are a parse-miss."""

    def parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        try:
            return self._parse(node)
        except (ValidationError, ValueError) as e:
            logger.debug("%s declined %r: %s", type(self).__name__, node.path, e)
            return None

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _check_ndim(node: DiscoveredNode, n: int, what: str) -> None:
    if node.ndim != n:
        raise ValueError(
            f"{what} has {n} dimensions but dataset {node.path!r} has {node.ndim}"
        )


def _check_transform(
    node: DiscoveredNode, transform: AffineTransform, n: int, what: str
) -> AffineTransform:
    """Return `transform` if it fits `node` and can be inverted."""
    _check_ndim(node, n, what)
    if not transform.is_invertible:
        raise ValueError(f"{what} of dataset {node.path!r} is not invertible")
    return transform


# ------------------------------------------------------------------------------
# leaf parsers
# ------------------------------------------------------------------------------


class CosemParser(_Parser):
    """Datasets with a COSEM ``transform`` attribute."""

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        if not node.is_dataset or "transform" not in node.attributes:
            return None
        attrs = CosemAttributes.model_validate(dict(node.attributes))
        transform = _check_transform(
            node, attrs.transform.transform(), len(attrs.transform.scale), "COSEM transform"
        )
        return GenericSingleScale(
            path=node.path,
            transform=transform,
            axis_labels=tuple(attrs.transform.axis_labels),
            scheme="cosem",
        )


class N5ViewerSingleScaleParser(_Parser):
    """Datasets with N5 viewer ``pixelResolution``/``downsamplingFactors``."""

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        if not node.is_dataset:
            return None
        attrs = N5ViewerAttributes.model_validate(dict(node.attributes))
        transform = attrs.transform()
        n = len(
            attrs.pixelResolution.dimensions
            if attrs.pixelResolution
            else attrs.downsamplingFactors or ()
        )
        _check_transform(node, transform, n, "N5 viewer calibration")
        return SingleScale(path=node.path, transform=transform)


class CanonicalParser(_Parser):
    """The canonical schema, for datasets and for groups."""

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        if node.is_dataset:
            return self._parse_dataset(node)
        return self._parse_group(node)

    def _parse_dataset(self, node: DiscoveredNode) -> MetadataVariant | None:
        attrs = dict(node.attributes)
        if "spatialTransform" in attrs:
            spatial = CanonicalSpatialAttributes.model_validate(attrs)
            labels = tuple(a.label for a in spatial.axes) if spatial.axes else None
            transform = _check_transform(
                node,
                spatial.spatialTransform.to_affine(),
                spatial.spatialTransform.ndim,
                "Canonical spatial transform",
            )
            return GenericSingleScale(
                path=node.path,
                transform=transform,
                axis_labels=labels,
                scheme="canonical",
            )
        if "axes" in attrs or "axisLabels" in attrs:
            dataset = CanonicalDatasetAttributes.model_validate(attrs)
            _check_ndim(node, len(dataset.axes), "Canonical axes")
            return GenericDataset(path=node.path, attributes=attrs, axes=dataset.axes)
        return None

    def _parse_group(self, node: DiscoveredNode) -> MetadataVariant | None:
        attrs = dict(node.attributes)
        if "multichannels" in attrs:
            CanonicalMultichannelAttributes.model_validate(attrs)
            channels = [
                c.metadata
                for c in node.children
                if isinstance(c.metadata, (MultiScale, MultiScaleUnsorted))
                or _is_canonical_single(c.metadata)
            ]
            if not channels:
                return None
            return ChannelGroup(
                path=node.path,
                children=tuple(channels),  # type: ignore[arg-type]
                scheme="canonical",
            )
        if "multiscales" in attrs and isinstance(attrs["multiscales"], dict):
            CanonicalMultiscaleAttributes.model_validate(attrs)
            levels = [c.metadata for c in node.children if _is_canonical_single(c.metadata)]
            if not levels:
                return None
            return MultiScaleUnsorted(
                path=node.path,
                paths=tuple(m.path for m in levels),  # type: ignore[union-attr]
                transforms=tuple(m.transform for m in levels),  # type: ignore[union-attr]
                scheme="canonical",
            )
        return None


def _is_canonical_single(meta: MetadataVariant | None) -> bool:
    return isinstance(meta, GenericSingleScale) and meta.scheme == "canonical"


class GenericSingleScaleParser(_Parser):
    """Fallback for any 2D or 3D dataset: ``resolution``/``offset`` or identity."""

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        if not node.is_dataset:
            return None
        attrs = GenericAttributes.model_validate(dict(node.attributes))
        transform = attrs.transform(node.ndim)
        if attrs.resolution or attrs.offset:
            n = len(attrs.resolution or attrs.offset or ())
            _check_transform(node, transform, n, "Calibration")
        return GenericSingleScale(path=node.path, transform=transform, scheme="generic")


# ------------------------------------------------------------------------------
# group parsers
# ------------------------------------------------------------------------------


class CosemMultiscaleParser(_Parser):
    """Groups with a COSEM ``multiscales`` list.

    Levels are the children carrying COSEM metadata, in discovery order. When
    no child carries its own metadata, the datasets listed in the group
    attributes are used instead.
    """

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        if not isinstance(node.attributes.get("multiscales"), list):
            return None
        attrs = CosemGroupAttributes.model_validate(dict(node.attributes))
        paths: list[str] = []
        transforms: list[AffineTransform | None] = []
        for child in node.children:
            meta = child.metadata
            if isinstance(meta, GenericSingleScale) and meta.scheme == "cosem":
                paths.append(meta.path)
                transforms.append(meta.transform)
        if not paths:
            by_name = {c.name: c for c in node.children}
            for ds in attrs.multiscales[0].datasets:
                if (child := by_name.get(ds.path)) is not None and child.is_dataset:
                    paths.append(child.path)
                    transforms.append(ds.transform.transform())
        if not paths:
            return None
        return MultiScaleUnsorted(
            path=node.path, paths=tuple(paths), transforms=tuple(transforms), scheme="cosem"
        )


class N5ViewerMultiscaleParser(_Parser):
    """Groups whose children ``s0``, ``s1``, ... are the levels of a pyramid.

    A level uses its own N5 viewer calibration if it has one, and otherwise
    the group's ``scales`` and ``pixelResolution``.
    """

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        try:
            group = N5ViewerGroupAttributes.model_validate(dict(node.attributes))
        except ValidationError:
            group = None

        levels: list[tuple[int, str, AffineTransform | None]] = []
        for child in node.children:
            if not child.is_dataset or not (m := SCALE_RE.match(child.name)):
                continue
            index = int(m.group(1))
            meta = child.metadata
            if isinstance(meta, SingleScale):
                transform = meta.transform
            elif group is not None and index < len(group.scales):
                transform = group.transform(index)
            elif isinstance(meta, GenericSingleScale) and meta.scheme == "generic":
                # COSEM and canonical levels belong to their own group conventions
                transform = meta.transform
            else:
                continue
            levels.append((index, child.path, transform))

        if not levels:
            return None
        levels.sort(key=lambda x: x[0])
        return MultiScale(
            path=node.path,
            paths=tuple(p for _, p, _ in levels),
            transforms=tuple(t for _, _, t in levels),
        )


class N5ViewerMultichannelParser(_Parser):
    """Groups whose children ``c0``, ``c1``, ... are each a pyramid."""

    def _parse(self, node: DiscoveredNode) -> MetadataVariant | None:
        channels = []
        for child in node.children:
            # a channel must be named like one AND hold a pyramid
            m = CHANNEL_RE.match(child.name)
            if m and isinstance(child.metadata, (MultiScale, MultiScaleUnsorted)):
                channels.append((int(m.group(1)), child.metadata))
        if not channels:
            return None
        channels.sort(key=lambda x: x[0])
        return ChannelGroup(path=node.path, children=tuple(m for _, m in channels))


GROUP_PARSERS: tuple[MetadataParser, ...] = (
    CosemMultiscaleParser(),
    N5ViewerMultiscaleParser(),
    CanonicalParser(),
    N5ViewerMultichannelParser(),
)

LEAF_PARSERS: tuple[MetadataParser, ...] = (
    CosemParser(),
    N5ViewerSingleScaleParser(),
    CanonicalParser(),
    GenericSingleScaleParser(),
)


def parse_node(
    node: DiscoveredNode, parsers: Sequence[MetadataParser]
) -> MetadataVariant | None:
    """Return the metadata of the first parser in `parsers` that accepts `node`."""
    for parser in parsers:
        if (meta := parser.parse(node)) is not None:
            logger.debug("%r parsed %r as %s", parser, node.path, meta.kind)
            return meta
    return None


def discover(
    container: Container,
    path: str = "",
    *,
    group_parsers: Sequence[MetadataParser] = GROUP_PARSERS,
    leaf_parsers: Sequence[MetadataParser] = LEAF_PARSERS,
) -> DiscoveredNode:
    """Walk the hierarchy below `path`, parsing the metadata of every node.

    Children are parsed before their parent, so that group parsers can look at
    the metadata of the children.

    Raises
    ------
    OSError
        If the container cannot be read.
    """
    meta = container.metadata(path)
    if meta.node_type == "array":
        node = DiscoveredNode(
            path=path.strip("/"),
            attributes=meta.attributes,
            shape=meta.shape,
            data_type=meta.data_type,
        )
        node.metadata = parse_node(node, leaf_parsers)
        return node

    children = [
        discover(container, p, group_parsers=group_parsers, leaf_parsers=leaf_parsers)
        for _, p in container.list_children(path)
    ]
    node = DiscoveredNode(
        path=path.strip("/"), attributes=meta.attributes, children=children
    )
    node.metadata = parse_node(node, group_parsers)
    return node


def collect_selection(tree: DiscoveredNode) -> list[MetadataVariant]:
    """Return the top-most metadata found in `tree`, in traversal order.

    A node with metadata is selected and its descendants are not visited, so
    the levels of a pyramid are not offered separately from the pyramid.
    """
    if tree.metadata is not None:
        return [tree.metadata]
    return [m for child in tree.children for m in collect_selection(child)]
