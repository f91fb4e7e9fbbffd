"""Expand metadata variants into ordered scale levels."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import NamedTuple, overload

from typing_extensions import assert_never

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

__all__ = ["ScaleLevelRef", "resolve", "scale_magnitude", "sort_scales"]

logger = logging.getLogger(__name__)


class ScaleLevelRef(NamedTuple):
    """A dataset path and the transform placing it in physical space."""

    path: str
    transform: AffineTransform


def scale_magnitude(transform: AffineTransform) -> float:
    """Size of a voxel: the geometric mean of the absolute diagonal scales."""
    diag = [abs(d) for d in transform.scale_diagonal]
    return math.prod(diag) ** (1 / len(diag))


def sort_scales(
    paths: Sequence[str], transforms: Sequence[AffineTransform]
) -> list[ScaleLevelRef]:
    """Order scale levels finest first.

    The key is `scale_magnitude`; the sort is stable, so levels of equal
    voxel size keep their discovery order.

    Examples
    --------
    >>> coarse = AffineTransform.from_scale_translation([2, 2, 2])
    >>> fine = AffineTransform.from_scale_translation([1, 1, 1])
    >>> [lvl.path for lvl in sort_scales(["s1", "s0"], [coarse, fine])]
    ['s0', 's1']
    """
    levels = [ScaleLevelRef(p, t) for p, t in zip(paths, transforms, strict=True)]
    return sorted(levels, key=lambda lvl: scale_magnitude(lvl.transform))


def _complete_levels(
    path: str, paths: Sequence[str], transforms: Sequence[AffineTransform | None]
) -> tuple[list[str], list[AffineTransform]]:
    """Drop levels whose transform could not be read."""
    kept_paths, kept = [], []
    for p, t in zip(paths, transforms, strict=True):
        if t is None:
            logger.warning("Dropping scale level %r of %r: no transform", p, path)
            continue
        kept_paths.append(p)
        kept.append(t)
    return kept_paths, kept


@overload
def resolve(variant: ChannelGroup) -> list[list[ScaleLevelRef]]: ...
@overload
def resolve(
    variant: SingleScale | GenericSingleScale | MultiScale | MultiScaleUnsorted | GenericDataset,
) -> list[ScaleLevelRef]: ...
def resolve(
    variant: MetadataVariant,
) -> list[ScaleLevelRef] | list[list[ScaleLevelRef]]:
    """Expand `variant` into its scale levels.

    Single-scale variants give one level, `MultiScale` keeps its order,
    `MultiScaleUnsorted` is sorted finest first, `GenericDataset` gives one
    identity level, and `ChannelGroup` gives one independently resolved list
    per channel. Levels without a transform are dropped, so the result may be
    empty; callers skip such entries.
    """
    match variant:
        case SingleScale() | GenericSingleScale():
            paths, transforms = _complete_levels(
                variant.path, [variant.path], [variant.transform]
            )
            return [ScaleLevelRef(p, t) for p, t in zip(paths, transforms)]
        case MultiScale():
            paths, transforms = _complete_levels(
                variant.path, variant.paths, variant.transforms
            )
            return [ScaleLevelRef(p, t) for p, t in zip(paths, transforms)]
        case MultiScaleUnsorted():
            paths, transforms = _complete_levels(
                variant.path, variant.paths, variant.transforms
            )
            return sort_scales(paths, transforms)
        case ChannelGroup():
            return [resolve(child) for child in variant.children]
        case GenericDataset():
            return [ScaleLevelRef(variant.path, AffineTransform.identity())]
        case _:
            assert_never(variant)
