"""Metadata variants produced by the parsers.

`MetadataVariant` is a closed union discriminated on ``kind``. Code that
dispatches on it uses ``match`` with an ``assert_never`` fallthrough, so a new
variant must be handled everywhere.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeAlias

from pydantic import Field, model_validator
from typing_extensions import Self

from n5view._axis import AxesList
from n5view._base import _FrozenModel
from n5view._transform import AffineTransform

__all__ = [
    "ChannelGroup",
    "GenericDataset",
    "GenericSingleScale",
    "MetadataVariant",
    "MultiScale",
    "MultiScaleUnsorted",
    "MultiscaleMetadata",
    "SingleScale",
]

Scheme: TypeAlias = Literal["n5viewer", "cosem", "canonical", "generic"]


class _Metadata(_FrozenModel):
    path: str = Field(description="Path of the node, relative to the container root.")

    @property
    def name(self) -> str:
        return self.path.rstrip("/").rsplit("/", 1)[-1]


class _SingleScaleBase(_Metadata):
    transform: AffineTransform | None = Field(
        default=None,
        description="Voxel to physical transform. None when it could not be read.",
    )
    axis_labels: tuple[str, ...] | None = None


class SingleScale(_SingleScaleBase):
    """One N5 viewer dataset."""

    kind: Literal["single_scale"] = "single_scale"


class GenericSingleScale(_SingleScaleBase):
    """One dataset calibrated by some other convention (COSEM, canonical, ...)."""

    kind: Literal["generic_single_scale"] = "generic_single_scale"
    scheme: Scheme = "generic"


class _MultiScaleBase(_Metadata):
    paths: tuple[str, ...] = ()
    transforms: tuple[AffineTransform | None, ...] = ()

    @model_validator(mode="after")
    def _check_parallel(self) -> Self:
        if len(self.paths) != len(self.transforms):
            raise ValueError(
                f"paths ({len(self.paths)}) and transforms ({len(self.transforms)}) "
                "must have the same length"
            )
        return self


class MultiScale(_MultiScaleBase):
    """A pyramid whose levels are already ordered by its convention."""

    kind: Literal["multi_scale"] = "multi_scale"


class MultiScaleUnsorted(_MultiScaleBase):
    """A pyramid whose discovery order says nothing about resolution order."""

    kind: Literal["multi_scale_unsorted"] = "multi_scale_unsorted"
    scheme: Scheme = "cosem"


MultiscaleMetadata: TypeAlias = Annotated[
    SingleScale | GenericSingleScale | MultiScale | MultiScaleUnsorted,
    Field(discriminator="kind"),
]


class ChannelGroup(_Metadata):
    """A group of independent pyramids, one per channel."""

    kind: Literal["channel_group"] = "channel_group"
    children: tuple[MultiscaleMetadata, ...] = ()
    scheme: Scheme = "n5viewer"

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(c.path for c in self.children)


class GenericDataset(_Metadata):
    """A dataset with no spatial convention, optionally with labelled axes."""

    kind: Literal["generic_dataset"] = "generic_dataset"
    attributes: dict[str, Any] = Field(default_factory=dict)
    axes: AxesList | None = None

    @property
    def axis_labels(self) -> tuple[str, ...] | None:
        return tuple(ax.label for ax in self.axes) if self.axes else None


MetadataVariant: TypeAlias = Annotated[
    SingleScale
    | GenericSingleScale
    | MultiScale
    | MultiScaleUnsorted
    | ChannelGroup
    | GenericDataset,
    Field(discriminator="kind"),
]

MULTISCALE_TYPES = (SingleScale, GenericSingleScale, MultiScale, MultiScaleUnsorted)
"""Runtime counterpart of `MultiscaleMetadata`, for isinstance checks."""
