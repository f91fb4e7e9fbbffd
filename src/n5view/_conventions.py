"""Attribute conventions recognized on container nodes.

Each model validates the attributes of one node against one convention. A
`pydantic.ValidationError` while validating means "this node does not follow
the convention" and is handled by the parsers as a parse-miss.

All spatial lists are returned in N5 "dimensions" order (x first).
"""

from __future__ import annotations

import warnings
from typing import Annotated, Any, Literal, TypeAlias

from annotated_types import Len, MinLen
from pydantic import Field, model_validator
from typing_extensions import Self

from n5view._axis import AxesList, AxesMixin
from n5view._base import _BaseModel
from n5view._transform import AffineTransform, mipmap_transform

SpatialList: TypeAlias = Annotated[list[float], Len(min_length=2, max_length=3)]

# ------------------------------------------------------------------------------
# N5 viewer
# ------------------------------------------------------------------------------


class PixelResolution(_BaseModel):
    """Spacing between samples per axis, and its unit.

    Stored either as ``{"dimensions": [...], "unit": "um"}`` or as a bare list.
    """

    dimensions: SpatialList
    unit: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_list(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return {"dimensions": list(v)}
        return v


class N5ViewerAttributes(_BaseModel):
    """Attributes of a single N5 viewer dataset.

    At least one of ``pixelResolution``, ``resolution`` or
    ``downsamplingFactors`` must be present.
    """

    pixelResolution: PixelResolution | None = None
    downsamplingFactors: SpatialList | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolution_alias(cls, v: Any) -> Any:
        # "resolution" is the older spelling of pixelResolution
        if isinstance(v, dict) and "pixelResolution" not in v and "resolution" in v:
            v = {**v, "pixelResolution": v["resolution"]}
        return v

    @model_validator(mode="after")
    def _check_present(self) -> Self:
        if self.pixelResolution is None and self.downsamplingFactors is None:
            raise ValueError("No N5 viewer spatial attributes present.")
        if self.pixelResolution and self.downsamplingFactors:
            n_res = len(self.pixelResolution.dimensions)
            if n_res != len(self.downsamplingFactors):
                raise ValueError(
                    "pixelResolution and downsamplingFactors lengths differ: "
                    f"{n_res} != {len(self.downsamplingFactors)}"
                )
        return self

    def transform(self) -> AffineTransform:
        res = self.pixelResolution.dimensions if self.pixelResolution else None
        factors = self.downsamplingFactors or [1.0] * len(res or ())
        return mipmap_transform(factors, res)

    @property
    def unit(self) -> str | None:
        return self.pixelResolution.unit if self.pixelResolution else None


class N5ViewerGroupAttributes(_BaseModel):
    """Group level pyramid description of the N5 viewer convention.

    ``scales[i]`` holds the downsampling factors of child ``s{i}``.
    """

    scales: Annotated[list[SpatialList], MinLen(1)]
    pixelResolution: PixelResolution | None = None

    def transform(self, level: int) -> AffineTransform:
        res = self.pixelResolution.dimensions if self.pixelResolution else None
        return mipmap_transform(self.scales[level], res)


# ------------------------------------------------------------------------------
# COSEM
# ------------------------------------------------------------------------------


class CosemTransform(_BaseModel):
    """Scale then translation, with labelled axes and units.

    ``order`` gives the indexing convention of the lists: "C" (the default)
    lists axes slowest-varying first, e.g. ``["z", "y", "x"]``.
    """

    order: Literal["C", "F"] = "C"
    axes: Annotated[list[str], Len(min_length=2, max_length=3)]
    units: list[str]
    scale: SpatialList
    translate: SpatialList

    @model_validator(mode="after")
    def _check_lengths(self) -> Self:
        lengths = {len(self.axes), len(self.units), len(self.scale), len(self.translate)}
        if len(lengths) != 1:
            raise ValueError(
                "The length of all arguments must match. "
                f"len(axes) = {len(self.axes)}, len(units) = {len(self.units)}, "
                f"len(scale) = {len(self.scale)}, "
                f"len(translate) = {len(self.translate)}."
            )
        if len(set(self.units)) > 1:
            warnings.warn(
                f"COSEM transform has mixed units {self.units}; "
                "the physical space will not be isotropic.",
                UserWarning,
                stacklevel=2,
            )
        return self

    def _n5_order(self, values: list) -> list:
        return values[::-1] if self.order == "C" else list(values)

    @property
    def axis_labels(self) -> list[str]:
        return self._n5_order(self.axes)

    def transform(self) -> AffineTransform:
        return AffineTransform.from_scale_translation(
            self._n5_order(self.scale), self._n5_order(self.translate)
        )


class CosemAttributes(_BaseModel):
    transform: CosemTransform


class CosemScale(_BaseModel):
    path: str
    transform: CosemTransform


class CosemMultiscale(_BaseModel):
    name: str | None = None
    datasets: list[CosemScale] = Field(default_factory=list)


class CosemGroupAttributes(_BaseModel):
    multiscales: Annotated[list[CosemMultiscale], MinLen(1)]


# ------------------------------------------------------------------------------
# Canonical
# ------------------------------------------------------------------------------


class AffineSpec(_BaseModel):
    type: Literal["affine"] = "affine"
    affine: list[float]

    @property
    def ndim(self) -> int:
        # row-major 2x3 or 3x4
        return {6: 2, 12: 3}.get(len(self.affine), 0)

    def to_affine(self) -> AffineTransform:
        return AffineTransform.from_flat(self.affine)


class ScaleSpec(_BaseModel):
    type: Literal["scale"] = "scale"
    scale: SpatialList
    translation: SpatialList | None = None

    @property
    def ndim(self) -> int:
        return len(self.scale)

    def to_affine(self) -> AffineTransform:
        return AffineTransform.from_scale_translation(self.scale, self.translation)


class SpatialTransform(_BaseModel):
    transform: Annotated[AffineSpec | ScaleSpec, Field(discriminator="type")]
    unit: str | None = None

    @property
    def ndim(self) -> int:
        return self.transform.ndim

    def to_affine(self) -> AffineTransform:
        return self.transform.to_affine()


class CanonicalSpatialAttributes(AxesMixin):
    spatialTransform: SpatialTransform


class CanonicalDatasetAttributes(AxesMixin):
    """A canonical dataset that only labels its axes."""

    axes: AxesList


class CanonicalGroupInfo(_BaseModel):
    name: str | None = None


class CanonicalMultiscaleAttributes(_BaseModel):
    multiscales: CanonicalGroupInfo


class CanonicalMultichannelAttributes(_BaseModel):
    multichannels: CanonicalGroupInfo


# ------------------------------------------------------------------------------
# Generic
# ------------------------------------------------------------------------------


class GenericAttributes(_BaseModel):
    """Calibration stored under plain ``resolution``/``offset`` keys."""

    resolution: SpatialList | None = None
    offset: SpatialList | None = None

    def transform(self, ndim: int) -> AffineTransform:
        n = len(self.resolution or self.offset or [0.0] * ndim)
        scale = self.resolution or [1.0] * n
        return AffineTransform.from_scale_translation(scale, self.offset)
