"""Bind assembled sources to display converters.

`bind` chooses a converter from the pixel type of a source, wraps the source
in a `TransformedSource` and returns the pair a viewer registers.
Converters map pixel values to packed ARGB ``uint32`` values.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np
from typing_extensions import assert_never

from n5view._pixel import PixelType, type_range
from n5view._source import VolatileBlock
from n5view._transform import AffineTransform

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from n5view._source import ImageSource, MetadataSource, VolatileSource

    AnySource = ImageSource | VolatileSource | MetadataSource

__all__ = [
    "ConverterSetup",
    "RealARGBColorConverter",
    "ScaledARGBConverter",
    "SetupIdCounter",
    "SourceAndConverter",
    "TransformedSource",
    "UnsupportedPixelTypeError",
    "bind",
]

DISPLAY_RANGE_MAX = 65535.0
WHITE = 0xFFFFFFFF


class UnsupportedPixelTypeError(TypeError):
    """Raised when no converter exists for the pixel type of a source."""


def pack_argb(a: ArrayLike, r: ArrayLike, g: ArrayLike, b: ArrayLike) -> NDArray:
    """Pack 8 bit channels into ``uint32`` ARGB values."""
    a, r, g, b = (np.asarray(c, dtype=np.uint32) & 0xFF for c in (a, r, g, b))
    return (a << 24) | (r << 16) | (g << 8) | b


def unpack_argb(value: int) -> tuple[int, int, int, int]:
    return (value >> 24) & 0xFF, (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF


class _Converter:
    def __init__(self, minimum: float, maximum: float, volatile: bool = False) -> None:
        self.volatile = volatile
        self.set_display_range(minimum, maximum)

    @property
    def display_range(self) -> tuple[float, float]:
        return self._min, self._max

    def set_display_range(self, minimum: float, maximum: float) -> None:
        self._min = float(minimum)
        self._max = float(maximum)

    def _normalize(self, values: NDArray) -> NDArray:
        span = self._max - self._min
        if span == 0:
            return (values > self._min).astype(float)
        return np.clip((values.astype(float) - self._min) / span, 0.0, 1.0)

    def convert(self, values: ArrayLike | VolatileBlock) -> NDArray:
        """Convert pixel values (or a `VolatileBlock`) to packed ARGB.

        Invalid volatile blocks convert to transparent black.
        """
        if isinstance(values, VolatileBlock):
            if not values.valid:
                return np.zeros(np.shape(values.data), dtype=np.uint32)
            values = values.data
        return self._convert(np.asarray(values))

    def _convert(self, values: NDArray) -> NDArray:
        raise NotImplementedError


class RealARGBColorConverter(_Converter):
    """Linear map from scalar intensities to a color."""

    def __init__(
        self,
        minimum: float,
        maximum: float,
        color: int = WHITE,
        volatile: bool = False,
    ) -> None:
        super().__init__(minimum, maximum, volatile)
        self.color = color

    def _convert(self, values: NDArray) -> NDArray:
        a, r, g, b = unpack_argb(self.color)
        v = self._normalize(values)
        return pack_argb(
            a,
            np.rint(v * r).astype(np.uint32),
            np.rint(v * g).astype(np.uint32),
            np.rint(v * b).astype(np.uint32),
        )


class ScaledARGBConverter(_Converter):
    """Rescale each color channel of packed color pixels; alpha is kept."""

    def __init__(
        self, minimum: float = 0, maximum: float = 255, volatile: bool = False
    ) -> None:
        super().__init__(minimum, maximum, volatile)

    def _convert(self, values: NDArray) -> NDArray:
        scaled = [
            np.rint(self._normalize(values[c]) * 255).astype(np.uint32)
            for c in ("r", "g", "b")
        ]
        return pack_argb(values["a"], *scaled)


@dataclass
class ConverterSetup:
    """Display controls for one bound source.

    `setup_id` groups sources in display controls; it is not persisted.
    """

    setup_id: int
    converter: RealARGBColorConverter | ScaledARGBConverter

    @property
    def display_range(self) -> tuple[float, float]:
        return self.converter.display_range

    def set_display_range(self, minimum: float, maximum: float) -> None:
        self.converter.set_display_range(minimum, maximum)

    @property
    def color(self) -> int | None:
        return getattr(self.converter, "color", None)

    def set_color(self, color: int) -> None:
        if not isinstance(self.converter, RealARGBColorConverter):
            raise TypeError("Only intensity converters carry a color")
        self.converter.color = color


class TransformedSource:
    """A source whose placement can be adjusted after it was built.

    The incremental transform is applied on top of the transform of every
    level; geometry and data of the wrapped source are untouched.
    """

    def __init__(self, source: AnySource) -> None:
        self._source = source
        self._incremental = AffineTransform.identity()

    @property
    def wrapped_source(self) -> AnySource:
        return self._source

    @property
    def name(self) -> str:
        return self._source.name

    @property
    def num_levels(self) -> int:
        return self._source.num_levels

    @property
    def num_timepoints(self) -> int:
        return self._source.num_timepoints

    @property
    def pixel_type(self) -> PixelType:
        return self._source.pixel_type

    @property
    def is_2d(self) -> bool:
        return self._source.is_2d

    @property
    def incremental_transform(self) -> AffineTransform:
        return self._incremental

    def set_incremental_transform(self, transform: AffineTransform) -> None:
        self._incremental = transform

    def get_source(self, t: int, level: int) -> Any:
        return self._source.get_source(t, level)

    def get_transform(self, t: int, level: int) -> AffineTransform:
        return self._incremental.concatenate(self._source.get_transform(t, level))

    def __repr__(self) -> str:
        return f"<TransformedSource of {self._source!r}>"


class SourceAndConverter(NamedTuple):
    source: TransformedSource
    converter: RealARGBColorConverter | ScaledARGBConverter


@dataclass
class SetupIdCounter:
    """Hands out setup ids 1, 2, 3, ... for one viewer session."""

    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def next(self) -> int:
        return next(self._ids)


def _intensity_range(dtype: np.dtype) -> tuple[float, float]:
    lo, hi = type_range(dtype)
    clamp = lambda v: max(0.0, min(v, DISPLAY_RANGE_MAX))  # noqa: E731
    return clamp(lo), clamp(hi)


def bind(source: AnySource, setup_id: int) -> tuple[SourceAndConverter, ConverterSetup]:
    """Pair `source` with a converter for its pixel type.

    Raises
    ------
    UnsupportedPixelTypeError
        If the pixel type of `source` has no converter.
    """
    converter: RealARGBColorConverter | ScaledARGBConverter
    pixel_type = source.pixel_type
    match pixel_type:
        case PixelType.REAL | PixelType.VOLATILE_REAL:
            converter = RealARGBColorConverter(
                *_intensity_range(source.dtype),
                color=WHITE,
                volatile=pixel_type.is_volatile,
            )
        case PixelType.ARGB:
            converter = ScaledARGBConverter(0, 255)
        case PixelType.VOLATILE_ARGB:
            converter = ScaledARGBConverter(0, 255, volatile=True)
        case PixelType.OTHER:
            raise UnsupportedPixelTypeError(
                f"No converter for pixels of type {source.dtype} in {source.name!r}"
            )
        case _:
            assert_never(pixel_type)

    wrapped = TransformedSource(source)
    return SourceAndConverter(wrapped, converter), ConverterSetup(setup_id, converter)
