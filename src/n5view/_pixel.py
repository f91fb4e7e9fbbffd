"""Pixel type tags of assembled sources."""

from __future__ import annotations

from enum import Enum

import numpy as np

__all__ = ["ARGB_DTYPE", "PixelType", "pixel_type_of", "type_range"]

ARGB_DTYPE = np.dtype([("a", "u1"), ("r", "u1"), ("g", "u1"), ("b", "u1")])
"""Packed color pixels: one byte per channel, alpha first."""


class PixelType(Enum):
    REAL = "real"
    ARGB = "argb"
    VOLATILE_REAL = "volatile_real"
    VOLATILE_ARGB = "volatile_argb"
    OTHER = "other"

    @property
    def is_volatile(self) -> bool:
        return self in (PixelType.VOLATILE_REAL, PixelType.VOLATILE_ARGB)

    def as_volatile(self) -> PixelType:
        return {
            PixelType.REAL: PixelType.VOLATILE_REAL,
            PixelType.ARGB: PixelType.VOLATILE_ARGB,
        }.get(self, self)


def pixel_type_of(dtype: np.dtype | str) -> PixelType:
    """Classify a numpy dtype.

    Integer, float and boolean dtypes are scalar intensities; `ARGB_DTYPE` is
    packed color. Anything else (complex, strings, other records) is OTHER.
    """
    dtype = np.dtype(dtype)
    if dtype == ARGB_DTYPE:
        return PixelType.ARGB
    if dtype.kind in "biuf":
        return PixelType.REAL
    return PixelType.OTHER


def type_range(dtype: np.dtype | str) -> tuple[float, float]:
    """Natural (min, max) of a scalar dtype."""
    dtype = np.dtype(dtype)
    if dtype.kind == "b":
        return 0.0, 1.0
    if dtype.kind in "iu":
        info = np.iinfo(dtype)
        return float(info.min), float(info.max)
    if dtype.kind == "f":
        finfo = np.finfo(dtype)
        return float(finfo.min), float(finfo.max)
    raise TypeError(f"{dtype} is not a scalar dtype")
