"""Spatial affine transforms.

All transforms are 3D and map voxel coordinates (x, y, z order, i.e. N5
"dimensions" order) to physical coordinates. 2D transforms are lifted into
3D by appending an identity third axis.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TYPE_CHECKING, TypeAlias

import numpy as np
from pydantic import field_validator

from n5view._base import _FrozenModel

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray
    from typing_extensions import Self

__all__ = ["AffineTransform", "mipmap_transform"]

Row: TypeAlias = tuple[float, float, float, float]


class AffineTransform(_FrozenModel):
    """A 3D affine transform stored as a row-major 3x4 matrix.

    The left 3x3 block is the linear part, the last column the translation.
    """

    matrix: tuple[Row, Row, Row] = (
        (1.0, 0.0, 0.0, 0.0),
        (0.0, 1.0, 0.0, 0.0),
        (0.0, 0.0, 1.0, 0.0),
    )

    @field_validator("matrix")
    @classmethod
    def _check_finite(cls, v: tuple[Row, Row, Row]) -> tuple[Row, Row, Row]:
        if not all(math.isfinite(x) for row in v for x in row):
            raise ValueError("Affine transform entries must be finite.")
        return v

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------

    @classmethod
    def identity(cls) -> Self:
        return cls()

    @classmethod
    def from_matrix(cls, matrix: ArrayLike) -> Self:
        """Build from a 3x4 matrix, or a homogeneous 4x4 matrix.

        2D matrices (2x3 or 3x3 homogeneous) are lifted into 3D.
        """
        arr = np.asarray(matrix, dtype=float)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D matrix, got shape {arr.shape}")
        if arr.shape == (4, 4) or arr.shape == (3, 3):
            arr = arr[:-1]
        if arr.shape == (2, 3):
            return cls._from_array(_lift_2d(arr))
        if arr.shape != (3, 4):
            raise ValueError(
                f"Expected a 3x4 (or 2x3) affine matrix, got shape {arr.shape}"
            )
        return cls._from_array(arr)

    @classmethod
    def from_flat(cls, values: Sequence[float]) -> Self:
        """Build from a flat row-major list of 12 (3D) or 6 (2D) values."""
        if len(values) == 12:
            return cls.from_matrix(np.reshape(values, (3, 4)))
        if len(values) == 6:
            return cls.from_matrix(np.reshape(values, (2, 3)))
        raise ValueError(
            f"A flat affine must have 6 (2D) or 12 (3D) values, got {len(values)}"
        )

    @classmethod
    def from_scale_translation(
        cls,
        scale: Sequence[float],
        translation: Sequence[float] | None = None,
    ) -> Self:
        """Build a diagonal transform from per-axis scale and translation.

        Sequences with 2 entries describe a 2D transform and are lifted.
        """
        n = len(scale)
        if n not in (2, 3):
            raise ValueError(f"Scale must have 2 or 3 entries, got {n}")
        if translation is None:
            translation = [0.0] * n
        if len(translation) != n:
            raise ValueError(
                f"Scale ({n}) and translation ({len(translation)}) lengths differ"
            )
        arr = np.zeros((n, n + 1))
        arr[:, :n] = np.diag(scale)
        arr[:, n] = translation
        return cls.from_matrix(arr)

    @classmethod
    def _from_array(cls, arr: NDArray) -> Self:
        rows = tuple(tuple(float(x) for x in row) for row in arr)
        return cls(matrix=rows)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    def to_numpy(self) -> NDArray[np.float64]:
        """Return the homogeneous 4x4 matrix."""
        out = np.eye(4)
        out[:3] = self.matrix
        return out

    @property
    def linear(self) -> NDArray[np.float64]:
        return np.asarray(self.matrix)[:, :3]

    @property
    def translation(self) -> tuple[float, float, float]:
        return tuple(row[3] for row in self.matrix)  # type: ignore[return-value]

    @property
    def scale_diagonal(self) -> tuple[float, float, float]:
        return tuple(self.matrix[i][i] for i in range(3))  # type: ignore[return-value]

    @property
    def is_invertible(self) -> bool:
        return bool(abs(np.linalg.det(self.linear)) > 1e-12)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def concatenate(self, other: AffineTransform) -> AffineTransform:
        """Return ``self ∘ other`` (apply ``other`` first)."""
        return AffineTransform.from_matrix(self.to_numpy() @ other.to_numpy())

    def inverse(self) -> AffineTransform:
        if not self.is_invertible:
            raise ValueError("Affine transform is not invertible.")
        return AffineTransform.from_matrix(np.linalg.inv(self.to_numpy()))

    def apply(self, points: ArrayLike) -> NDArray[np.float64]:
        """Map one point (shape ``(3,)``) or many (shape ``(N, 3)``)."""
        pts = np.asarray(points, dtype=float)
        return pts @ self.linear.T + np.asarray(self.translation)


def _lift_2d(arr: NDArray) -> NDArray:
    out = np.zeros((3, 4))
    out[:2, :2] = arr[:, :2]
    out[:2, 3] = arr[:, 2]
    out[2, 2] = 1.0
    return out


def mipmap_transform(
    downsampling_factors: Sequence[float],
    pixel_resolution: Sequence[float] | None = None,
) -> AffineTransform:
    """Transform of a downsampled pyramid level in the N5 viewer convention.

    A voxel of a level downsampled by ``f`` covers ``f`` full resolution
    voxels, so its center sits at ``0.5 * (f - 1)``. The pixel resolution is
    applied after the downsampling.

    Examples
    --------
    >>> mipmap_transform([2, 2, 2], [4.0, 4.0, 40.0]).scale_diagonal
    (8.0, 8.0, 80.0)
    >>> mipmap_transform([2, 2, 2], [4.0, 4.0, 40.0]).translation
    (2.0, 2.0, 20.0)
    """
    factors = [float(f) for f in downsampling_factors]
    res = [float(r) for r in pixel_resolution] if pixel_resolution else None
    if res is None:
        res = [1.0] * len(factors)
    if len(factors) != len(res):
        raise ValueError(
            f"downsamplingFactors ({len(factors)}) and pixelResolution "
            f"({len(res)}) lengths differ"
        )
    scale = [f * r for f, r in zip(factors, res)]
    translation = [0.5 * (f - 1) * r for f, r in zip(factors, res)]
    return AffineTransform.from_scale_translation(scale, translation)
