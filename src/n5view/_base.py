from __future__ import annotations

from typing import ClassVar

from pydantic import VERSION, BaseModel, ConfigDict

__all__ = ["_BaseModel", "_FrozenModel"]

# validate_by_name added in pydantic 2.9, populate_by_name deprecated in 2.11
_PYDANTIC_V2_9 = tuple(int(x) for x in VERSION.split(".")[:2]) >= (2, 9)
_by_name_key = "validate_by_name" if _PYDANTIC_V2_9 else "populate_by_name"


class _BaseModel(BaseModel):
    """Base for attribute documents read from a container.

    Unknown keys are ignored: containers routinely carry attributes from
    several conventions side by side.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        validate_default=True,
        **{_by_name_key: True},  # type: ignore[typeddict-item]
    )


class _FrozenModel(_BaseModel):
    """Base for resolved, immutable values (transforms, metadata variants)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
        arbitrary_types_allowed=True,
    )
