"""Axis descriptions of labelled datasets."""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeAlias

from pydantic import Discriminator, Field, Tag, WrapValidator, model_validator

from ._base import _BaseModel

SPACE_LABELS = ("x", "y", "z")
TIME_LABELS = ("t", "time")
CHANNEL_LABELS = ("c", "ch", "channel")


def infer_axis_type(label: str) -> str | None:
    """Infer the axis type from its label: x/y/z space, t time, c channel."""
    lower = label.lower()
    if lower in SPACE_LABELS:
        return "space"
    if lower in TIME_LABELS:
        return "time"
    if lower in CHANNEL_LABELS:
        return "channel"
    return None


class _AxisBase(_BaseModel):
    label: str = Field(description="The label of the axis, e.g. 'x' or 't'.")
    unit: str | None = None


# "type" is the discriminator; when it is missing it is inferred from the
# label, and anything unrecognized falls back to CustomAxis.


class CustomAxis(_AxisBase):
    type: str | None = None


class SpaceAxis(_AxisBase):
    type: Literal["space"] = "space"


class TimeAxis(_AxisBase):
    type: Literal["time"] = "time"


class ChannelAxis(_AxisBase):
    type: Literal["channel"] = "channel"


def _axis_discriminator(v: Any) -> str:
    if isinstance(v, dict):
        t = v.get("type") or infer_axis_type(str(v.get("label", "")))
    else:
        t = getattr(v, "type", None)

    if t in ("space", "time", "channel"):
        return t
    return "custom"


def _coerce_axis(v: Any) -> Any:
    # a bare string is shorthand for {"label": ...}
    if isinstance(v, str):
        return {"label": v}
    return v


Axis: TypeAlias = Annotated[
    Annotated[SpaceAxis, Tag("space")]
    | Annotated[TimeAxis, Tag("time")]
    | Annotated[ChannelAxis, Tag("channel")]
    | Annotated[CustomAxis, Tag("custom")],
    Discriminator(_axis_discriminator),
]


def _validate_axes_list(axes: list[Axis]) -> list[Axis]:
    labels = [ax.label for ax in axes]
    if len(labels) != len(set(labels)):
        raise ValueError(f"Axis labels must be unique. Found duplicates in {labels}")
    if len([ax for ax in axes if ax.type == "space"]) > 3:
        raise ValueError("There can be at most 3 axes of type 'space'.")
    if len([ax for ax in axes if ax.type == "time"]) > 1:
        raise ValueError("There can be at most 1 axis of type 'time'.")
    return axes


AxesList: TypeAlias = Annotated[
    list[Axis],
    WrapValidator(
        lambda v, h: _validate_axes_list(
            h([_coerce_axis(x) for x in v] if isinstance(v, list) else v)
        )
    ),
]


class AxesMixin(_BaseModel):
    """Axis labels as found on canonical datasets."""

    axes: AxesList | None = None

    @model_validator(mode="before")
    @classmethod
    def _axes_from_labels(cls, v: Any) -> Any:
        # some writers store plain labels under "axisLabels"
        if isinstance(v, dict) and "axes" not in v and "axisLabels" in v:
            v = {**v, "axes": v["axisLabels"]}
        return v
