from __future__ import annotations

import itertools
import json
from typing import TYPE_CHECKING, Any, Callable

import numpy as np
import pytest

if TYPE_CHECKING:
    from pathlib import Path

    from n5view import Container

_store_ids = itertools.count()


def _n5_dataset(
    shape: list[int], data_type: str = "uint8", **attrs: Any
) -> dict[str, Any]:
    """attributes.json of an N5 dataset."""
    return {
        "dimensions": shape,
        "blockSize": [min(s, 64) for s in shape],
        "dataType": data_type,
        "compression": {"type": "raw"},
        **attrs,
    }


@pytest.fixture
def n5_dataset() -> Callable[..., dict[str, Any]]:
    return _n5_dataset


@pytest.fixture
def n5_container(tmp_path: Path) -> Callable[..., Container]:
    """Build an in-memory N5 container from ``{path: attributes}``.

    Intermediate groups are created implicitly (N5 needs no group metadata).
    """
    fsspec = pytest.importorskip("fsspec")
    from n5view import open_container

    def _make(nodes: dict[str, dict[str, Any]], root: dict | None = None) -> Container:
        uri = f"memory://{tmp_path.name}_{next(_store_ids)}.n5"
        mapper = fsspec.get_mapper(uri)
        mapper["attributes.json"] = json.dumps(root or {"n5": "4.0.0"}).encode()
        for path, attrs in nodes.items():
            mapper[f"{path}/attributes.json"] = json.dumps(attrs).encode()
        return open_container(uri)

    return _make


@pytest.fixture
def numpy_opener() -> Callable[[dict[str, np.ndarray]], Callable]:
    """Make an array opener serving numpy arrays by dataset path."""

    def _make(arrays: dict[str, np.ndarray]) -> Callable:
        def _open(container: Any, path: str) -> np.ndarray:
            try:
                return arrays[path]
            except KeyError:
                raise FileNotFoundError(f"No dataset at {path!r}") from None

        return _open

    return _make
