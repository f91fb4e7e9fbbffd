"""Minimal read-only access to N5 and zarr v2/v3 hierarchies.

Only metadata is read here: node attributes, dataset shape and data type, and
the list of children of a group. Array data is accessed through tensorstore
(see `n5view._arrays`).

Shapes are always reported in N5 "dimensions" order (x first). zarr stores
shapes in C order, so they are reversed on load.

This module requires fsspec for filesystem operations.
"""

from __future__ import annotations

import json
import os
import posixpath
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType, NoneType
from typing import TYPE_CHECKING, Any, ClassVar, Literal, overload

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from typing import TypeVar

    import tensorstore  # type: ignore
    from fsspec import FSMap

    _T = TypeVar("_T")

__all__ = ["ArrayNode", "Container", "GroupNode", "NodeMetadata", "open_container"]

ContainerFormat = Literal["n5", "zarr2", "zarr3"]

N5_ATTRIBUTES = "attributes.json"
# keys of an N5 attributes.json that describe the dataset itself
N5_DATASET_KEYS = ("dimensions", "blockSize", "dataType", "compression")


class NodeMetadata(BaseModel):
    """Metadata of one node, normalized across formats."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="allow", frozen=True)

    format: ContainerFormat
    node_type: Literal["group", "array"]
    attributes: dict[str, Any] = Field(default_factory=dict)
    shape: tuple[int, ...] | None = None
    data_type: str | None = None


def _read_json(mapper: Mapping[str, bytes], key: str) -> dict | None:
    if (data := mapper.get(key.lstrip("/"))) is not None:
        return json.loads(data.decode("utf-8"))
    return None


def _load_zarr_json(prefix: str, mapper: Mapping[str, bytes]) -> NodeMetadata | None:
    if (doc := _read_json(mapper, f"{prefix}zarr.json")) is None:
        return None
    shape = doc.get("shape")
    return NodeMetadata(
        format="zarr3",
        node_type=doc["node_type"],
        attributes=doc.get("attributes", {}),
        shape=tuple(reversed(shape)) if shape is not None else None,
        data_type=doc.get("data_type") if isinstance(doc.get("data_type"), str) else None,
    )


def _load_zarr2(prefix: str, mapper: Mapping[str, bytes]) -> NodeMetadata | None:
    attrs = _read_json(mapper, f"{prefix}.zattrs") or {}
    if _read_json(mapper, f"{prefix}.zgroup") is not None:
        return NodeMetadata(format="zarr2", node_type="group", attributes=attrs)
    if (zarray := _read_json(mapper, f"{prefix}.zarray")) is not None:
        return NodeMetadata(
            format="zarr2",
            node_type="array",
            attributes=attrs,
            shape=tuple(reversed(zarray["shape"])),
            data_type=zarray["dtype"] if isinstance(zarray["dtype"], str) else None,
        )
    return None


def _load_n5(prefix: str, mapper: Mapping[str, bytes]) -> NodeMetadata:
    # in N5 every directory is a group; attributes.json is optional
    attrs = _read_json(mapper, f"{prefix}{N5_ATTRIBUTES}") or {}
    if "dimensions" in attrs and "dataType" in attrs:
        return NodeMetadata(
            format="n5",
            node_type="array",
            attributes={k: v for k, v in attrs.items() if k not in N5_DATASET_KEYS},
            shape=tuple(attrs["dimensions"]),
            data_type=attrs["dataType"],
        )
    return NodeMetadata(format="n5", node_type="group", attributes=attrs)


def _load_node_metadata(
    mapper: Mapping[str, bytes], path: str, format: ContainerFormat
) -> NodeMetadata:
    """Load the metadata of the node at `path`.

    Raises
    ------
    FileNotFoundError
        If no node metadata exists at `path` (zarr formats only; N5 groups need
        no metadata file).
    """
    prefix = f"{path}/" if path else ""
    if format == "zarr3":
        meta = _load_zarr_json(prefix, mapper)
    elif format == "zarr2":
        meta = _load_zarr2(prefix, mapper)
    else:
        meta = _load_n5(prefix, mapper)
    if meta is None:
        raise FileNotFoundError(f"No {format} metadata found at '{prefix}'")
    return meta


def _detect_format(mapper: Mapping[str, bytes]) -> ContainerFormat:
    if "zarr.json" in mapper:
        return "zarr3"
    if ".zgroup" in mapper or ".zarray" in mapper:
        return "zarr2"
    return "n5"


# ---------------------------------------------------


class _CachedMapper(Mapping[str, bytes]):
    """Caching wrapper for FSMap that caches metadata file reads.

    fsspec does NOT cache individual file reads. Discovery reads one small,
    immutable metadata document per node, often more than once (a group parser
    looks at its children), so reads are cached here for the life of the
    container.
    """

    def __init__(self, mapper: FSMap) -> None:
        self._fsmap = mapper
        self._cache: dict[str, bytes | None] = {}

    @overload
    def get(self, key: str, /) -> bytes | None: ...
    @overload
    def get(self, key: str, /, default: bytes) -> bytes: ...
    @overload
    def get(self, key: str, /, default: _T) -> _T: ...
    def get(self, key: str, default: _T | None = None) -> _T | bytes | None:
        if key not in self._cache:
            self._cache[key] = self._fsmap.get(key)
        val = self._cache[key]
        return default if val is None else val

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return not isinstance(self.get(key), NoneType)

    def __iter__(self) -> Iterator[str]:
        return iter(self._fsmap)

    def __len__(self) -> int:
        return len(self._fsmap)

    def __getitem__(self, key: str) -> bytes:
        result = self.get(key)
        if result is None:
            raise KeyError(key)
        return result

    def __getattr__(self, name: str) -> Any:
        return getattr(self._fsmap, name)


class Container:
    """A read-only N5 or zarr hierarchy."""

    def __init__(
        self, store: _CachedMapper | FSMap, format: ContainerFormat | None = None
    ) -> None:
        if not isinstance(store, _CachedMapper):
            store = _CachedMapper(store)
        self._store = store
        self._format: ContainerFormat = format or _detect_format(store)
        self._nodes: dict[str, NodeMetadata] = {}

    @property
    def format(self) -> ContainerFormat:
        return self._format

    @property
    def store(self) -> Mapping[str, bytes]:
        """Return the underlying store mapping (read-only)."""
        return MappingProxyType(self._store)

    def metadata(self, path: str = "") -> NodeMetadata:
        path = _normalize(path)
        if path not in self._nodes:
            meta = _load_node_metadata(self._store, path, self._format)
            if meta.format == "n5" and not meta.attributes:
                if not self._store._fsmap.fs.isdir(self._full_path(path)):
                    raise FileNotFoundError(f"No N5 node found at '{path}'")
            self._nodes[path] = meta
        return self._nodes[path]

    def read_attributes(self, path: str = "") -> Mapping[str, Any]:
        """Return the attributes of the node at `path` as a read-only mapping."""
        return MappingProxyType(self.metadata(path).attributes)

    def list_children(self, path: str = "") -> list[tuple[str, str]]:
        """Return ``(name, path)`` of every child node of `path`, sorted by name."""
        path = _normalize(path)
        if self.metadata(path).node_type == "array":
            return []
        fs = self._store._fsmap.fs
        full = self._full_path(path)
        children = []
        for entry in fs.ls(full, detail=True):
            if entry["type"] != "directory":
                continue
            name = posixpath.basename(entry["name"].rstrip("/"))
            if self._is_node(child := f"{path}/{name}" if path else name):
                children.append((name, child))
        return sorted(children)

    def _is_node(self, path: str) -> bool:
        if self._format == "n5":
            return True
        try:
            self.metadata(path)
        except FileNotFoundError:
            return False
        return True

    def node(self, path: str = "") -> GroupNode | ArrayNode:
        path = _normalize(path)
        meta = self.metadata(path)
        if meta.node_type == "array":
            return ArrayNode(self, path, meta)
        return GroupNode(self, path, meta)

    def open_array(self, path: str) -> ArrayNode:
        node = self.node(path)
        if not isinstance(node, ArrayNode):
            raise ValueError(f"Node '{path}' is a group, not a dataset")
        return node

    def _full_path(self, path: str) -> str:
        root = self._store._fsmap.root.rstrip("/")
        return f"{root}/{path}" if path else root

    @property
    def uri(self) -> str:
        return _store_uri(self._store._fsmap, "")

    def __repr__(self) -> str:
        return f"<Container {self._format} {self.uri}>"


def _normalize(path: str) -> str:
    return str(path).strip("/")


class Node:
    """Base class for container nodes (groups and arrays)."""

    __slots__ = ("_container", "_metadata", "_path")

    def __init__(self, container: Container, path: str, meta: NodeMetadata) -> None:
        self._container = container
        self._path = path
        self._metadata = meta

    @property
    def attrs(self) -> Mapping[str, Any]:
        """Return attributes as a read-only mapping."""
        return MappingProxyType(self._metadata.attributes)

    @property
    def path(self) -> str:
        return self._path

    @property
    def name(self) -> str:
        return self._path.rsplit("/", 1)[-1]

    @property
    def metadata(self) -> NodeMetadata:
        return self._metadata

    @property
    def container(self) -> Container:
        return self._container

    @property
    def store_path(self) -> str:
        """URI of this node, e.g. ``file:///data/sample.n5/raw``."""
        return _store_uri(self._container._store._fsmap, self._path)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.store_path}>"


class GroupNode(Node):
    __slots__ = ()

    def children(self) -> list[GroupNode | ArrayNode]:
        return [self._container.node(p) for _, p in self._container.list_children(self._path)]


class ArrayNode(Node):
    __slots__ = ()

    @property
    def shape(self) -> tuple[int, ...]:
        if self._metadata.shape is None:  # pragma: no cover
            raise ValueError("Array metadata missing 'shape'")
        return self._metadata.shape

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def dtype(self) -> np.dtype:
        if self._metadata.data_type is None:  # pragma: no cover
            raise ValueError("Array metadata missing data type")
        return np.dtype(self._metadata.data_type)

    def to_tensorstore(self) -> tensorstore.TensorStore:
        """Open the array with tensorstore, in tensorstore's native axis order."""
        try:
            import tensorstore as ts  # type: ignore
        except ImportError as e:
            raise ImportError(
                "tensorstore package is required for to_tensorstore().  "
                "Please install with `pip install n5view[tensorstore]`."
            ) from e

        fsmap = self._container._store._fsmap
        kvstore = _fsmap_to_tensorstore_kvstore(fsmap, self._path)
        context = None
        if kvstore["driver"] == "memory":
            context = _memory_context(fsmap, self._path)
        driver = {"n5": "n5", "zarr2": "zarr", "zarr3": "zarr3"}[self._metadata.format]
        spec = {"driver": driver, "kvstore": kvstore}
        return ts.open(spec, read=True, context=context).result()


def open_container(uri: str | os.PathLike | Any) -> Container:
    """Open an N5 or zarr v2/v3 container from a URI.

    Parameters
    ----------
    uri : str | os.PathLike
        The URI of the container (e.g., "https://...", "s3://...",
        "/path/to/file.n5"), or an existing `Container`.

    Raises
    ------
    FileNotFoundError
        If nothing exists at `uri`.
    """
    try:
        from fsspec import FSMap, get_mapper
    except ImportError as e:
        raise ImportError(
            "fsspec package is required for open_container().  "
            "Please install with `pip install n5view[io]` or "
            "`pip install fsspec`."
        ) from e

    if isinstance(uri, Container):
        return uri
    if isinstance(uri, (str, os.PathLike)):
        uri = os.path.expanduser(os.fspath(uri))
    else:  # pragma: no cover
        raise TypeError("uri must be a string or os.PathLike")

    mapper = get_mapper(uri)
    if not isinstance(mapper, FSMap):  # pragma: no cover
        raise TypeError(f"Expected FSMap from get_mapper, got {type(mapper)}")
    if not mapper.fs.exists(mapper.root):
        raise FileNotFoundError(f"No container found at {uri!r}")

    container = Container(_CachedMapper(mapper))
    if container.metadata("").node_type != "group":
        raise ValueError(
            f"Expected root node to be 'group', got '{container.metadata('').node_type}'"
        )
    return container


# ---------------------------------------------------


def _store_uri(mapper: FSMap, path: str) -> str:
    full_path = f"{mapper.root.rstrip('/')}/{path}" if path else mapper.root
    if _protocol(mapper) in ("file", "local"):
        return Path(full_path).as_uri()
    return mapper.fs.unstrip_protocol(full_path)


def _protocol(fsmap: FSMap) -> str:
    protocol = fsmap.fs.protocol
    return protocol[0] if isinstance(protocol, tuple) else protocol


def _join(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path}" if base else path


def _fsmap_to_tensorstore_kvstore(fsmap: FSMap, path: str = "") -> dict[str, Any]:
    """Tensorstore kvstore spec for the node at `path` of an fsspec store.

    ``file``, ``http(s)``, ``s3`` and ``gs``/``gcs`` stores map onto the
    tensorstore driver of the same name. ``memory`` stores map onto a
    tensorstore memory kvstore, which `_memory_context` fills.

    Raises
    ------
    ValueError
        For any other protocol.
    """
    protocol = _protocol(fsmap)
    path = path.strip("/")

    if protocol in ("file", "local"):
        base_path = os.path.abspath(fsmap.root)
        return {"driver": "file", "path": os.path.join(base_path, path) if path else base_path}
    if protocol in ("http", "https"):
        base_url = fsmap.root
        if not base_url.startswith(("http://", "https://")):
            base_url = f"{protocol}://{base_url}"
        return {"driver": "http", "base_url": _join(base_url, path) if path else base_url}
    if protocol in ("s3", "s3a", "gs", "gcs"):
        bucket, _, prefix = fsmap.root.partition("/")
        spec: dict[str, Any] = {
            "driver": "s3" if protocol.startswith("s3") else "gcs",
            "bucket": bucket,
        }
        if path:
            prefix = _join(prefix, path)
        if prefix:
            spec["path"] = prefix
        return spec
    if protocol == "memory":
        return {"driver": "memory"}
    raise ValueError(
        f"Cannot open {protocol!r} stores with tensorstore. "
        "Supported protocols: file, http(s), s3, gs, memory"
    )


def _memory_context(fsmap: FSMap, path: str) -> tensorstore.Context:
    """Copy the node at `path` into a tensorstore memory kvstore.

    fsspec memory stores are invisible to tensorstore, so every key below the
    node is written into a fresh context's memory kvstore.
    """
    import tensorstore as ts  # type: ignore

    context = ts.Context()
    kvstore = ts.KvStore.open({"driver": "memory"}, context=context).result()
    prefix = f"{path.strip('/')}/" if path.strip("/") else ""
    for key in fsmap:
        if key.startswith(prefix):
            kvstore.write(key[len(prefix) :], fsmap[key]).result()
    return context
