"""Resolve multiscale image metadata into viewer sources."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("n5view")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "uninstalled"

from ._arrays import ArrayOpener, open_tensorstore
from ._binding import (
    ConverterSetup,
    RealARGBColorConverter,
    ScaledARGBConverter,
    SetupIdCounter,
    SourceAndConverter,
    TransformedSource,
    UnsupportedPixelTypeError,
    bind,
)
from ._container import Container, open_container
from ._metadata import (
    ChannelGroup,
    GenericDataset,
    GenericSingleScale,
    MetadataVariant,
    MultiScale,
    MultiscaleMetadata,
    MultiScaleUnsorted,
    SingleScale,
)
from ._parsers import (
    GROUP_PARSERS,
    LEAF_PARSERS,
    DiscoveredNode,
    MetadataParser,
    collect_selection,
    discover,
)
from ._pixel import ARGB_DTYPE, PixelType
from ._resolve import ScaleLevelRef, resolve, sort_scales
from ._source import (
    FetchQueue,
    ImageSource,
    MetadataSource,
    ScaleLevel,
    VolatileBlock,
    VolatileSource,
    assemble,
    build_metadata_sources,
    is_2d_batch,
)
from ._transform import AffineTransform, mipmap_transform
from ._viewer import BuildResult, DataSelection, SkippedEntry, Viewer, ViewerSession

__all__ = [
    "ARGB_DTYPE",
    "GROUP_PARSERS",
    "LEAF_PARSERS",
    "AffineTransform",
    "ArrayOpener",
    "BuildResult",
    "ChannelGroup",
    "Container",
    "ConverterSetup",
    "DataSelection",
    "DiscoveredNode",
    "FetchQueue",
    "GenericDataset",
    "GenericSingleScale",
    "ImageSource",
    "MetadataParser",
    "MetadataSource",
    "MetadataVariant",
    "MultiScale",
    "MultiScaleUnsorted",
    "MultiscaleMetadata",
    "PixelType",
    "RealARGBColorConverter",
    "ScaleLevel",
    "ScaleLevelRef",
    "ScaledARGBConverter",
    "SetupIdCounter",
    "SingleScale",
    "SkippedEntry",
    "SourceAndConverter",
    "TransformedSource",
    "UnsupportedPixelTypeError",
    "Viewer",
    "ViewerSession",
    "VolatileBlock",
    "VolatileSource",
    "assemble",
    "bind",
    "build_metadata_sources",
    "collect_selection",
    "discover",
    "is_2d_batch",
    "mipmap_transform",
    "open_container",
    "open_tensorstore",
    "resolve",
    "sort_scales",
]
