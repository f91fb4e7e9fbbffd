"""Command-line interface for n5view."""

from __future__ import annotations

import argparse
import sys

from n5view._container import open_container
from n5view._metadata import ChannelGroup, MetadataVariant
from n5view._parsers import DiscoveredNode, collect_selection, discover
from n5view._resolve import ScaleLevelRef, resolve


def _fmt(values: tuple[float, ...]) -> str:
    return "(" + ", ".join(f"{v:g}" for v in values) + ")"


def print_tree(node: DiscoveredNode, depth: int = 0) -> None:
    """Print the discovered hierarchy with the metadata kind of every node."""
    name = node.name or "/"
    desc = f"{node.shape} {node.data_type}" if node.is_dataset else "group"
    kind = f"  [{node.metadata.kind}]" if node.metadata is not None else ""
    print(f"{'  ' * (depth + 1)}{name}  {desc}{kind}")
    for child in node.children:
        print_tree(child, depth + 1)


def _print_levels(levels: list[ScaleLevelRef], indent: str) -> None:
    if not levels:
        print(f"{indent}(no usable scale levels)")
    for lvl in levels:
        print(
            f"{indent}{lvl.path}  scale={_fmt(lvl.transform.scale_diagonal)} "
            f"translation={_fmt(lvl.transform.translation)}"
        )


def print_selection(selection: list[MetadataVariant]) -> None:
    """Print the resolved scale levels of every selected entry."""
    for i, meta in enumerate(selection, start=1):
        scheme = getattr(meta, "scheme", None)
        suffix = f" ({scheme})" if scheme else ""
        print(f"  [{i}] {meta.kind}{suffix}  {meta.path or '/'}")
        if isinstance(meta, ChannelGroup):
            for child, levels in zip(meta.children, resolve(meta)):
                print(f"      channel {child.name}")
                _print_levels(levels, " " * 8)
        else:
            _print_levels(resolve(meta), " " * 6)


def info_command(args: argparse.Namespace) -> int:
    """Execute the info subcommand.

    Returns
    -------
    int
        Exit code (0 for success, 2 for errors)
    """
    try:
        container = open_container(args.path)
        tree = discover(container)
        selection = collect_selection(tree)
    except Exception as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        return 2

    print(f"Container: {container.uri} ({container.format})")
    print("Tree:")
    print_tree(tree)
    print("Selection:")
    if not selection:
        print("  (no recognised metadata)")
    print_selection(selection)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Parameters
    ----------
    argv : list[str] | None
        Command-line arguments (defaults to sys.argv[1:])

    Returns
    -------
    int
        Exit code
    """
    parser = argparse.ArgumentParser(
        prog="n5view",
        description="Inspect multiscale image metadata in N5 and zarr containers",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    info_parser = subparsers.add_parser(
        "info",
        help="Show the metadata tree and resolved scale levels of a container",
    )
    info_parser.add_argument(
        "path",
        help="Path or URI to the N5 or zarr container",
    )
    info_parser.set_defaults(func=info_command)

    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
