#!/usr/bin/env python3
"""
Export an ext2/ext3/ext4 filesystem image into a tar archive without mounting it.

Usage:
  python ext2tar.py disk.img disk.tar                  # pax archive
  python ext2tar.py disk.img disk.tar.gz               # compression from the suffix
  python ext2tar.py disk.img disk.tar --format gnu     # GNU tar headers
  python ext2tar.py disk.img disk.tar -v               # trace every entry
"""

import argparse
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from archive import COMPRESSIONS, FORMATS
from errors import FatalError
from exporter import ExportOptions, ExportSummary, run_export

SUFFIX_COMPRESSION = {
    ".tar.gz": "gz",
    ".tgz": "gz",
    ".tar.bz2": "bz2",
    ".tbz2": "bz2",
    ".tar.xz": "xz",
    ".txz": "xz",
}


def guess_compression(archive_path: str) -> str:
    lowered = archive_path.lower()
    for suffix, compression in SUFFIX_COMPRESSION.items():
        if lowered.endswith(suffix):
            return compression
    return "none"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ext2tar",
        description="Export the contents of an ext2/3/4 image into a tar archive",
    )
    parser.add_argument("image", help="Filesystem image to read")
    parser.add_argument("archive", help="Archive to create")
    parser.add_argument("--format", choices=sorted(FORMATS), default="pax",
                        help="Archive header format (default: pax)")
    parser.add_argument("--compress", choices=COMPRESSIONS, default=None,
                        help="Compression (default: guessed from the archive suffix)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log every exported entry")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only print warnings and errors")
    return parser


def configure_logging(console: Console, verbose: bool = False, quiet: bool = False):
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    handler = RichHandler(console=console, show_time=False, show_path=False)
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)


def print_summary(console: Console, summary: ExportSummary):
    table = Table(title="Export summary")
    table.add_column("Type")
    table.add_column("Entries", justify="right")
    for kind, count in sorted(summary.kinds.items()):
        table.add_row(kind, str(count))
    table.add_row("[bold]exported[/bold]", str(summary.exported))
    if summary.abandoned:
        table.add_row("[yellow]skipped[/yellow]", str(summary.abandoned))
    if summary.partial:
        table.add_row("[yellow]left zero-filled[/yellow]", str(summary.partial))
    table.add_row("file bytes", str(summary.bytes_written))
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console(highlight=False)
    configure_logging(console, verbose=args.verbose, quiet=args.quiet)

    options = ExportOptions(
        format=args.format,
        compression=args.compress or guess_compression(args.archive),
    )
    try:
        summary = run_export(args.image, args.archive, options)
    except FatalError as e:
        console.print(f"[bold red]fatal:[/bold red] {escape(str(e))}")
        return 1

    if not args.quiet:
        print_summary(console, summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
