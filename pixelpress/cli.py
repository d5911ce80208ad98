"""Command line entry point: compress one image to a target size."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .compression import CompressionResult, CompressionService, build_output_filename
from .config import load_config
from .errors import PixelPressError
from .logger import configure_logging

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pixelpress",
        description="Compress a JPEG/PNG image to WebP or AVIF at a target byte size.",
        epilog="Examples:\n"
               "  pixelpress photo.jpg --format webp\n"
               "  pixelpress photo.png --format avif --mode exact --target 50000\n"
               "  pixelpress photo.jpg --format webp --config pixelpress.ini -o out.webp\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input", type=Path, help="Path to a JPEG or PNG image")
    parser.add_argument(
        "-f", "--format",
        choices=["webp", "avif"],
        required=True,
        help="Output codec",
    )
    parser.add_argument(
        "-m", "--mode",
        choices=["exact", "balanced"],
        default="balanced",
        help="exact = zero tolerance, balanced = within the configured tolerance",
    )
    parser.add_argument(
        "-t", "--target",
        type=int,
        default=None,
        help="Target size in bytes (default: from config)",
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Output path (default: descriptive name next to the input)",
    )
    parser.add_argument("-c", "--config", type=Path, default=None, help="INI config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def render_result(result: CompressionResult) -> Table:
    """Render diagnostics of a result as a table."""
    table = Table(title="Compression result", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row(
        "Size", f"{result.byte_size} bytes / {result.size_kb:.1f} KB (target {result.target_bytes})"
    )
    table.add_row("Exact match", "yes" if result.exact_match else "no")
    table.add_row("Quality", str(result.quality))
    table.add_row("Dimensions", f"{result.width}x{result.height}")
    table.add_row("Scale factor", f"{result.scale_factor:g}" if result.scale_factor else "1")
    table.add_row("Phase", result.phase.value)
    table.add_row("Encodes", str(result.iterations_used))
    table.add_row("Time", f"{result.processing_time_ms} ms")
    table.add_row("Cache hit", "yes" if result.cache_hit else "no")
    if result.ssim_score is not None:
        table.add_row("SSIM", f"{result.ssim_score:.4f}")
    table.add_row("Status", result.message)
    return table


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except PixelPressError as e:
        console.print(f"[red]Config error:[/red] {e}")
        return 1

    configure_logging(logging.DEBUG if args.verbose else config.log_level, config.log_file)

    try:
        data = args.input.read_bytes()
    except OSError as e:
        console.print(f"[red]Cannot read {args.input}:[/red] {e}")
        return 1

    service = CompressionService(config)
    try:
        result = service.compress(data, args.format, args.mode, target_bytes=args.target)
    except PixelPressError as e:
        console.print(f"[red]Compression failed:[/red] {e}")
        return 1

    output = args.output or args.input.with_name(build_output_filename(args.input.name, result))
    output.write_bytes(result.buffer)

    console.print(render_result(result))
    console.print(f"Wrote [green]{output}[/green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
