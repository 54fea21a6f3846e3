#!/usr/bin/env python3
"""
imgpipe - image editing and analysis from the command line.

A thin layer over PipelineOrchestrator: it parses options, runs one pipeline
and prints the outcome with rich. Regions are printed in pixel/top-left
coordinates.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .core.analysis import AnalysisKind, AnalysisRequest, BarcodeSymbology
from .core.errors import ErrorKind, PipelineError
from .core.filter_chain import STAGE_SPECS, FilterChain, parse_stage_text
from .core.geometry import Rect
from .core.orchestrator import PipelineOrchestrator
from .core.transform_ops import Crop, Flip, Resize, Rotate
from .utils.config import Config, parse_languages
from .utils.logging import configure_package_logging

console = Console()


def _describe_error(error: PipelineError) -> Tuple[str, int]:
    """Console markup and exit code for a pipeline error."""
    message = escape(str(error))
    kind = error.kind
    if kind is ErrorKind.CANCELLED:
        return f"[yellow]No result produced: {message}[/yellow]", 0
    if kind is ErrorKind.ANALYSIS_UNSUPPORTED:
        return f"[yellow]Not available ({kind.value}): {message}[/yellow]", 1
    if kind is ErrorKind.NO_RESULTS:
        return f"[yellow]No results ({kind.value}): {message}[/yellow]", 1
    if kind.is_parameter_error:
        return f"[red]Invalid parameter ({kind.value}): {message}[/red]", 1
    return f"[red]Error ({kind.value}): {message}[/red]", 1


def _fail(error: PipelineError) -> None:
    markup, exit_code = _describe_error(error)
    console.print(markup)
    sys.exit(exit_code)


def _parse_size(text: str) -> Tuple[int, int]:
    try:
        width, height = (int(part) for part in text.lower().split('x'))
    except ValueError:
        raise click.BadParameter(f"expected WIDTHxHEIGHT, got '{text}'")
    return width, height


def _parse_rect(text: str) -> Rect:
    try:
        x, y, w, h = (float(part) for part in text.split(','))
    except ValueError:
        raise click.BadParameter(f"expected x,y,width,height, got '{text}'")
    return Rect.pixel(x, y, w, h)


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
@click.option('--log-file', type=click.Path(), help='Also write logs to this file')
@click.version_option(version=__version__, prog_name='imgpipe')
@click.pass_context
def cli(ctx, config, verbose, log_file):
    """
    imgpipe - image editing and analysis pipeline

    Edit images with geometric transforms and filter chains, or run
    content analysis with ranked, thresholded results.
    """
    ctx.obj = Config.load(config) if config else Config()
    if verbose:
        ctx.obj.update(verbose=True)
    if log_file:
        ctx.obj.update(log_file=Path(log_file))

    configure_package_logging(
        logging.DEBUG if ctx.obj.verbose else logging.WARNING,
        log_file=ctx.obj.log_file,
        redact_paths=ctx.obj.redact_paths,
    )


@cli.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', 'output_path', type=click.Path(dir_okay=False), required=True,
              help='Output image path')
@click.option('--resize', 'size', help='Target size as WIDTHxHEIGHT')
@click.option('--width', type=int, help='Target width')
@click.option('--height', type=int, help='Target height')
@click.option('--no-aspect', is_flag=True, help='Stretch to both dimensions instead of fitting')
@click.option('--crop', help='Crop region x,y,width,height (pixels, top-left origin)')
@click.option('--rotate', 'degrees', type=float, help='Rotate clockwise by degrees')
@click.option('--flip-h', is_flag=True, help='Mirror left-right')
@click.option('--flip-v', is_flag=True, help='Mirror top-bottom')
@click.option('--filter', 'filters', multiple=True,
              help='Filter stage as name or name:key=value,... (repeatable, applied in order)')
@click.option('--format', 'output_format', help='Output format (png, jpg, tiff, bmp, webp, gif)')
@click.option('--quality', type=click.FloatRange(0.0, 1.0), help='Lossy quality 0-1')
@click.pass_obj
def edit(config, input_path, output_path, size, width, height, no_aspect, crop, degrees,
         flip_h, flip_v, filters, output_format, quality):
    """
    Crop, resize, rotate, flip and filter an image.

    Transforms run in the order crop, resize, rotate, flip; filters run
    after them in the order given.
    """
    if size:
        width, height = _parse_size(size)

    transforms = []
    if crop:
        transforms.append(Crop(_parse_rect(crop)))
    if width is not None or height is not None:
        transforms.append(Resize(width, height, config.maintain_aspect_ratio and not no_aspect))
    if degrees:
        transforms.append(Rotate(degrees))
    if flip_h or flip_v:
        transforms.append(Flip(flip_h, flip_v))

    orchestrator = PipelineOrchestrator(config)
    try:
        chain = FilterChain.from_names(orchestrator.provider, [parse_stage_text(text) for text in filters])
    except PipelineError as e:
        _fail(e)

    with console.status("Editing...", spinner="dots"):
        result = orchestrator.run_edit(input_path, output_path, transforms, chain,
                                       format=output_format, quality=quality)

    if not result.ok:
        _fail(result.error)

    console.print(f"[green][OK] Saved {result.image.width}x{result.image.height} image to {output_path}[/green]")


@cli.command()
@click.argument('kind')
@click.argument('image_paths', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--threshold', '-t', type=click.FloatRange(0.0, 1.0),
              help='Minimum confidence (defaults per kind from config)')
@click.option('--limit', '-n', type=click.IntRange(min=0), help='Maximum results to show')
@click.option('--accuracy', help='Optical flow accuracy: low, medium, high, veryhigh')
@click.option('--quality', help='Segmentation quality: fast, balanced, accurate')
@click.option('--saliency-type', help='Saliency type: attention, objectness')
@click.option('--symbology', help='Comma-separated barcode symbologies to keep')
@click.option('--landmarks', is_flag=True, help='Report dense face landmarks')
@click.option('--languages', help='Comma-separated text recognition languages, e.g. zh-Hans,en')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_obj
def analyze(config, kind, image_paths, threshold, limit, accuracy, quality, saliency_type,
            symbology, landmarks, languages, output_format):
    """
    Run an analysis KIND on one image, or two for optical_flow and alignment.
    """
    orchestrator = PipelineOrchestrator(config)
    try:
        analysis_kind = AnalysisKind.parse(kind)
        options = orchestrator.default_options(
            analysis_kind,
            threshold=threshold,
            limit=limit,
            accuracy=accuracy,
            quality=quality,
            saliency_type=saliency_type,
            symbologies=BarcodeSymbology.parse_list(symbology) if symbology else None,
            landmarks=landmarks or None,
            languages=parse_languages(languages) if languages is not None else None,
        )
    except PipelineError as e:
        _fail(e)

    request = AnalysisRequest(analysis_kind, options)
    paths: List[str] = list(image_paths)
    report = asyncio.run(orchestrator.run_analysis(paths if len(paths) > 1 else paths[0], request))

    if output_format == 'json':
        console.print_json(data=report.to_dict())
        if not report.ok:
            sys.exit(_describe_error(report.error)[1])
        return

    if not report.ok:
        _fail(report.error)

    if not report.observations:
        console.print(f"[yellow]No {analysis_kind.value} results[/yellow]")
        return

    width, height = report.image_size
    table = Table(title=f"{analysis_kind.value} ({report.displayed_count} of {report.total_count})")
    table.add_column("#", style="cyan")
    table.add_column("Confidence", style="green")
    table.add_column("Region (x, y, w, h)", style="blue")
    table.add_column("Details", style="white")

    for i, observation in enumerate(report.observations, 1):
        region = observation.pixel_region(width, height).rounded()
        details = observation.payload.to_dict() if observation.payload is not None else {}
        table.add_row(
            str(i),
            f"{observation.confidence:.3f}",
            f"{region.x:.0f}, {region.y:.0f}, {region.width:.0f}, {region.height:.0f}",
            ", ".join(f"{k}={v}" for k, v in details.items()),
        )

    console.print(table)
    if report.displayed_count < report.total_count:
        console.print(f"[dim]... {report.total_count - report.displayed_count} more below the limit[/dim]")


@cli.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', 'output_path', type=click.Path(dir_okay=False), required=True,
              help='Output image path')
@click.option('--format', 'output_format', help='Output format (png, jpg, tiff, bmp, webp, gif)')
@click.option('--quality', type=click.FloatRange(0.0, 1.0), help='Lossy quality 0-1')
@click.pass_obj
def scan(config, input_path, output_path, output_format, quality):
    """
    Find a document in a photo and save it perspective-corrected.

    The most confident rectangle found is mapped onto its bounding box.
    """
    orchestrator = PipelineOrchestrator(config)
    with console.status("Scanning...", spinner="dots"):
        result = asyncio.run(orchestrator.run_scan(input_path, output_path,
                                                   format=output_format, quality=quality))

    if not result.ok:
        _fail(result.error)

    console.print(f"[green][OK] Saved {result.image.width}x{result.image.height} scan to {output_path}[/green]")


@cli.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', 'output_path', type=click.Path(dir_okay=False),
              help='Output path (default: <name>_meta next to the input)')
@click.option('--set-comment', 'comment', help='Set the EXIF user comment')
@click.option('--clear-gps', is_flag=True, help='Remove GPS location tags')
@click.option('--clear-all', is_flag=True, help='Remove all EXIF tags except orientation')
@click.pass_obj
def meta(config, input_path, output_path, comment, clear_gps, clear_all):
    """Write a copy of an image with edited EXIF metadata."""
    if comment is None and not clear_gps and not clear_all:
        raise click.UsageError("nothing to change; pass --set-comment, --clear-gps or --clear-all "
                               "(use 'info' to show metadata)")

    orchestrator = PipelineOrchestrator(config)
    result = orchestrator.update_metadata(input_path, output_path, comment=comment,
                                          clear_gps=clear_gps, clear_all=clear_all)
    if not result.ok:
        _fail(result.error)

    console.print(f"[green][OK] Wrote metadata to {result.output_path}[/green]")


@cli.command('filters')
def list_filters():
    """List filter stages and their parameter domains."""
    table = Table(title="Filter Stages")
    table.add_column("Stage", style="cyan")
    table.add_column("Parameters", style="green")
    table.add_column("Description", style="white")

    for spec in STAGE_SPECS.values():
        params = "; ".join(f"{name} {domain.describe()}" for name, domain in spec.params.items())
        table.add_row(spec.name, params or "-", spec.description)

    console.print(table)


@cli.command()
@click.argument('image_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
@click.pass_obj
def info(config, image_path, output_json):
    """Show dimensions, format and metadata of an image."""
    orchestrator = PipelineOrchestrator(config)
    try:
        image_info = orchestrator.info(image_path)
    except PipelineError as e:
        _fail(e)

    if output_json:
        console.print_json(data=image_info.to_dict())
        return

    table = Table(title="Image Info")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Size", f"{image_info.width}x{image_info.height}")
    table.add_row("Format", image_info.format)
    table.add_row("Mode", image_info.mode)
    table.add_row("Alpha", "yes" if image_info.has_alpha else "no")
    table.add_row("DPI", f"{image_info.dpi[0]:g}x{image_info.dpi[1]:g}")
    table.add_row("Orientation", str(image_info.orientation))
    for key, value in image_info.metadata.items():
        if not isinstance(value, (dict, list)):
            table.add_row(key, str(value))

    console.print(table)


def main(argv: Optional[List[str]] = None):
    cli(args=argv)


if __name__ == '__main__':
    main()
