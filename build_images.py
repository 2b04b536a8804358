#!/usr/bin/env python3
"""
Image build pipeline.

Upscales the originals tree, renders the s/s2x/l/l2x variants for every
working copy, and regenerates the full and slim image indexes without ever
writing to the hand-curated metadata file.
"""

from __future__ import annotations

import argparse
import functools
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from PIL import Image, UnidentifiedImageError
from tqdm import tqdm

from cli import apply_cli_overrides, parse_args, resolve_config_path
from errors import IntegrityViolation
from imaging import probe_size
from index_writer import (
    IntegrityGuard,
    collect_garbage,
    read_index,
    sort_records,
    write_index,
    write_slim_index,
)
from metadata import PriorRecords, Reconciler, Record, merge_prior_records
from options import PipelineOptions, describe_options, load_options, validate_options
from toolchain import progress_write, resolve_toolchain
from upscale_images import UpscaleStats, discover_sources, run_upscale_stage
from variants import RenderStats, VariantRenderer, mirror_dir, sizes_map

STILL_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".avif")
DEFAULT_TRACES_ENDPOINT = "http://localhost:4318/v1/traces"

tracer = None


def init_tracing() -> None:
    """Configure an OpenTelemetry tracer exporting spans over OTLP/HTTP."""
    global tracer
    if tracer is not None:
        return

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", DEFAULT_TRACES_ENDPOINT)
    resource = Resource.create({"service.name": "image-build-pipeline"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def _traced(func):
    """Wrap a call in a tracing span when tracing has been initialised."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is not None:
            with tracer.start_as_current_span(func.__name__):
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    return wrapper


@dataclass
class StillsResult:
    records: list[Record] = field(default_factory=list)
    stats: RenderStats = field(default_factory=RenderStats)
    present_sources: set[str] = field(default_factory=set)
    inputs: int = 0
    failures: list[str] = field(default_factory=list)


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


@_traced
def run_upscale(options: PipelineOptions) -> UpscaleStats:
    upscale = options.upscale

    def toolchain_factory():
        return resolve_toolchain(
            waifu2x_path=upscale.waifu2x_path,
            realesrgan_path=upscale.realesrgan_path,
            model_name=upscale.realesrgan_model,
            tools_root=upscale.tools_root,
        )

    return run_upscale_stage(upscale, toolchain_factory)


@_traced
def run_stills(options: PipelineOptions, prior: PriorRecords) -> StillsResult:
    """Render and reconcile every working copy, one file at a time."""
    images = options.images
    inputs = discover_sources(images.originals_dir, STILL_EXTENSIONS)
    result = StillsResult(inputs=len(inputs))
    if not inputs:
        print(f"No source images found in {images.originals_dir}")
        return result

    renderer = VariantRenderer(images)
    renderer.ensure_dirs()
    reconciler = Reconciler(prior)

    for path in tqdm(inputs, desc="Rendering", unit="img"):
        relative_path = path.relative_to(images.originals_dir).as_posix()
        result.present_sources.add(relative_path)
        identity = None
        try:
            identity = reconciler.identify(relative_path, path.stat().st_mtime)
            variants, delta = renderer.render(path, identity.asset_id)
            width, height = probe_size(path)
            record = reconciler.build_record(
                identity,
                relative_path,
                width=width,
                height=height,
                lqip=renderer.lqip(path),
                sizes=sizes_map(variants),
            )
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError) as exc:
            progress_write(f"Error: {relative_path}: {exc}")
            result.failures.append(f"{relative_path}: {exc}")
            result.stats = result.stats + RenderStats(errors=1)
            if identity is not None and identity.prior is not None:
                result.records.append(identity.prior)
            continue

        result.records.append(record)
        result.stats = result.stats + delta + RenderStats(processed=1)

    return result


def select_carried_records(
    prior: PriorRecords,
    present_sources: set[str],
    cleanup: bool,
) -> list[Record]:
    """Prior records nobody claimed this run.

    A record whose source still exists is always kept. One whose source is
    gone is kept unless cleanup mode is on.
    """
    carried = []
    for record in prior.unclaimed():
        source_present = record.get("source") in present_sources
        if source_present or not cleanup:
            carried.append(record)
    return carried


def print_summary(
    upscale_stats: UpscaleStats,
    stills: Optional[StillsResult],
    *,
    record_count: int,
    removed: int,
    elapsed: float,
) -> None:
    print("=" * 60)
    print("Complete!")
    print(
        f"Upscale: upscaled={upscale_stats.total}, skipped={upscale_stats.skipped}, "
        f"once={upscale_stats.once}, twice={upscale_stats.twice}, "
        f"refined={upscale_stats.refined}, fallbacks={upscale_stats.fallbacks}, "
        f"errors={upscale_stats.errors}"
    )
    if stills is not None:
        stats = stills.stats
        print(
            f"Variants: processed={stats.processed}, made={stats.made}, "
            f"skipped={stats.skipped}, errors={stats.errors}"
        )
        for failure in stills.failures:
            print(f"  Failed: {failure}")
    print(f"Records: {record_count} (orphaned variants removed: {removed})")
    print(f"Total time: {format_time(elapsed)}")
    print("=" * 60 + "\n")


@_traced
def run_pipeline(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config)
    if not config_path.exists():
        print(f"Config not found at {config_path}; using defaults.")
    options = apply_cli_overrides(load_options(config_path), args)
    validate_options(options)
    images = options.images

    print("\n" + "=" * 60)
    print("Image build pipeline")
    print("=" * 60)
    print(f"Effective config: {describe_options(options)}")
    print("=" * 60 + "\n")

    guard = IntegrityGuard(images.index_path)
    guard.snapshot()
    total_start = time.time()

    upscale_stats = UpscaleStats()
    if options.upscale.enabled:
        print("Upscaling originals...")
        step_start = time.time()
        upscale_stats = run_upscale(options)
        print(f"  Time: {format_time(time.time() - step_start)}\n")
    else:
        print("Upscale stage disabled.\n")

    if args.upscale_only:
        guard.verify()
        print_summary(
            upscale_stats, None, record_count=0, removed=0, elapsed=time.time() - total_start
        )
        return 0

    prior = merge_prior_records(
        read_index(images.index_path),
        read_index(images.generated_index_path),
    )

    print("Rendering variants...")
    step_start = time.time()
    stills = run_stills(options, prior)
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    if stills.inputs == 0:
        guard.verify()
        print_summary(
            upscale_stats, stills, record_count=0, removed=0, elapsed=time.time() - total_start
        )
        return 0

    carried = select_carried_records(prior, stills.present_sources, images.cleanup)
    records = sort_records(stills.records + carried)
    write_index(images.generated_index_path, records)
    write_slim_index(images.slim_index_path, records)
    print(f"Index written: {images.generated_index_path} ({len(records)} items)")
    print(f"Slim index written: {images.slim_index_path}")

    removed: list[Path] = []
    if images.cleanup:
        kept_ids = {str(record.get("id")) for record in records}
        removed = collect_garbage(images.output_dir, kept_ids)
    if images.public_dir is not None:
        copied = mirror_dir(images.output_dir, images.public_dir)
        print(f"Mirrored {copied} file(s) to {images.public_dir}")

    guard.verify()
    print_summary(
        upscale_stats,
        stills,
        record_count=len(records),
        removed=len(removed),
        elapsed=time.time() - total_start,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)
    if args.trace:
        init_tracing()
    try:
        return run_pipeline(args)
    except IntegrityViolation as exc:
        print(f"Integrity violation: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
