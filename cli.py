"""CLI: argument parsing and config-file overrides."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Optional, Sequence

from options import DEFAULT_CONFIG_PATH, PipelineOptions


def apply_cli_overrides(options: PipelineOptions, args: argparse.Namespace) -> PipelineOptions:
    """Flags only ever switch behaviour on; unset flags leave the config value."""
    images = options.images
    upscale = options.upscale

    if args.cleanup:
        images = dataclasses.replace(images, cleanup=True)
    if args.no_rebuild_if_newer:
        images = dataclasses.replace(images, rebuild_if_newer=False)
    if args.skip_upscale:
        upscale = dataclasses.replace(upscale, enabled=False)
    if args.keep_temp:
        upscale = dataclasses.replace(upscale, keep_temp=True)

    return PipelineOptions(images=images, upscale=upscale)


def resolve_config_path(config_arg: Optional[str]) -> Path:
    return Path(config_arg or DEFAULT_CONFIG_PATH).expanduser().resolve()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Upscale originals, render responsive AVIF/WebP variants, and "
            "regenerate the image index"
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Site config JSON with `images` and `upscale` sections",
    )
    stage = parser.add_mutually_exclusive_group()
    stage.add_argument(
        "--skip-upscale",
        action="store_true",
        help="Do not run the upscaler stage; render from the existing working copies",
    )
    stage.add_argument(
        "--upscale-only",
        action="store_true",
        help="Run only the upscaler stage",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Drop records whose source is gone and delete orphaned variant files",
    )
    parser.add_argument(
        "--keep-temp",
        action="store_true",
        help="Copy every intermediate upscale stage into the debug directory",
    )
    parser.add_argument(
        "--no-rebuild-if-newer",
        action="store_true",
        help="Only encode missing variants, ignoring source modification times",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Export OpenTelemetry spans over OTLP/HTTP",
    )

    return parser.parse_args(argv)
