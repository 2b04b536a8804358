"""Variant renderer: size-tiered, multi-format encodes keyed by asset id."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Callable, Optional

from imaging import encode_fit_inside, lqip_data_uri
from options import TIERS, ImageOptions
from toolchain import progress_write

MTIME_TOLERANCE_SECONDS = 0.001


@dataclass(frozen=True)
class AssetVariant:
    tier: str
    fmt: str
    path: Path
    url: str


@dataclass
class RenderStats:
    processed: int = 0
    made: int = 0
    skipped: int = 0
    errors: int = 0

    def __add__(self, other: "RenderStats") -> "RenderStats":
        return RenderStats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )


def needs_build(src: Path, dst: Path, rebuild_if_newer: bool) -> bool:
    """A variant is rebuilt when missing, or when the source is newer than it."""
    if not dst.exists():
        return True
    if not rebuild_if_newer:
        return False
    try:
        return src.stat().st_mtime > dst.stat().st_mtime + MTIME_TOLERANCE_SECONDS
    except OSError:
        return True


def sanitize_base_path(base_path: Optional[str]) -> str:
    if not base_path:
        return "assets"
    return base_path.strip("/") or "assets"


def make_url_builder(output_dir: Path, public_base_path: str) -> Callable[[Path], str]:
    base = sanitize_base_path(public_base_path)

    def url_for(path: Path) -> str:
        return "/" + "/".join([base, path.relative_to(output_dir).as_posix()])

    return url_for


def sizes_map(variants: list[AssetVariant]) -> dict[str, dict[str, str]]:
    """Group variant URLs as tier -> format -> URL, in tier order."""
    sizes: dict[str, dict[str, str]] = {}
    for variant in variants:
        sizes.setdefault(variant.tier, {})[variant.fmt] = variant.url
    return sizes


class VariantRenderer:
    def __init__(self, options: ImageOptions) -> None:
        self.options = options
        self.url_for = make_url_builder(options.output_dir, options.public_base_path)

    def ensure_dirs(self) -> None:
        for tier in TIERS:
            (self.options.output_dir / tier).mkdir(parents=True, exist_ok=True)

    def variants_for(self, asset_id: str) -> list[AssetVariant]:
        variants = []
        for tier in TIERS:
            for fmt in self.options.formats:
                path = self.options.output_dir / tier / f"{asset_id}.{fmt}"
                variants.append(AssetVariant(tier, fmt, path, self.url_for(path)))
        return variants

    def render(self, src: Path, asset_id: str) -> tuple[list[AssetVariant], RenderStats]:
        """Encode every tier x format for `src`, skipping up-to-date outputs."""
        stats = RenderStats()
        variants = self.variants_for(asset_id)
        for variant in variants:
            if needs_build(src, variant.path, self.options.rebuild_if_newer):
                encode_fit_inside(
                    src,
                    variant.path,
                    box=self.options.widths[variant.tier],
                    fmt=variant.fmt,
                    quality=self.options.quality_for(variant.tier),
                )
                stats.made += 1
            else:
                stats.skipped += 1
        return variants, stats

    def lqip(self, src: Path) -> Optional[str]:
        settings = self.options.lqip
        if not settings.enabled:
            return None
        return lqip_data_uri(src, size=settings.size, quality=settings.quality)


def _walk_files(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(path for path in root.rglob("*") if path.is_file())


def mirror_dir(src_dir: Path, dst_dir: Path) -> int:
    """Sync `src_dir` into `dst_dir`; returns the number of files copied.

    Stale files are pruned best-effort: a failed removal only warns.
    """
    dst_dir.mkdir(parents=True, exist_ok=True)
    copied = 0
    for src in _walk_files(src_dir):
        dst = dst_dir / src.relative_to(src_dir)
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.exists():
            src_stat, dst_stat = src.stat(), dst.stat()
            if (
                src_stat.st_size == dst_stat.st_size
                and src_stat.st_mtime <= dst_stat.st_mtime + MTIME_TOLERANCE_SECONDS
            ):
                continue
        shutil.copy2(src, dst)
        copied += 1

    for dst in _walk_files(dst_dir):
        if (src_dir / dst.relative_to(dst_dir)).exists():
            continue
        try:
            dst.unlink()
        except OSError as exc:
            progress_write(f"Warning: could not prune mirrored file {dst}: {exc}")
    return copied
