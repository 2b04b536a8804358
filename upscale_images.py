"""
Upscale decision engine (waifu2x + optional Real-ESRGAN refinement).

Each source image is classified by its longest side into a tier, and the tier
decides which upscaler passes produce its single working copy in the
upscaled directory. Every invocation, skip and error is appended to a TSV
audit log.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from PIL import Image, UnidentifiedImageError
from tqdm import tqdm

from errors import ToolInvocationError
from imaging import flatten_onto_white, is_near_black, probe_size
from options import UpscaleOptions
from toolchain import Toolchain, progress_write, run_subprocess

AUDIT_HEADER = ("timestamp", "src", "out", "method", "model", "scale", "extra")
MTIME_TOLERANCE_SECONDS = 0.001
SUBPROCESS_TIMEOUT_SECONDS = 600
STAGE_DIR_PREFIX = ".upscale-"


class UpscaleTier(str, Enum):
    SKIP = "skip"
    EASY = "easy"
    MID = "mid"
    HARD = "hard"


@dataclass(frozen=True)
class Thresholds:
    target: int = 2000
    easy: int = 700
    hard: int = 250


@dataclass(frozen=True)
class SourceImage:
    path: Path
    relative_path: str
    width: int
    height: int
    mtime: float

    @property
    def max_side(self) -> int:
        return max(self.width, self.height)


@dataclass(frozen=True)
class UpscaleStep:
    tool: str  # "waifu2x" or "realesrgan"
    noise: int = 0
    scale: int = 2
    tag: str = ""


@dataclass(frozen=True)
class UpscalePlan:
    """Passes for one tier.

    `primary` always runs. `refine` runs when the refinement tool is
    available; `completion` runs instead of it when the tool is missing or
    when its output is rejected as a black frame.
    """

    tier: UpscaleTier
    primary: tuple[UpscaleStep, ...] = ()
    refine: Optional[UpscaleStep] = None
    completion: tuple[UpscaleStep, ...] = ()

    @property
    def passes(self) -> int:
        if self.refine is not None:
            return len(self.primary) + 1
        return len(self.primary) + len(self.completion)


@dataclass(frozen=True)
class ToolInvocation:
    method: str
    model: str
    scale: int
    src: Path
    out: Path


@dataclass
class UpscaleJob:
    source: Path
    destination: Path
    tier: UpscaleTier
    invocations: list[ToolInvocation] = field(default_factory=list)
    black_frame: Optional[bool] = None


@dataclass
class UpscaleStats:
    total: int = 0
    skipped: int = 0
    once: int = 0
    twice: int = 0
    refined: int = 0
    fallbacks: int = 0
    errors: int = 0

    def __add__(self, other: "UpscaleStats") -> "UpscaleStats":
        return UpscaleStats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )


# ── Decision ───────────────────────────────────────────────────────────────────


def classify_tier(max_side: int, thresholds: Thresholds) -> UpscaleTier:
    """Map the longest pixel side onto a tier; the only input is the dimension."""
    if max_side >= thresholds.target:
        return UpscaleTier.SKIP
    if max_side >= thresholds.easy:
        return UpscaleTier.EASY
    if max_side <= thresholds.hard:
        return UpscaleTier.HARD
    return UpscaleTier.MID


def plan_upscale(tier: UpscaleTier, refine_available: bool) -> UpscalePlan:
    refine = UpscaleStep("realesrgan", tag="realesr") if refine_available else None
    if tier is UpscaleTier.SKIP:
        return UpscalePlan(tier)
    if tier is UpscaleTier.EASY:
        return UpscalePlan(tier, primary=(UpscaleStep("waifu2x", noise=1, tag="w2x1"),))
    if tier is UpscaleTier.MID:
        return UpscalePlan(
            tier,
            primary=(UpscaleStep("waifu2x", noise=1, tag="w2x1"),),
            refine=refine,
            completion=(UpscaleStep("waifu2x", noise=0, tag="w2x2"),),
        )
    return UpscalePlan(
        tier,
        primary=(
            UpscaleStep("waifu2x", noise=1, tag="w2x1"),
            UpscaleStep("waifu2x", noise=0, tag="w2x2"),
        ),
        refine=refine,
    )


# ── Helpers ────────────────────────────────────────────────────────────────────


def flat_name(base: Path, full: Path) -> str:
    """Flatten a path below `base` into a single file name joined by `_`."""
    return "_".join(full.relative_to(base).parts)


def discover_sources(root: Path, extensions: Sequence[str]) -> list[Path]:
    """Sorted image files below `root`; hidden files and directories are skipped."""
    if not root.is_dir():
        return []
    allowed = {ext.lower() for ext in extensions}
    return sorted(
        path
        for path in root.rglob("*")
        if path.is_file()
        and path.suffix.lower() in allowed
        and not any(part.startswith(".") for part in path.relative_to(root).parts)
    )


def read_source(path: Path, base: Path) -> SourceImage:
    width, height = probe_size(path, oriented=False)
    if not width or not height:
        raise ValueError("size read failed")
    return SourceImage(
        path=path,
        relative_path=path.relative_to(base).as_posix(),
        width=width,
        height=height,
        mtime=path.stat().st_mtime,
    )


def is_fresh(src: Path, dst: Path) -> bool:
    if not dst.exists():
        return False
    return dst.stat().st_mtime + MTIME_TOLERANCE_SECONDS >= src.stat().st_mtime


def copy_atomic(src: Path, dst: Path) -> None:
    """Copy with timestamps through a hidden sibling, then move into place."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dst.stem}_", suffix=dst.suffix, dir=dst.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copy2(src, temp_path)
        os.replace(temp_path, dst)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def sweep_stale_stages(dst_dir: Path, extensions: Sequence[str]) -> int:
    """Remove stage directories and partial copies left by an interrupted run."""
    if not dst_dir.is_dir():
        return 0
    allowed = {ext.lower() for ext in extensions}
    removed = 0
    for entry in sorted(dst_dir.iterdir()):
        if not entry.name.startswith("."):
            continue
        try:
            if entry.is_dir() and entry.name.startswith(STAGE_DIR_PREFIX):
                shutil.rmtree(entry)
            elif entry.is_file() and entry.suffix.lower() in allowed:
                entry.unlink()
            else:
                continue
        except OSError as exc:
            progress_write(f"Warning: could not remove stale stage {entry}: {exc}")
            continue
        removed += 1
    return removed


def build_waifu2x_command(
    binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale: int,
    noise: int,
    tile_size: int,
    model: str,
) -> list[str]:
    return [
        str(binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-s",
        str(scale),
        "-n",
        str(noise),
        "-t",
        str(tile_size),
        "-m",
        model,
    ]


def build_realesrgan_command(
    binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale: int,
    tile_size: int,
    models_dir: Path,
    model_name: str,
    output_format: Optional[str],
) -> list[str]:
    cmd = [
        str(binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-s",
        str(scale),
        "-t",
        str(tile_size),
        "-m",
        str(models_dir),
        "-n",
        model_name,
    ]
    if output_format:
        cmd.extend(["-f", output_format])
    return cmd


class AuditLog:
    """Append-only TSV record of every upscale decision."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def ensure_header(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("\t".join(AUDIT_HEADER) + "\n")

    def write(
        self,
        *,
        src: Path,
        out: Path,
        method: str,
        model: str = "",
        scale: str = "",
        extra: str = "",
    ) -> None:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        values = [
            timestamp.replace("+00:00", "Z"),
            str(src),
            str(out),
            method,
            model,
            scale,
            extra,
        ]
        line = "\t".join(" ".join(str(value).split()) for value in values)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


# ── Engine ─────────────────────────────────────────────────────────────────────


class UpscaleEngine:
    """Runs tier plans against the configured upscaler binaries."""

    def __init__(
        self,
        options: UpscaleOptions,
        toolchain: Toolchain,
        audit_log: AuditLog,
    ) -> None:
        self.options = options
        self.toolchain = toolchain
        self.audit_log = audit_log
        self.thresholds = Thresholds(
            target=options.target,
            easy=options.easy_threshold,
            hard=options.hard_threshold,
        )

    def destination_for(self, source: Path) -> Path:
        return self.options.dst_dir / flat_name(self.options.src_dir, source)

    def process(self, source: Path) -> tuple[Optional[UpscaleJob], UpscaleStats]:
        """Upscale one source; per-file failures are logged and counted."""
        destination = self.destination_for(source)
        try:
            return self.upscale_one(source, destination)
        except (
            ToolInvocationError,
            OSError,
            UnidentifiedImageError,
            Image.DecompressionBombError,
            ValueError,
        ) as exc:
            progress_write(f"Error: {source}: {exc}")
            self.audit_log.write(src=source, out=destination, method="Error", extra=str(exc))
            return None, UpscaleStats(errors=1)

    def upscale_one(
        self,
        source: Path,
        destination: Path,
    ) -> tuple[Optional[UpscaleJob], UpscaleStats]:
        image = read_source(source, self.options.src_dir)
        tier = classify_tier(image.max_side, self.thresholds)

        if tier is UpscaleTier.SKIP:
            self.audit_log.write(
                src=source,
                out=destination,
                method="Skip",
                extra=f"target>={self.thresholds.target}",
            )
            if not is_fresh(source, destination):
                copy_atomic(source, destination)
            return UpscaleJob(source, destination, tier), UpscaleStats(skipped=1)

        if is_fresh(source, destination):
            self.audit_log.write(src=source, out=destination, method="Skip", extra="exists")
            return None, UpscaleStats(skipped=1)

        destination.parent.mkdir(parents=True, exist_ok=True)
        plan = plan_upscale(tier, self.toolchain.refine_available)
        progress_write(
            f"process: {source}  [max={image.max_side}]  tier={tier.value} passes={plan.passes}"
        )
        job = UpscaleJob(source, destination, tier)
        stats = self.execute_plan(job, plan)
        stats.total += 1
        return job, stats

    def execute_plan(self, job: UpscaleJob, plan: UpscalePlan) -> UpscaleStats:
        """Run every pass inside a hidden stage directory beside the destination.

        Only the final stage is moved onto the destination; the stage
        directory is removed afterwards, and an interrupted run's leftovers
        are swept by `sweep_stale_stages` and ignored by source discovery.
        """
        stats = UpscaleStats()
        stage_dir = Path(tempfile.mkdtemp(prefix=STAGE_DIR_PREFIX, dir=job.destination.parent))
        stage_count = 0

        def next_stage() -> Path:
            nonlocal stage_count
            stage_count += 1
            return stage_dir / f"{job.destination.stem}_tmp{stage_count}{job.destination.suffix}"

        try:
            current = job.source
            for step in plan.primary:
                current = self._run_step(job, step, current, next_stage())

            if plan.refine is not None:
                refine_input = current
                refined = self._run_refine(job, plan.refine, refine_input, next_stage, stage_dir)
                stats.refined += 1
                if self._rejected_as_black(job, refine_input, refined):
                    stats.fallbacks += 1
                    for step in plan.completion:
                        current = self._run_step(job, step, current, next_stage())
                else:
                    current = refined
            else:
                for step in plan.completion:
                    current = self._run_step(job, step, current, next_stage())

            os.replace(current, job.destination)
            self.dump_stage(job, job.destination, f"{job.tier.value}_final")
        finally:
            self._remove_stage_dir(stage_dir)

        primary_passes = sum(1 for call in job.invocations if call.method == "Waifu2x")
        if primary_passes >= 2:
            stats.twice += 1
        elif primary_passes == 1:
            stats.once += 1
        return stats

    def _run_refine(
        self,
        job: UpscaleJob,
        step: UpscaleStep,
        current: Path,
        next_stage,
        stage_dir: Path,
    ) -> Path:
        refine_input = current
        if self.options.flatten_before:
            flat_path = stage_dir / f"{job.destination.stem}_flat{job.destination.suffix}"
            flatten_onto_white(current, flat_path)
            self.dump_stage(job, flat_path, "flatten")
            refine_input = flat_path
        return self._run_step(job, step, refine_input, next_stage())

    def _rejected_as_black(self, job: UpscaleJob, refine_input: Path, refined: Path) -> bool:
        if not self.options.detect_black:
            job.black_frame = False
            return False
        try:
            black = is_near_black(refined, self.options.black_threshold)
            note = "black_detected_after_realesr"
        except (OSError, UnidentifiedImageError) as exc:
            black = True
            note = f"unreadable_after_realesr: {exc}"
        job.black_frame = black
        if black:
            fallback = (
                "waifu2x x2 pass"
                if job.tier is UpscaleTier.MID
                else "using two-pass result"
            )
            self.audit_log.write(
                src=refine_input,
                out=job.destination,
                method="Fallback",
                model=self.options.waifu2x_model,
                extra=f"{note}; {fallback}; tier={job.tier.value}",
            )
            progress_write(f"Warning: refinement rejected for {job.source.name} ({note})")
        return black

    def _run_step(self, job: UpscaleJob, step: UpscaleStep, src: Path, out: Path) -> Path:
        if step.tool == "waifu2x":
            binary = self.toolchain.require_waifu2x()
            model = self.options.waifu2x_model
            method = "Waifu2x"
            cmd = build_waifu2x_command(
                binary,
                src,
                out,
                scale=step.scale,
                noise=step.noise,
                tile_size=self.options.waifu2x_tile,
                model=model,
            )
        else:
            binary = self.toolchain.realesrgan_binary
            model = self.options.realesrgan_model
            method = "RealESRGAN"
            cmd = build_realesrgan_command(
                binary,
                src,
                out,
                scale=step.scale,
                tile_size=self.options.realesrgan_tile,
                models_dir=self.toolchain.realesrgan_models,
                model_name=model,
                output_format=self.options.realesrgan_format,
            )

        try:
            result = run_subprocess(
                cmd,
                check=False,
                capture_output=True,
                timeout=SUBPROCESS_TIMEOUT_SECONDS,
                cwd=binary.parent,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ToolInvocationError(f"{method} failed to run: {exc}") from exc

        stderr = result.stderr.strip() if result.stderr else ""
        if result.returncode != 0:
            raise ToolInvocationError(
                f"{method} exited with status {result.returncode}: {stderr or 'no stderr'}",
                stderr=stderr,
            )
        if not out.exists():
            raise ToolInvocationError(f"{method} produced no output: {out}", stderr=stderr)

        job.invocations.append(ToolInvocation(method, model, step.scale, src, out))
        self.audit_log.write(
            src=src,
            out=out,
            method=method,
            model=model,
            scale=f"{step.scale}x",
            extra=f"tier={job.tier.value}" + (f" noise={step.noise}" if step.tool == "waifu2x" else ""),
        )
        self.dump_stage(job, out, f"{job.tier.value}_{step.tag}")
        return out

    def dump_stage(self, job: UpscaleJob, path: Path, tag: str) -> None:
        """Copy an intermediate stage into the debug directory when enabled."""
        if not self.options.keep_temp:
            return
        target = self.options.debug_dir / f"{job.destination.stem}_{tag}{path.suffix}"
        try:
            self.options.debug_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        except OSError as exc:
            progress_write(f"Warning: could not keep debug stage {target.name}: {exc}")

    @staticmethod
    def _remove_stage_dir(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            progress_write(f"Warning: could not remove stage directory {path}: {exc}")


def run_upscale_stage(
    options: UpscaleOptions,
    toolchain_factory,
) -> UpscaleStats:
    """Upscale every source under `options.src_dir` into `options.dst_dir`.

    `toolchain_factory` is only called when there is at least one source, so
    an empty tree never requires the upscaler binaries.
    """
    sources = discover_sources(options.src_dir, options.extensions)
    if not sources:
        print(f"No source images found in {options.src_dir}")
        return UpscaleStats()

    toolchain = toolchain_factory()
    audit_log = AuditLog(options.log_file)
    audit_log.ensure_header()
    options.dst_dir.mkdir(parents=True, exist_ok=True)
    swept = sweep_stale_stages(options.dst_dir, options.extensions)
    if swept:
        progress_write(f"Removed {swept} leftover stage file(s) from {options.dst_dir}")

    engine = UpscaleEngine(options, toolchain, audit_log)
    stats = UpscaleStats()
    for source in tqdm(sources, desc="Upscaling", unit="img"):
        _job, delta = engine.process(source)
        stats = stats + delta
    return stats
