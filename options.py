"""Options: typed view over the `images` / `upscale` sections of the site config."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_CONFIG_PATH = "src/config/site.config.json"

TIERS = ("s", "s2x", "l", "l2x")
SUPPORTED_FORMATS = ("avif", "webp", "jpeg", "png")
DEFAULT_FORMATS = ("avif", "webp")
DEFAULT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")

DEFAULT_SMALL_WIDTH = 236
DEFAULT_LARGE_WIDTH = 1200


# ── Option types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LqipOptions:
    enabled: bool = False
    size: int = 24
    quality: int = 50


@dataclass(frozen=True)
class UpscaleOptions:
    enabled: bool = True
    root: Path = Path("originals")
    src_dir: Path = Path("originals/originals_lowres")
    dst_dir: Path = Path("originals/originals_upscaled")
    log_file: Path = Path("originals/upscale-report.tsv")
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    target: int = 2000
    easy_threshold: int = 700
    hard_threshold: int = 250
    tools_root: Path = Path("originals/tools")
    waifu2x_path: Optional[Path] = None
    waifu2x_model: str = "models-cunet"
    waifu2x_tile: int = 512
    realesrgan_path: Optional[Path] = None
    realesrgan_model: str = "realesr-animevideov3-x2"
    realesrgan_tile: int = 0
    realesrgan_format: Optional[str] = None
    flatten_before: bool = False
    black_threshold: float = 0.01
    detect_black: bool = True
    keep_temp: bool = False
    debug_dir: Path = Path("originals/debug_upscale")


@dataclass(frozen=True)
class ImageOptions:
    originals_dir: Path = Path("originals/originals_upscaled")
    output_dir: Path = Path("src/assets")
    public_dir: Optional[Path] = None
    public_base_path: str = "/assets"
    index_path: Path = Path("src/data/images.json")
    generated_index_path: Path = Path("src/data/images.generated.json")
    slim_index_path: Path = Path("public/images.slim.json")
    widths: Mapping[str, int] = field(
        default_factory=lambda: {
            "s": DEFAULT_SMALL_WIDTH,
            "s2x": DEFAULT_SMALL_WIDTH * 2,
            "l": DEFAULT_LARGE_WIDTH,
            "l2x": DEFAULT_LARGE_WIDTH * 2,
        }
    )
    quality_small: int = 72
    quality_large: int = 82
    formats: tuple[str, ...] = DEFAULT_FORMATS
    rebuild_if_newer: bool = True
    cleanup: bool = False
    lqip: LqipOptions = field(default_factory=LqipOptions)

    def quality_for(self, tier: str) -> int:
        return self.quality_small if tier.startswith("s") else self.quality_large


@dataclass(frozen=True)
class PipelineOptions:
    images: ImageOptions = field(default_factory=ImageOptions)
    upscale: UpscaleOptions = field(default_factory=UpscaleOptions)


# ── Parsing ────────────────────────────────────────────────────────────────────


def _number(value: Any, default: float) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _path(value: Any, default: Optional[Path]) -> Optional[Path]:
    if isinstance(value, str) and value:
        return Path(value).expanduser().resolve()
    return default.expanduser().resolve() if default is not None else None


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def parse_upscale_options(section: Mapping[str, Any]) -> UpscaleOptions:
    defaults = UpscaleOptions()
    realesrgan = _section(section, "realesrgan")
    waifu2x = _section(section, "waifu2x")
    debug = _section(section, "debug")

    root = _path(section.get("root"), defaults.root)
    extensions = section.get("extensions")
    if isinstance(extensions, list) and extensions:
        ext_values = tuple(str(ext).lower() for ext in extensions)
    else:
        ext_values = defaults.extensions

    fmt = realesrgan.get("format")
    return UpscaleOptions(
        enabled=bool(section.get("enabled", defaults.enabled)),
        root=root,
        src_dir=_path(section.get("srcDir"), root / "originals_lowres"),
        dst_dir=_path(section.get("dstDir"), root / "originals_upscaled"),
        log_file=_path(section.get("logFile"), root / "upscale-report.tsv"),
        extensions=ext_values,
        target=int(_number(section.get("targetUpscaled"), defaults.target)),
        easy_threshold=int(_number(section.get("minForEasy"), defaults.easy_threshold)),
        hard_threshold=int(_number(section.get("minForHard"), defaults.hard_threshold)),
        tools_root=_path(section.get("toolsDir"), root / "tools"),
        waifu2x_path=_path(section.get("waifu2xPath"), None),
        waifu2x_model=str(waifu2x.get("model") or defaults.waifu2x_model),
        waifu2x_tile=int(_number(waifu2x.get("tile"), defaults.waifu2x_tile)),
        realesrgan_path=_path(section.get("realesrganPath"), None),
        realesrgan_model=str(realesrgan.get("modelName") or defaults.realesrgan_model),
        realesrgan_tile=int(_number(realesrgan.get("tile"), defaults.realesrgan_tile)),
        realesrgan_format=str(fmt) if fmt else None,
        flatten_before=bool(realesrgan.get("flattenBefore", defaults.flatten_before)),
        black_threshold=float(
            _number(realesrgan.get("blackThreshold"), defaults.black_threshold)
        ),
        detect_black=bool(debug.get("detectBlack", defaults.detect_black)),
        keep_temp=bool(debug.get("keepTemp", defaults.keep_temp)),
        debug_dir=_path(debug.get("dir"), root / "debug_upscale"),
    )


def parse_image_options(
    section: Mapping[str, Any],
    upscale: UpscaleOptions,
) -> ImageOptions:
    defaults = ImageOptions()
    lqip = _section(section, "lqip")

    small = int(_number(section.get("smallWidth"), DEFAULT_SMALL_WIDTH))
    large = int(_number(section.get("largeWidth"), DEFAULT_LARGE_WIDTH))
    widths = {
        "s": small,
        "s2x": int(_number(section.get("small2x"), small * 2)),
        "l": large,
        "l2x": int(_number(section.get("large2x"), large * 2)),
    }

    formats = section.get("formats")
    if isinstance(formats, list) and formats:
        format_values = tuple(str(fmt).lower() for fmt in formats)
    else:
        format_values = defaults.formats

    return ImageOptions(
        originals_dir=_path(section.get("originalsDir"), upscale.dst_dir),
        output_dir=_path(section.get("outputDir"), defaults.output_dir),
        public_dir=_path(section.get("publicDir"), None),
        public_base_path=str(section.get("publicBasePath") or defaults.public_base_path),
        index_path=_path(section.get("indexPath"), defaults.index_path),
        generated_index_path=_path(
            section.get("generatedIndexPath"), defaults.generated_index_path
        ),
        slim_index_path=_path(section.get("slimIndexPath"), defaults.slim_index_path),
        widths=widths,
        quality_small=int(_number(section.get("qualitySmall"), defaults.quality_small)),
        quality_large=int(_number(section.get("qualityLarge"), defaults.quality_large)),
        formats=format_values,
        rebuild_if_newer=bool(section.get("rebuildIfNewer", defaults.rebuild_if_newer)),
        cleanup=bool(section.get("cleanup", defaults.cleanup)),
        lqip=LqipOptions(
            enabled=bool(lqip.get("enabled", False)),
            size=int(_number(lqip.get("size"), LqipOptions.size)),
            quality=int(_number(lqip.get("quality"), LqipOptions.quality)),
        ),
    )


def options_from_mapping(data: Mapping[str, Any]) -> PipelineOptions:
    upscale = parse_upscale_options(_section(data, "upscale"))
    images = parse_image_options(_section(data, "images"), upscale)
    return PipelineOptions(images=images, upscale=upscale)


def load_options(config_path: Optional[Path]) -> PipelineOptions:
    """Read the site config; a missing file yields the documented defaults."""
    if config_path is None or not config_path.exists():
        return options_from_mapping({})

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid config JSON in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be an object: {config_path}")
    return options_from_mapping(payload)


def validate_options(options: PipelineOptions) -> None:
    images = options.images
    upscale = options.upscale

    if not (0 < upscale.hard_threshold < upscale.easy_threshold <= upscale.target):
        raise ValueError(
            "Upscale thresholds must satisfy 0 < minForHard < minForEasy <= targetUpscaled."
        )
    if not (0.0 <= upscale.black_threshold <= 1.0):
        raise ValueError("Black threshold must be between 0 and 1.")
    if upscale.waifu2x_tile < 0 or upscale.realesrgan_tile < 0:
        raise ValueError("Tile size must be >= 0.")
    for tier in TIERS:
        if images.widths.get(tier, 0) <= 0:
            raise ValueError(f"Width for tier '{tier}' must be > 0.")
    for quality in (images.quality_small, images.quality_large, images.lqip.quality):
        if not (1 <= quality <= 100):
            raise ValueError("Encode quality must be between 1 and 100.")
    if images.lqip.size <= 0:
        raise ValueError("LQIP size must be > 0.")
    if not images.formats:
        raise ValueError("At least one output format is required.")
    unsupported = [fmt for fmt in images.formats if fmt not in SUPPORTED_FORMATS]
    if unsupported:
        raise ValueError(f"Unsupported format(s): {', '.join(unsupported)}")
    if images.generated_index_path == images.index_path:
        raise ValueError("Generated index path must differ from the canonical index path.")


def describe_options(options: PipelineOptions) -> str:
    """Render the effective configuration as JSON for the run banner."""
    return json.dumps(asdict(options), indent=2, default=str)
