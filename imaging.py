"""Pillow helpers: size probing, brightness checks, and variant encoding."""

from __future__ import annotations

import base64
import io
import os
import tempfile
from pathlib import Path

from PIL import Image, ImageOps, ImageStat

# EXIF orientations 5-8 rotate by 90/270 degrees and swap width/height.
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION_TAG = 0x0112

SAVE_FORMATS = {
    "avif": "AVIF",
    "webp": "WEBP",
    "jpeg": "JPEG",
    "png": "PNG",
}


def probe_size(path: Path, *, oriented: bool = True) -> tuple[int, int]:
    """Return pixel (width, height), honouring EXIF orientation when asked."""
    with Image.open(path) as img:
        width, height = img.size
        if oriented:
            orientation = img.getexif().get(_EXIF_ORIENTATION_TAG)
            if orientation in _TRANSPOSED_ORIENTATIONS:
                width, height = height, width
    return width, height


def mean_luma(path: Path) -> float:
    with Image.open(path) as img:
        gray = img.convert("L")
        return ImageStat.Stat(gray).mean[0]


def is_near_black(path: Path, threshold: float) -> bool:
    """True when the average brightness is at or below `threshold` of full scale."""
    return mean_luma(path) <= threshold * 255.0


def flatten_onto_white(src: Path, dst: Path) -> None:
    """Composite transparent pixels onto a white background."""
    with Image.open(src) as img:
        rgba = img.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        flattened = Image.alpha_composite(background, rgba).convert("RGB")
        flattened.save(dst)


def _prepare_for_format(img: Image.Image, fmt: str) -> Image.Image:
    if fmt == "jpeg":
        return img.convert("RGB") if img.mode != "RGB" else img
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("P", "LA", "PA") or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB")


def encode_fit_inside(
    src: Path,
    dst: Path,
    *,
    box: int,
    fmt: str,
    quality: int,
) -> tuple[int, int]:
    """Encode `src` to `dst` fitted inside a `box x box` square, never enlarging.

    The file is written to a sibling temporary path and moved into place once
    the encoder has finished, so `dst` is either absent or complete.
    """
    save_format = SAVE_FORMATS.get(fmt)
    if save_format is None:
        raise ValueError(f"Unsupported format: {fmt}")

    with Image.open(src) as opened:
        img = ImageOps.exif_transpose(opened)
        img.thumbnail((box, box), Image.Resampling.LANCZOS)
        img = _prepare_for_format(img, fmt)

        dst.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{dst.stem}_", suffix=dst.suffix, dir=dst.parent)
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            img.save(temp_path, format=save_format, quality=quality)
            os.replace(temp_path, dst)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        return img.size


def lqip_data_uri(src: Path, *, size: int, quality: int) -> str:
    """Tiny WebP preview as an inline `data:` URI."""
    with Image.open(src) as opened:
        img = ImageOps.exif_transpose(opened)
        if img.width > size:
            height = max(1, round(img.height * size / img.width))
            img = img.resize((size, height), Image.Resampling.LANCZOS)
        img = _prepare_for_format(img, "webp")
        buffer = io.BytesIO()
        img.save(buffer, format="WEBP", quality=quality)
    return "data:image/webp;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")
