"""Toolchain: upscaler binary resolution, model discovery, and subprocess wrapper."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from errors import ConfigurationError

MODEL_ENV_VARS = ("REALESRGAN_MODELS", "REAL_ESRGAN_MODELS")


@dataclass(frozen=True)
class Toolchain:
    waifu2x_binary: Optional[Path]
    realesrgan_binary: Optional[Path]
    realesrgan_models: Optional[Path]

    @property
    def refine_available(self) -> bool:
        return self.realesrgan_binary is not None and self.realesrgan_models is not None

    def require_waifu2x(self) -> Path:
        if self.waifu2x_binary is None:
            raise ConfigurationError(
                "Unable to locate waifu2x binary. Install it in PATH, vendor it under "
                "<upscale.root>/tools, or set upscale.waifu2xPath."
            )
        return self.waifu2x_binary


def progress_write(message: str) -> None:
    """Write a progress message without breaking active progress bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
        cwd=str(cwd) if cwd is not None else None,
    )


def get_binary_name(stem: str) -> str:
    """Return the expected ncnn-vulkan binary name for the current OS."""
    if platform.system().lower() == "windows":
        return f"{stem}.exe"
    return stem


def find_vendored_binary(search_root: Path, binary_name: str) -> Optional[Path]:
    """Search a vendored tools tree for an executable binary."""
    if not search_root.exists():
        return None

    for candidate in sorted(search_root.rglob(binary_name)):
        if not candidate.is_file():
            continue
        if platform.system().lower() == "windows":
            return candidate
        if os.access(candidate, os.X_OK):
            return candidate
    return None


def resolve_upscaler_binary(
    custom_path: Optional[Path],
    binary_stem: str,
    tools_root: Optional[Path] = None,
) -> Optional[Path]:
    """Resolve an upscaler from an explicit path, PATH, or the vendored tools tree.

    An explicit path that does not exist means the tool is unavailable; it is
    not silently replaced by another copy found elsewhere.
    """
    if custom_path is not None:
        candidate = Path(custom_path).expanduser().resolve()
        return candidate if candidate.is_file() else None

    binary_name = get_binary_name(binary_stem)

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    if tools_root is not None:
        vendored = find_vendored_binary(tools_root, binary_name)
        if vendored:
            return vendored.resolve()
    return None


def _has_model(directory: Path, model_name: str) -> bool:
    return (directory / f"{model_name}.param").is_file() and (
        directory / f"{model_name}.bin"
    ).is_file()


def find_models_dir(model_name: str, realesrgan_binary: Path) -> Optional[Path]:
    """Locate the directory holding `<model>.param` and `<model>.bin`.

    Order: environment override, `<binary dir>/models`, then each direct
    subdirectory of the binary directory.
    """
    for env_var in MODEL_ENV_VARS:
        env_dir = os.environ.get(env_var)
        if env_dir and _has_model(Path(env_dir), model_name):
            return Path(env_dir).resolve()

    base = realesrgan_binary.parent
    direct = base / "models"
    if _has_model(direct, model_name):
        return direct.resolve()

    if base.is_dir():
        for entry in sorted(base.iterdir()):
            if entry.is_dir() and _has_model(entry, model_name):
                return entry.resolve()
    return None


def list_available_models(realesrgan_binary: Path) -> list[str]:
    base = realesrgan_binary.parent
    directories = [base / "models"]
    if base.is_dir():
        directories.extend(entry for entry in sorted(base.iterdir()) if entry.is_dir())

    names: set[str] = set()
    for directory in directories:
        if not directory.is_dir():
            continue
        names.update(path.stem for path in directory.glob("*.param"))
    return sorted(names)


def resolve_toolchain(
    *,
    waifu2x_path: Optional[Path],
    realesrgan_path: Optional[Path],
    model_name: str,
    tools_root: Optional[Path],
) -> Toolchain:
    """Resolve runtime binaries and raise clear configuration errors.

    The refinement model is checked up front: a present Real-ESRGAN binary
    without its model must stop the run before any image is processed.
    """
    waifu2x_binary = resolve_upscaler_binary(waifu2x_path, "waifu2x-ncnn-vulkan", tools_root)
    realesrgan_binary = resolve_upscaler_binary(
        realesrgan_path, "realesrgan-ncnn-vulkan", tools_root
    )

    models_dir = None
    if realesrgan_binary is not None:
        models_dir = find_models_dir(model_name, realesrgan_binary)
        if models_dir is None:
            available = list_available_models(realesrgan_binary)
            raise ConfigurationError(
                f"Real-ESRGAN model not found in {realesrgan_binary.parent}/(models|*): "
                f"{model_name}  available=[{', '.join(available)}]"
            )

    return Toolchain(
        waifu2x_binary=waifu2x_binary,
        realesrgan_binary=realesrgan_binary,
        realesrgan_models=models_dir,
    )
