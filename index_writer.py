"""Index writer: stable sort, full and slim JSON outputs, sweep, integrity guard."""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from errors import IntegrityViolation
from metadata import Record, epoch_ms, prefer_cover_src
from options import TIERS
from toolchain import progress_write


def read_index(path: Path) -> list[Record]:
    """Load a JSON array of records; a missing file is an empty index."""
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Index file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, list):
        raise ValueError(f"Index file must contain a JSON array: {path}")
    return [record for record in payload if isinstance(record, dict)]


def sort_value(record: Record) -> int:
    value = record.get("sortKey")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    created_at = record.get("createdAt")
    if isinstance(created_at, str) and created_at:
        try:
            return epoch_ms(created_at)
        except ValueError:
            return 0
    return 0


def sort_records(records: Iterable[Record]) -> list[Record]:
    """Ascending sortKey, ties broken by id."""
    return sorted(records, key=lambda record: (sort_value(record), str(record.get("id", ""))))


def serialize(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}_", suffix=".json", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialize(payload))
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def write_index(path: Path, records: list[Record]) -> None:
    write_json_atomic(path, records)


def _has_entries(links: Any, key: str) -> bool:
    if not isinstance(links, dict):
        return False
    value = links.get(key)
    return isinstance(value, list) and len(value) > 0


def build_slim_entry(record: Record) -> Record:
    cover = record.get("cover") if isinstance(record.get("cover"), dict) else {}
    links = record.get("links")
    return {
        "id": record.get("id"),
        "alt": record.get("alt", ""),
        "src": cover.get("src") or prefer_cover_src(record.get("sizes")),
        "w": cover.get("w", record.get("w")),
        "h": cover.get("h", record.get("h")),
        "tags": record.get("tags", []),
        "hasProducts": _has_entries(links, "products"),
        "hasRelated": _has_entries(links, "related"),
    }


def build_slim_index(sorted_records: list[Record]) -> list[Record]:
    """Newest first: the exact reverse of the full index order."""
    return [build_slim_entry(record) for record in reversed(sorted_records)]


def write_slim_index(path: Path, sorted_records: list[Record]) -> None:
    write_json_atomic(path, build_slim_index(sorted_records))


def collect_garbage(output_dir: Path, kept_ids: set[str]) -> list[Path]:
    """Remove tier files whose stem is not a kept id; failures only warn."""
    removed: list[Path] = []
    for tier in TIERS:
        tier_dir = output_dir / tier
        if not tier_dir.is_dir():
            continue
        for entry in sorted(tier_dir.iterdir()):
            if not entry.is_file() or entry.stem in kept_ids:
                continue
            try:
                entry.unlink()
            except OSError as exc:
                progress_write(f"Warning: could not remove orphaned variant {entry}: {exc}")
                continue
            removed.append(entry)
    return removed


def file_digest(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class IntegrityGuard:
    """Detects any change to the hand-curated metadata file during a run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.before: Optional[str] = None

    def snapshot(self) -> Optional[str]:
        self.before = file_digest(self.path)
        return self.before

    def verify(self) -> None:
        if self.before is None:
            return
        after = file_digest(self.path)
        if after != self.before:
            raise IntegrityViolation(
                f"Canonical metadata file changed during the run: {self.path} "
                f"(sha256 {self.before[:12]} -> {(after or 'missing')[:12]}). "
                "Refusing to accept the build."
            )
