"""
Metadata reconciler.

Matches each working copy to its prior index record, keeps every
human-curated field, and recomputes the technical ones. Identity lookups are
an ordered list of matcher strategies; the first hit wins.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from ulid import ULID

from options import TIERS
from toolchain import progress_write

ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")
PREFERRED_COVER_FORMATS = ("avif", "webp")

HUMAN_FIELD_DEFAULTS: dict[str, Any] = {
    "title": "",
    "alt": "",
    "series": [],
    "characters": [],
    "tags": [],
    "caption": "",
    "links": {"products": [], "related": []},
}

RECORD_KEYS = (
    "id",
    "kind",
    "source",
    "title",
    "alt",
    "series",
    "characters",
    "tags",
    "createdAt",
    "sortKey",
    "w",
    "h",
    "lqip",
    "sizes",
    "cover",
    "assets",
    "caption",
    "links",
)

# Owned by the pipeline; a stale copy in the canonical file never wins.
COMPUTED_KEYS = ("sortKey", "w", "h", "lqip", "sizes")

Record = dict[str, Any]


# ── Identifiers and timestamps ─────────────────────────────────────────────────


def is_ulid_like(value: Any) -> bool:
    return isinstance(value, str) and bool(ULID_PATTERN.match(value))


def file_stem(path: str) -> str:
    return re.sub(r"\s+", "_", Path(path).stem)


def iso_from_mtime(mtime: float) -> str:
    stamp = datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def epoch_ms(value: str) -> int:
    return int(round(parse_iso(value).timestamp() * 1000))


def mint_id(created_at: str) -> str:
    """New ULID whose time component is `created_at`, so ids sort by creation."""
    return str(ULID.from_datetime(parse_iso(created_at)))


# ── Prior records ──────────────────────────────────────────────────────────────


@dataclass
class PriorRecords:
    """Records from earlier runs plus bookkeeping for this run's matches.

    `last_written` holds the generated index exactly as the previous run
    wrote it; comparing against it tells whether `createdAt` was corrected
    by hand since then.
    """

    records: list[Record] = field(default_factory=list)
    last_written: dict[str, Record] = field(default_factory=dict)
    claimed: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.by_id: dict[str, Record] = {}
        self.by_source: dict[str, Record] = {}
        for record in self.records:
            record_id = record.get("id")
            if isinstance(record_id, str) and record_id not in self.by_id:
                self.by_id[record_id] = record
            source = record.get("source")
            if isinstance(source, str) and source not in self.by_source:
                self.by_source[source] = record

    def claim(self, record_id: str) -> None:
        self.claimed.add(record_id)

    def is_claimed(self, record: Record) -> bool:
        return record.get("id") in self.claimed

    def unclaimed(self) -> list[Record]:
        return [record for record in self.records if not self.is_claimed(record)]


def merge_prior_records(
    canonical: Iterable[Record],
    generated: Iterable[Record],
) -> PriorRecords:
    """Overlay canonical (hand-curated) records on the last generated index.

    Canonical values win key by key, except the computed keys: where the
    generated index has a value for one of those, it wins.
    """
    generated_list = [record for record in generated if isinstance(record, dict)]
    generated_by_id = {
        record["id"]: record for record in generated_list if isinstance(record.get("id"), str)
    }

    merged: list[Record] = []
    seen: set[str] = set()
    for record in canonical:
        if not isinstance(record, dict):
            continue
        record_id = record.get("id")
        base = generated_by_id.get(record_id, {}) if isinstance(record_id, str) else {}
        combined = {**copy.deepcopy(base), **copy.deepcopy(record)}
        for key in COMPUTED_KEYS:
            if key in base:
                combined[key] = copy.deepcopy(base[key])
        merged.append(combined)
        if isinstance(record_id, str):
            seen.add(record_id)

    for record in generated_list:
        if record.get("id") not in seen:
            merged.append(copy.deepcopy(record))

    return PriorRecords(records=merged, last_written=generated_by_id)


# ── Identity matchers ──────────────────────────────────────────────────────────

Matcher = Callable[[PriorRecords, str, str], Optional[Record]]


def match_by_source(prior: PriorRecords, relative_path: str, stem: str) -> Optional[Record]:
    return prior.by_source.get(relative_path)


def match_by_stem_id(prior: PriorRecords, relative_path: str, stem: str) -> Optional[Record]:
    return prior.by_id.get(stem)


def _small_urls(record: Record) -> dict:
    sizes = record.get("sizes")
    small = sizes.get("s") if isinstance(sizes, dict) else None
    return small if isinstance(small, dict) else {}


def match_by_legacy_url(prior: PriorRecords, relative_path: str, stem: str) -> Optional[Record]:
    """Older records have no `source`; their small-tier URL still names the file.

    WebP URLs are checked before other formats, and unclaimed records before
    claimed ones. A claimed hit is only returned when nothing else matches.
    """
    webp_needle = f"/{stem}.webp"
    any_needle = f"/{stem}."
    hits = [
        record
        for record in prior.records
        if webp_needle in str(_small_urls(record).get("webp", ""))
    ]
    hits += [
        record
        for record in prior.records
        if any(isinstance(url, str) and any_needle in url for url in _small_urls(record).values())
    ]
    for record in hits:
        if not prior.is_claimed(record):
            return record
    return hits[0] if hits else None


MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("source", match_by_source),
    ("id", match_by_stem_id),
    ("legacy-url", match_by_legacy_url),
)


@dataclass(frozen=True)
class IdentityMatch:
    record: Optional[Record] = None
    strategy: Optional[str] = None


def resolve_identity(
    prior: PriorRecords,
    relative_path: str,
    stem: str,
    matchers: tuple[tuple[str, Matcher], ...] = MATCHERS,
) -> IdentityMatch:
    """Return the first matcher hit that no other source has claimed this run."""
    for name, matcher in matchers:
        record = matcher(prior, relative_path, stem)
        if record is None:
            continue
        if prior.is_claimed(record):
            progress_write(
                f"Warning: {relative_path} matched record {record.get('id')} by {name}, "
                "but another source already claimed it; assigning a new id."
            )
            continue
        if name == "legacy-url":
            progress_write(
                f"Warning: {relative_path} matched record {record.get('id')} by legacy URL "
                f"stem '{stem}'; verify it is the same image if stems repeat across folders."
            )
        return IdentityMatch(record, name)
    return IdentityMatch()


# ── Field resolution ───────────────────────────────────────────────────────────


def resolve_created_at(prior: Optional[Record], mtime: float) -> str:
    """Existing (possibly hand-corrected) value wins over the file mtime."""
    if prior is not None:
        value = prior.get("createdAt")
        if isinstance(value, str) and value:
            return value
    return iso_from_mtime(mtime)


def resolve_id(
    prior: Optional[Record],
    stem: str,
    created_at: str,
    taken: Iterable[str] = (),
) -> str:
    if prior is not None:
        value = prior.get("id")
        if isinstance(value, str) and value:
            return value
    if is_ulid_like(stem) and stem not in taken:
        return stem
    return mint_id(created_at)


def resolve_sort_key(
    prior: Optional[Record],
    created_at: str,
    last_written: Optional[Record],
) -> int:
    """Frozen sortKey unless createdAt moved since it was last written.

    The last generated index is authoritative for the frozen value; a
    record never written by this pipeline falls back to its own sortKey.
    """
    if prior is None:
        return epoch_ms(created_at)
    frozen_source = last_written if last_written is not None else prior
    if frozen_source.get("createdAt") != created_at:
        return epoch_ms(created_at)
    previous = frozen_source.get("sortKey")
    if isinstance(previous, bool) or not isinstance(previous, (int, float)):
        return epoch_ms(created_at)
    return previous


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_human_fields(prior: Optional[Record]) -> Record:
    """Human values are carried verbatim; defaults only fill what is absent."""
    keep = prior or {}
    merged: Record = {}
    for name, default in HUMAN_FIELD_DEFAULTS.items():
        value = keep.get(name)
        merged[name] = copy.deepcopy(default) if _is_empty(value) else value
    return merged


def prefer_cover_src(sizes: Any) -> str:
    """First URL in tier order (small first), AVIF before WebP before others."""
    if not isinstance(sizes, dict):
        return ""
    for tier in TIERS:
        by_format = sizes.get(tier)
        if not isinstance(by_format, dict):
            continue
        ordered = [fmt for fmt in PREFERRED_COVER_FORMATS if fmt in by_format]
        ordered += [fmt for fmt in by_format if fmt not in PREFERRED_COVER_FORMATS]
        for fmt in ordered:
            src = by_format.get(fmt)
            if isinstance(src, str) and src:
                return src
    return ""


def build_image_asset(
    asset_id: str,
    source: str,
    *,
    width: Optional[int],
    height: Optional[int],
    lqip: Optional[str],
    sizes: dict[str, dict[str, str]],
) -> Record:
    return {
        "id": asset_id,
        "kind": "image",
        "source": source,
        "w": width,
        "h": height,
        "lqip": lqip,
        "sizes": sizes,
    }


def _asset_matches(asset: Record, asset_id: str, source: str) -> bool:
    if "id" in asset and str(asset["id"]) == str(asset_id):
        return True
    return isinstance(asset.get("source"), str) and asset["source"] == source


def merge_assets(prior_assets: Any, image_asset: Record, kind: str) -> list[Record]:
    """Computed bundle replaces its prior counterpart; other bundles are kept."""
    previous = [asset for asset in prior_assets or [] if isinstance(asset, dict)]
    if kind != "image":
        return [dict(asset) for asset in previous] if previous else [image_asset]

    merged: list[Record] = []
    replaced = False
    for asset in previous:
        if not replaced and _asset_matches(asset, image_asset["id"], image_asset["source"]):
            merged.append({**asset, **image_asset})
            replaced = True
        else:
            merged.append(dict(asset))
    if not replaced:
        merged.append(image_asset)
    return merged


def build_default_cover(image_asset: Record) -> Record:
    return {
        "kind": "image",
        "assetId": image_asset["id"],
        "src": prefer_cover_src(image_asset["sizes"]),
        "w": image_asset["w"],
        "h": image_asset["h"],
        "lqip": image_asset["lqip"],
        "sizes": image_asset["sizes"],
    }


def merge_cover(prior_cover: Any, default_cover: Record, kind: str) -> Record:
    """Image records take computed cover fields and keep extra hand-set keys;
    other kinds keep their hand-set cover and only gain absent fields."""
    previous = dict(prior_cover) if isinstance(prior_cover, dict) else {}
    if kind == "image":
        return {**previous, **default_cover}
    if not previous:
        return default_cover
    for key, value in default_cover.items():
        if value is None:
            continue
        if key not in previous or previous[key] in (None, ""):
            previous[key] = value
    return previous


# ── Reconciler ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Identity:
    asset_id: str
    created_at: str
    sort_key: int
    prior: Optional[Record]
    strategy: Optional[str]


class Reconciler:
    def __init__(self, prior: PriorRecords) -> None:
        self.prior = prior

    def identify(self, relative_path: str, mtime: float) -> Identity:
        """Resolve id, createdAt and sortKey for a source and claim its record."""
        stem = file_stem(relative_path)
        match = resolve_identity(self.prior, relative_path, stem)
        created_at = resolve_created_at(match.record, mtime)
        asset_id = resolve_id(match.record, stem, created_at, self.prior.claimed)
        last_written = self.prior.last_written.get(asset_id)
        sort_key = resolve_sort_key(match.record, created_at, last_written)
        self.prior.claim(asset_id)
        return Identity(asset_id, created_at, sort_key, match.record, match.strategy)

    def build_record(
        self,
        identity: Identity,
        relative_path: str,
        *,
        width: Optional[int],
        height: Optional[int],
        lqip: Optional[str],
        sizes: dict[str, dict[str, str]],
    ) -> Record:
        keep = identity.prior or {}
        kind = keep.get("kind") if isinstance(keep.get("kind"), str) and keep.get("kind") else "image"

        previous_assets = keep.get("assets") if isinstance(keep.get("assets"), list) else []
        matched = next(
            (
                asset
                for asset in previous_assets
                if isinstance(asset, dict) and _asset_matches(asset, identity.asset_id, relative_path)
            ),
            None,
        )
        asset_id = identity.asset_id
        if matched is not None and isinstance(matched.get("id"), str) and matched["id"]:
            asset_id = matched["id"]

        image_asset = build_image_asset(
            asset_id,
            relative_path,
            width=width,
            height=height,
            lqip=lqip,
            sizes=sizes,
        )
        human = merge_human_fields(keep)

        record: Record = {
            "id": identity.asset_id,
            "kind": kind,
            "source": relative_path,
            "title": human["title"],
            "alt": human["alt"],
            "series": human["series"],
            "characters": human["characters"],
            "tags": human["tags"],
            "createdAt": identity.created_at,
            "sortKey": identity.sort_key,
            "w": width,
            "h": height,
            "lqip": lqip,
            "sizes": sizes,
            "cover": merge_cover(keep.get("cover"), build_default_cover(image_asset), kind),
            "assets": merge_assets(previous_assets, image_asset, kind),
            "caption": human["caption"],
            "links": human["links"],
        }
        for key, value in keep.items():
            if key not in RECORD_KEYS:
                record[key] = value
        return record
