"""
Channel identity and quality resolution

Derives the merge key, quality tier and cleaned display name of a record.
"""
from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re

from iptv_catalog.services.catalog_types import QualityTier, RawRecord

IDENTIFIER_ATTRIBUTE = "tvg-id"

_TIER_TOKEN_RE = re.compile(
    r"(?<![A-Za-z0-9])(4K|UHD|FHD|FULL\s*HD|1080[PI]?|720P?|HD|SD)(?![A-Za-z0-9])",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class Resolution:
    canonical_key: str
    quality: QualityTier
    cleaned_name: str


def _token_tier(token: str) -> QualityTier:
    token = _WHITESPACE_RE.sub("", token.upper())
    if token in ("4K", "UHD"):
        return QualityTier.UHD
    if token in ("FHD", "FULLHD") or token.startswith("1080"):
        return QualityTier.FHD
    if token == "HD" or token.startswith("720"):
        return QualityTier.HD
    return QualityTier.SD


def detect_quality(name: str) -> QualityTier:
    """Best tier among the quality tokens in a display name, SD when none."""
    tiers = [_token_tier(match.group(1)) for match in _TIER_TOKEN_RE.finditer(name)]
    return min(tiers, default=QualityTier.SD)


def clean_name(name: str) -> str:
    """Remove quality tokens and collapse whitespace."""
    return _WHITESPACE_RE.sub(" ", _TIER_TOKEN_RE.sub(" ", name)).strip()


def normalize_key(value: str) -> str:
    return value.strip().casefold()


def resolve(record: RawRecord) -> Resolution:
    """
    Resolve a record's canonical merge key, quality and cleaned name.

    An explicit channel identifier is authoritative; records without one
    merge by cleaned name. An empty cleaned name is still a valid key.
    """
    cleaned = clean_name(record.name)
    identifier = record.attributes.get(IDENTIFIER_ATTRIBUTE, "")
    if identifier.strip():
        key = normalize_key(identifier)
    else:
        key = normalize_key(cleaned)

    return Resolution(
        canonical_key=key,
        quality=detect_quality(record.name),
        cleaned_name=cleaned,
    )


def stable_hash(text: str, length: int = 16) -> str:
    """Deterministic short hex digest used for catalog ids."""
    return hashlib.md5(text.encode("utf-8"), usedforsecurity=False).hexdigest()[:length]


def channel_id(canonical_key: str) -> str:
    return f"iptv_{stable_hash(canonical_key)}"
