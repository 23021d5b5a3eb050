"""
EPG Query Service

Answers "what is on now" and "what is on next" for a channel's EPG key.
Callers pass the current instant so lookups stay free of wall-clock reads.
"""
from bisect import bisect_right
from collections.abc import Mapping, Sequence
from datetime import datetime
import logging

from iptv_catalog.services.catalog_types import EpgProgramme
from iptv_catalog.services.identity_service import normalize_key
from iptv_catalog.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

EpgIndex = Mapping[str, Sequence[EpgProgramme]]


def _programmes_for(epg: EpgIndex, channel_key: str) -> Sequence[EpgProgramme]:
    if not channel_key:
        return ()
    return epg.get(normalize_key(channel_key), ())


def current_programme(epg: EpgIndex, channel_key: str, now: datetime) -> EpgProgramme | None:
    """
    Find the programme airing at a given instant

    Args:
        epg: Channel key -> programmes ordered by start
        channel_key: Channel EPG key (case-insensitive)
        now: Instant to look up, naive values are taken as UTC

    Returns:
        First programme with start <= now <= stop, or None
    """
    now = ensure_utc(now)
    for programme in _programmes_for(epg, channel_key):
        if programme.start > now:
            break
        if programme.start <= now <= programme.stop:
            return programme
    return None


def upcoming_programmes(
    epg: EpgIndex,
    channel_key: str,
    now: datetime,
    limit: int = 5
) -> list[EpgProgramme]:
    """
    List programmes starting after a given instant

    Args:
        epg: Channel key -> programmes ordered by start
        channel_key: Channel EPG key (case-insensitive)
        now: Reference instant, naive values are taken as UTC
        limit: Maximum number of programmes to return

    Returns:
        Programmes with start > now, ascending by start
    """
    if limit <= 0:
        return []
    now = ensure_utc(now)
    programmes = _programmes_for(epg, channel_key)
    first_upcoming = bisect_right(programmes, now, key=lambda p: p.start)
    return list(programmes[first_upcoming:first_upcoming + limit])
