"""
Structured logging helpers for consistent log formatting.

Provides utilities for structured, clean logging without leaking provider credentials.
"""
import logging
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SECRET_QUERY_KEYS = {"username", "password", "user", "pass", "token"}
_XTREAM_PATH_RE = re.compile(r"/(live|movie|series)/[^/]+/[^/]+/")


def sanitize_url(url: str) -> str:
    """
    Remove credentials from URL for safe logging.

    Masks userinfo, credential query parameters and the
    /<kind>/<user>/<password>/ path segments used by Xtream stream URLs.
    """
    if "://" not in url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***:***@" + netloc.split("@", 1)[1]

    query = parts.query
    if query:
        pairs = [
            (key, "***" if key.lower() in _SECRET_QUERY_KEYS else value)
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="*")

    path = _XTREAM_PATH_RE.sub(lambda m: f"/{m.group(1)}/***/***/", parts.path)

    return urlunsplit((parts.scheme, netloc, path, query, parts.fragment))


def log_section_start(logger: logging.Logger, section_name: str) -> None:
    """
    Log the start of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being started
    """
    logger.info("Starting: %s", section_name)


def log_section_end(logger: logging.Logger, section_name: str) -> None:
    """
    Log the end of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being ended
    """
    logger.info("Completed: %s", section_name)


def log_merge_summary(
    logger: logging.Logger,
    channels_count: int,
    variants_count: int,
    movies_count: int,
    series_count: int,
) -> None:
    """
    Log merge operation summary.

    Args:
        logger: Logger instance
        channels_count: Number of merged channels
        variants_count: Number of quality variants across all channels
        movies_count: Number of movies
        series_count: Number of series
    """
    logger.info(
        "Merge summary - Channels: %s (%s variants), Movies: %s, Series: %s",
        channels_count,
        variants_count,
        movies_count,
        series_count,
    )
