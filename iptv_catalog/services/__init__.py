"""
Services package for the IPTV catalog

This package contains all business logic and service layer components.
"""
from iptv_catalog.services.catalog_service import CatalogService, resolve_stream
from iptv_catalog.services.epg_query_service import current_programme, upcoming_programmes
from iptv_catalog.services.ingestion_service import IngestionPipeline
from iptv_catalog.services.scheduler_service import CatalogRefreshScheduler
from iptv_catalog.services.snapshot_cache import SnapshotCache
from iptv_catalog.services.xmltv_parser_service import parse_xmltv_content

__all__ = [
    'CatalogService',
    'CatalogRefreshScheduler',
    'IngestionPipeline',
    'SnapshotCache',
    'current_programme',
    'parse_xmltv_content',
    'resolve_stream',
    'upcoming_programmes',
]
