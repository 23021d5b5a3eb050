from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
import logging

from iptv_catalog.config import CustomSettings, settings as default_settings, setup_logging
from iptv_catalog.services.catalog_service import CatalogService
from iptv_catalog.services.scheduler_service import CatalogRefreshScheduler


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(
    settings: CustomSettings | None = None,
    *,
    start_scheduler: bool = True,
) -> AsyncIterator[CatalogService]:
    """
    Run the catalog core for the lifetime of a host application

    The protocol layer enters this context on startup and serves requests
    through the yielded CatalogService.
    """
    settings = settings or default_settings
    setup_logging(settings)

    logger.info("Starting IPTV catalog core...")
    service = CatalogService.from_settings(settings)
    scheduler = CatalogRefreshScheduler(service, settings)

    try:
        if start_scheduler:
            scheduler.start()
        logger.info("IPTV catalog core started successfully")
    except Exception as e:
        logger.error(f"Failed to start IPTV catalog core: {e}", exc_info=True)
        await service.close()
        raise

    try:
        yield service
    finally:
        logger.info("Shutting down IPTV catalog core...")
        try:
            scheduler.shutdown()
        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)
        await service.close()
        logger.info("IPTV catalog core stopped")
