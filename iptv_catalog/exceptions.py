"""
Error taxonomy for the catalog pipeline.

Only SourceError is surfaced to callers of the snapshot cache; the other
errors are absorbed where they occur and show up in the logs.
"""


class CatalogError(Exception):
    """Base class for catalog pipeline errors"""
    pass


class SourceError(CatalogError):
    """Raised when a core feed is unreachable, malformed or times out"""
    pass


class AuxiliaryFeedError(CatalogError):
    """Raised when a category, series or EPG feed cannot be used"""
    pass


class ParseWarning(CatalogError):
    """Raised for a single malformed record, which is then dropped"""
    pass


class CacheBackendError(CatalogError):
    """Raised when the shared snapshot store cannot be read or written"""
    pass
