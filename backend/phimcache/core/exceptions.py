"""
Error taxonomy for the ingestion / caching / ranking core.

Only ConfigurationError is meant to escape to a caller; everything else is
raised and handled inside the service that owns it, or carried as a value
(see UpstreamFailure in phimcache.services.upstream).
"""


class PhimCacheError(Exception):
    """Base exception for phimcache"""
    def __init__(self, message: str, code: str = "PHIMCACHE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self):
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
        }


class ConfigurationError(PhimCacheError):
    """Fatal misconfiguration, raised at startup and never per request"""
    def __init__(self, message: str):
        super().__init__(message, code="CONFIGURATION_ERROR")


class NormalizationError(PhimCacheError):
    """Upstream payload could not be parsed into the canonical shape at all"""
    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        super().__init__(message, code="NORMALIZATION_ERROR")


class CacheTierUnavailable(PhimCacheError):
    """A cache tier backend could not be reached; callers skip the tier"""
    def __init__(self, tier: str, message: str):
        self.tier = tier
        super().__init__(f"{tier}: {message}", code="CACHE_TIER_UNAVAILABLE")
