"""Exception types shared across BusPulse."""


class ConfigurationError(ValueError):
    """Raised when static reference data or configuration is malformed."""


class UpstreamError(Exception):
    """Raised when an external data source fails or returns an unusable response."""
