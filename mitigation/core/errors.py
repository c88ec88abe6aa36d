class MitigationError(Exception):
    pass


class ValidationError(MitigationError):
    """Malformed caller input. Raised before any store access."""


class StorageUnavailable(MitigationError):
    """The shared store could not be reached within the configured timeout."""


class ConfigurationError(MitigationError):
    """Invalid configuration detected at process start."""
