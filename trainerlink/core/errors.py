"""Domain-specific errors for trainerlink.

Transport failures reported through subscription callbacks are data
(`TransportFailure`), not exceptions. These classes cover environment and
programming errors only.
"""


class TrainerLinkError(Exception):
    """Base error for trainerlink."""


class ConfigValidationError(TrainerLinkError):
    """Raised when a configuration file does not conform to schema or semantics."""


class ConfigLoadError(TrainerLinkError):
    """Raised when reading configuration sources fails."""


class TransportError(TrainerLinkError):
    """Raised when a transport cannot be used in the current runtime."""
