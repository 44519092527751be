"""
Autoboard exceptions.

Every failure raised by the services, the store and the pipeline derives from
``AutoboardError`` so callers can catch the whole family at one boundary.
"""

from typing import Optional


class AutoboardError(Exception):
    """Base exception for all Autoboard errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(AutoboardError):
    """Bad caller input, rejected before any model call."""
    pass


class ConfigurationError(AutoboardError):
    """Missing or unusable credentials."""
    pass


class TransportError(AutoboardError):
    """Network-level failure while calling a model endpoint."""
    pass


class UpstreamError(AutoboardError):
    """A model endpoint answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message, {"status": status_code} if status_code is not None else None)
        self.status_code = status_code
        self.body = (body or "")[:500]


class ParseError(AutoboardError):
    """The language model answered but its shot list could not be read."""
    pass


class SynthesisError(AutoboardError):
    """The image model answered without an image."""
    pass


class AnalysisError(AutoboardError):
    """The critique call failed outright (as opposed to returning unparseable text)."""
    pass


class NotFoundError(AutoboardError):
    """A referenced project, scene, shot or image does not exist."""
    pass
