"""
Error taxonomy for the crop health pipeline.

Fallback-eligible errors (transport, empty result, missing credentials) are
normally absorbed by the component that catches them; they only reach the
HTTP layer when every fallback has been exhausted.
"""

from typing import Optional


class SatelliteServiceError(Exception):
    """Base class. `status_code` is used when the error reaches the API."""

    status_code = 500

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source

    def __str__(self) -> str:
        return self.message


class ConfigurationError(SatelliteServiceError):
    """Provider credentials or endpoints are not configured."""

    status_code = 503


class ValidationError(SatelliteServiceError):
    """Malformed request parameters."""

    status_code = 400


class TransportError(SatelliteServiceError):
    """Network failure, timeout or non-2xx response from the provider."""

    status_code = 502

    def __init__(self, message: str, source: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, source)
        self.status = status


class EmptyResultError(SatelliteServiceError):
    """The catalog returned no scene under the cloud-cover ceiling."""

    status_code = 404


class DegradedWriteError(SatelliteServiceError):
    """The primary cache table rejected a write; the entry goes to fallback storage."""
