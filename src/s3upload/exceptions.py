"""Exception hierarchy for s3upload.

Every failure of a single HTTP exchange is a :class:`RequestError`; the
orchestrator surfaces these unchanged, so callers only ever need to catch
:class:`S3UploadError`.
"""
from __future__ import annotations

from typing import Optional

__all__ = [
    "S3UploadError",
    "ConfigurationError",
    "PayloadError",
    "RequestError",
    "TransportError",
    "RequestTimeout",
    "S3ResponseError",
    "XMLParseError",
]


class S3UploadError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(S3UploadError):
    """Invalid or incomplete client configuration."""


class PayloadError(S3UploadError):
    """The object to upload is not a bytes-like buffer."""


class RequestError(S3UploadError):
    """A single request to the object store failed."""


class TransportError(RequestError):
    """Connection-level failure reported by the HTTP transport."""


class RequestTimeout(RequestError):
    """The request did not complete within its deadline."""

    code = "ETIMEDOUT"

    def __init__(self, message: str = "ETIMEDOUT") -> None:
        super().__init__(message)


class S3ResponseError(RequestError):
    """The backend answered with a status other than 200.

    ``body`` holds the raw response text. When it is an S3 ``<Error>``
    document, ``code`` and ``message`` are filled from it.
    """

    def __init__(
        self,
        status_code: int,
        body: str,
        code: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.code = code
        self.message = message
        detail = f"{code}: {message}" if code else body[:200]
        super().__init__(f"HTTP {status_code}: {detail}")


class XMLParseError(RequestError):
    """A 200 response carried a body that is not well-formed XML."""
