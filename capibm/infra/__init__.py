"""Internal machinery: HTTP transport and authentication."""

from .http import (
    Auth,
    BearerAuth,
    HttpClient,
    HttpError,
    IAMAuth,
)

__all__ = [
    "Auth",
    "BearerAuth",
    "HttpClient",
    "HttpError",
    "IAMAuth",
]
