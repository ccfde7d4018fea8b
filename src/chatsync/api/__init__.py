"""
Resilient request layer for the remote API.

Provides:
- RequestClient with interceptors, retry and backoff
- Pydantic models for the remote API's envelopes and bodies
"""

from .client import (
    RequestClient,
    RequestContext,
    RequestOptions,
)
from .models import (
    ApiResponse,
    ChangesPage,
    DeviceInfo,
    HttpMethod,
    RemoteChangeBody,
    TokenResponse,
    UploadChangesResponse,
)

__all__ = [
    # Client
    "RequestClient",
    "RequestContext",
    "RequestOptions",
    # Models
    "ApiResponse",
    "ChangesPage",
    "DeviceInfo",
    "HttpMethod",
    "RemoteChangeBody",
    "TokenResponse",
    "UploadChangesResponse",
]
