"""Upstream integration modules (tracking network, sending platform)."""
from .contact_activity import ContactActivityExporter
from .exceptions import (
    ExportJobError,
    ExportJobLockedError,
    IncompleteFetchError,
    RateLimitError,
    UpstreamClientError,
    UpstreamError,
)
from .sending_client import SendingClient
from .tracking_client import TrackingClient
from .transport import ApiTransport

__all__ = [
    "ApiTransport",
    "TrackingClient",
    "SendingClient",
    "ContactActivityExporter",
    "UpstreamClientError",
    "UpstreamError",
    "RateLimitError",
    "ExportJobError",
    "ExportJobLockedError",
    "IncompleteFetchError",
]
