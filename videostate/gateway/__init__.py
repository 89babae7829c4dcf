"""Remote gateway for the lesson platform REST API."""

from .client import (
    GatewayError,
    MalformedResponseError,
    NotFoundError,
    RejectedRequestError,
    TransientGatewayError,
    VideoGateway,
)

__all__ = [
    "GatewayError",
    "MalformedResponseError",
    "NotFoundError",
    "RejectedRequestError",
    "TransientGatewayError",
    "VideoGateway",
]
