"""Entity cache and subscription hub."""

from .cache import MilestoneNotFoundError, SessionNotFoundError, VideoStateStore
from .hub import SubscriptionHub

__all__ = [
    "MilestoneNotFoundError",
    "SessionNotFoundError",
    "SubscriptionHub",
    "VideoStateStore",
]
