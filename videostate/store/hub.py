"""
Publish/subscribe hub for cached video and session aggregates.

Dispatch is synchronous and runs after the store has finished a change,
so callbacks always see a complete aggregate. Callbacks may unsubscribe
themselves or others while a dispatch is running.
"""

import logging
from typing import Callable

import sentry_sdk

from ..types import SessionState, StoreSnapshot, VideoState

logger = logging.getLogger(__name__)

StoreListener = Callable[[StoreSnapshot], None]
# Scoped listeners receive None once the entry leaves the cache
VideoListener = Callable[[str, VideoState | None], None]
SessionListener = Callable[[str, SessionState | None], None]
Unsubscribe = Callable[[], None]


class _Subscription:
    __slots__ = ("callback", "active")

    def __init__(self, callback: Callable):
        self.callback = callback
        self.active = True


class SubscriptionHub:
    """Registry of store-wide and per-key observers."""

    def __init__(self):
        self._store_subs: list[_Subscription] = []
        self._video_subs: dict[str, list[_Subscription]] = {}
        self._session_subs: dict[str, list[_Subscription]] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def add_store_listener(self, callback: StoreListener) -> Unsubscribe:
        return self._register(self._store_subs, callback)

    def add_video_listener(self, video_id: str, callback: VideoListener) -> Unsubscribe:
        return self._register_keyed(self._video_subs, video_id, callback)

    def add_session_listener(
        self, session_id: str, callback: SessionListener
    ) -> Unsubscribe:
        return self._register_keyed(self._session_subs, session_id, callback)

    def _register(self, registry: list[_Subscription], callback: Callable) -> Unsubscribe:
        sub = _Subscription(callback)
        registry.append(sub)

        def unsubscribe() -> None:
            # Idempotent; safe to call from inside a callback
            sub.active = False
            try:
                registry.remove(sub)
            except ValueError:
                pass

        return unsubscribe

    def _register_keyed(
        self, registries: dict[str, list[_Subscription]], key: str, callback: Callable
    ) -> Unsubscribe:
        registry = registries.setdefault(key, [])
        unsubscribe = self._register(registry, callback)

        def unsubscribe_keyed() -> None:
            unsubscribe()
            # Drop the key with its last listener
            if not registry and registries.get(key) is registry:
                del registries[key]

        return unsubscribe_keyed

    def listener_count(self) -> int:
        return (
            len(self._store_subs)
            + sum(len(subs) for subs in self._video_subs.values())
            + sum(len(subs) for subs in self._session_subs.values())
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    def publish_video(self, video_id: str, state: VideoState, snapshot: StoreSnapshot) -> None:
        self._dispatch(self._video_subs.get(video_id, []), video_id, state)
        self.publish_store(snapshot)

    def publish_session(
        self, session_id: str, state: SessionState, snapshot: StoreSnapshot
    ) -> None:
        self._dispatch(self._session_subs.get(session_id, []), session_id, state)
        self.publish_store(snapshot)

    def publish_store(self, snapshot: StoreSnapshot) -> None:
        self._dispatch(self._store_subs, snapshot)

    def publish_video_removed(self, video_id: str) -> None:
        self._dispatch(self._video_subs.get(video_id, []), video_id, None)

    def publish_session_removed(self, session_id: str) -> None:
        self._dispatch(self._session_subs.get(session_id, []), session_id, None)

    def _dispatch(self, registry: list[_Subscription], *args) -> None:
        # Iterate a copy so callbacks can (un)subscribe mid-dispatch
        for sub in list(registry):
            if not sub.active:
                continue
            notify(sub.callback, *args)


def notify(callback: Callable, *args) -> None:
    """Invoke one subscriber. A failing subscriber never breaks the others."""
    try:
        callback(*args)
    except Exception as e:
        logger.exception("Subscriber %r raised during dispatch", callback)
        sentry_sdk.capture_exception(e)
