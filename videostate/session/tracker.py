"""
Watch-time and playback-position bookkeeping for one session.

Lifecycle per play/pause cycle:
1. play() records the wall-clock start and schedules the periodic sync job
2. every tick syncs position + accumulated watch time if enough changed
3. pause() (or close() on teardown) adds the elapsed window to the total,
   cancels the job and sends one final sync

Sync failures are logged and retried on the next tick; they never reach
the player.
"""

import logging
import time
from typing import Callable

import sentry_sdk
from apscheduler.jobstores.base import JobLookupError

from ..config import EngineSettings
from ..gateway import GatewayError
from ..scheduler import get_scheduler
from ..store import SessionNotFoundError, VideoStateStore
from ..types import SessionState

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Tracks one session's playback and keeps the backend in sync.

    Args:
        store: The entity cache holding the session
        session_id: Cached session to track
        position_source: Returns the player's current time in seconds
        settings: Sync interval and thresholds
        scheduler: APScheduler instance; defaults to the process-wide one
        clock: Monotonic wall clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        store: VideoStateStore,
        session_id: str,
        position_source: Callable[[], float],
        *,
        settings: EngineSettings | None = None,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        state = store.get_session_state(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session not cached: {session_id}")

        self.store = store
        self.session_id = session_id
        self.settings = settings or EngineSettings()
        self._position_source = position_source
        self._scheduler = scheduler
        self._clock = clock

        # Resume from what the server already counted
        self._accumulated = state.session.total_watch_time
        self._watch_start: float | None = None

        self._reported_position = state.session.current_position
        self._last_synced_position = state.session.current_position
        self._last_sync_at: float | None = None
        self._seek_pending = False
        # Bumped per seek; a sync sent before the latest seek is stale on return
        self._seek_generation = 0

        self._job_id = f"progress_sync_{session_id}"

    # =========================================================================
    # State
    # =========================================================================

    @property
    def is_playing(self) -> bool:
        return self._watch_start is not None

    @property
    def watch_time(self) -> float:
        """Total watch time in seconds, including the running window."""
        if self._watch_start is None:
            return self._accumulated
        return self._accumulated + (self._clock() - self._watch_start)

    # =========================================================================
    # Player events
    # =========================================================================

    def play(self) -> None:
        if self.is_playing:
            return
        self._watch_start = self._clock()
        self._schedule_sync()

    async def pause(self) -> SessionState | None:
        """Close the running watch window and flush it to the backend."""
        if not self.is_playing:
            return None
        self._accumulated += self._clock() - self._watch_start
        self._watch_start = None
        self._cancel_sync()
        return await self.sync(force=True)

    async def close(self) -> SessionState | None:
        """Teardown: same flush as pause, so no watch window is dropped."""
        return await self.pause()

    def seek(self, position: float) -> None:
        """Explicit seek. The next sync may report a lower position."""
        self._reported_position = position
        self._seek_pending = True
        self._seek_generation += 1

    async def complete(self, final_time: float) -> SessionState:
        """Playback ended: flush the watch window and complete the session."""
        if self.is_playing:
            self._accumulated += self._clock() - self._watch_start
            self._watch_start = None
            self._cancel_sync()
        return await self.store.complete_session(
            self.session_id, final_time, self._accumulated
        )

    # =========================================================================
    # Sync
    # =========================================================================

    def _should_sync(self, position: float, now: float) -> bool:
        if self._seek_pending:
            return True
        if abs(position - self._last_synced_position) > self.settings.position_threshold:
            return True
        return (
            self._last_sync_at is None
            or now - self._last_sync_at >= self.settings.max_sync_age
        )

    async def sync(self, force: bool = False) -> SessionState | None:
        """
        Send position and watch time if they changed enough (or if forced).

        Returns the updated session state, or None when skipped or failed.
        """
        position = self._position_source()
        if not self._seek_pending:
            # Never report going backwards without an explicit seek
            position = max(position, self._reported_position)

        now = self._clock()
        if not force and not self._should_sync(position, now):
            return None

        seek = self._seek_pending
        generation = self._seek_generation
        try:
            state = await self.store.update_session_progress(
                self.session_id, position, self.watch_time, seek=seek
            )
        except GatewayError as e:
            # Left unsynced; the next tick (or flush) tries again
            logger.warning("Progress sync failed for session %s: %s", self.session_id, e)
            sentry_sdk.capture_exception(e)
            return None

        if generation != self._seek_generation:
            # A seek happened while this sync was in flight; its position is stale
            return state
        self._reported_position = position
        self._last_synced_position = position
        self._last_sync_at = now
        if seek:
            self._seek_pending = False
        return state

    async def _tick(self) -> None:
        """Scheduler job body."""
        if self.is_playing:
            await self.sync()

    def _schedule_sync(self) -> None:
        scheduler = self._scheduler or get_scheduler()
        if not scheduler:
            logger.warning(
                "Scheduler not initialized, progress for session %s syncs on pause only",
                self.session_id,
            )
            return

        # Cancel first so repeated play() never leaves two jobs running
        self._cancel_sync()
        scheduler.add_job(
            self._tick,
            trigger="interval",
            seconds=self.settings.sync_interval,
            id=self._job_id,
            replace_existing=True,
        )

    def _cancel_sync(self) -> None:
        scheduler = self._scheduler or get_scheduler()
        if not scheduler:
            return
        try:
            scheduler.remove_job(self._job_id)
        except JobLookupError:
            pass
