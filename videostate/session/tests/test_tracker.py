"""Tests for the progress tracker."""

import asyncio
import logging
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.jobstores.base import JobLookupError

from videostate.gateway import TransientGatewayError
from videostate.session import ProgressTracker
from videostate.store import SessionNotFoundError

VIDEO_ID = "video-1"
SESSION_ID = f"session-{VIDEO_ID}"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlayer:
    """Position source with a settable current time."""

    def __init__(self, position: float = 0.0):
        self.position = position

    def __call__(self) -> float:
        return self.position


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def scheduler():
    return MagicMock()


async def _tracker(store, player, clock, scheduler, settings):
    await store.start_or_resume_session(VIDEO_ID)
    return ProgressTracker(
        store, SESSION_ID, player, settings=settings, scheduler=scheduler, clock=clock
    )


class TestConstruction:
    def test_unknown_session_raises(self, store, player):
        with pytest.raises(SessionNotFoundError):
            ProgressTracker(store, "nope", player)

    @pytest.mark.asyncio
    async def test_resumes_watch_time_from_session(self, store, player, clock, scheduler, settings):
        await store.start_or_resume_session(VIDEO_ID)
        await store.update_session_progress(SESSION_ID, 40.0, 35.0)

        tracker = ProgressTracker(
            store, SESSION_ID, player, settings=settings, scheduler=scheduler, clock=clock
        )

        assert tracker.watch_time == 35.0


class TestScheduling:
    @pytest.mark.asyncio
    async def test_play_schedules_interval_job(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()

        scheduler.add_job.assert_called_once()
        call_kwargs = scheduler.add_job.call_args[1]
        assert call_kwargs["id"] == f"progress_sync_{SESSION_ID}"
        assert call_kwargs["trigger"] == "interval"
        assert call_kwargs["seconds"] == 5.0
        assert call_kwargs["replace_existing"] is True

    @pytest.mark.asyncio
    async def test_play_twice_schedules_once(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()
        tracker.play()

        assert scheduler.add_job.call_count == 1

    @pytest.mark.asyncio
    async def test_pause_removes_job(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        tracker.play()

        await tracker.pause()

        scheduler.remove_job.assert_called_with(f"progress_sync_{SESSION_ID}")

    @pytest.mark.asyncio
    async def test_missing_job_on_cancel_is_ignored(self, store, player, clock, scheduler, settings):
        scheduler.remove_job.side_effect = JobLookupError(f"progress_sync_{SESSION_ID}")
        tracker = await _tracker(store, player, clock, scheduler, settings)
        tracker.play()

        await tracker.pause()

        assert not tracker.is_playing

    @pytest.mark.asyncio
    async def test_uses_process_scheduler_by_default(self, store, player, clock, settings):
        await store.start_or_resume_session(VIDEO_ID)
        mock_scheduler = MagicMock()

        with patch("videostate.scheduler._scheduler", mock_scheduler):
            tracker = ProgressTracker(store, SESSION_ID, player, settings=settings, clock=clock)
            tracker.play()

        mock_scheduler.add_job.assert_called_once()

    @pytest.mark.asyncio
    async def test_warns_when_scheduler_not_initialized(self, store, player, clock, settings, caplog):
        await store.start_or_resume_session(VIDEO_ID)

        with caplog.at_level(logging.WARNING):
            with patch("videostate.scheduler._scheduler", None):
                tracker = ProgressTracker(store, SESSION_ID, player, settings=settings, clock=clock)
                tracker.play()

        assert tracker.is_playing
        assert any(
            "not initialized" in record.message.lower() for record in caplog.records
        )


class TestWatchTime:
    @pytest.mark.asyncio
    async def test_play_pause_accumulates_watch_time(self, gateway, store, player, clock, scheduler, settings):
        """Playing for 15 seconds then pausing reports 15 seconds watched."""
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()
        clock.advance(15)
        player.position = 15.0
        state = await tracker.pause()

        assert tracker.watch_time == 15.0
        assert state.session.total_watch_time == 15.0
        assert gateway.calls[-1] == ("update_progress", SESSION_ID, 15.0, 15.0)

    @pytest.mark.asyncio
    async def test_paused_time_is_not_counted(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()
        clock.advance(10)
        await tracker.pause()
        clock.advance(100)
        tracker.play()
        clock.advance(5)
        await tracker.pause()

        assert tracker.watch_time == 15.0

    @pytest.mark.asyncio
    async def test_watch_time_includes_running_window(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()
        clock.advance(7)

        assert tracker.watch_time == 7.0

    @pytest.mark.asyncio
    async def test_pause_when_not_playing_is_noop(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        assert await tracker.pause() is None
        assert gateway.count("update_progress") == 0

    @pytest.mark.asyncio
    async def test_close_flushes_running_window(self, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        tracker.play()
        clock.advance(12)
        state = await tracker.close()

        assert state.session.total_watch_time == 12.0
        assert not tracker.is_playing


class TestSync:
    @pytest.mark.asyncio
    async def test_unchanged_position_is_not_resent(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 10.0

        assert await tracker.sync() is not None
        clock.advance(5)
        assert await tracker.sync() is None

        assert gateway.count("update_progress") == 1

    @pytest.mark.asyncio
    async def test_movement_past_threshold_syncs(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 10.0
        await tracker.sync()

        player.position = 12.0
        clock.advance(2)
        await tracker.sync()

        assert gateway.count("update_progress") == 2

    @pytest.mark.asyncio
    async def test_old_sync_is_refreshed(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 10.0
        await tracker.sync()

        clock.advance(30)
        await tracker.sync()

        assert gateway.count("update_progress") == 2

    @pytest.mark.asyncio
    async def test_failed_sync_is_retried(self, gateway, store, player, clock, scheduler, settings, caplog):
        """A failed sync is logged, never raised, and retried on the next tick."""
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 20.0
        gateway.failures["update_progress"] = TransientGatewayError("offline")

        with caplog.at_level(logging.WARNING):
            assert await tracker.sync() is None

        assert any("Progress sync failed" in r.message for r in caplog.records)

        del gateway.failures["update_progress"]
        state = await tracker.sync()

        assert state is not None
        assert state.session.current_position == 20.0
        assert state.metadata.error is None

    @pytest.mark.asyncio
    async def test_reported_position_never_goes_backwards(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 100.0
        await tracker.sync()

        player.position = 50.0
        await tracker.sync(force=True)

        assert gateway.calls[-1][2] == 100.0

    @pytest.mark.asyncio
    async def test_seek_reports_lower_position(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 100.0
        await tracker.sync()

        player.position = 20.0
        tracker.seek(20.0)
        state = await tracker.sync()

        assert gateway.calls[-1][2] == 20.0
        assert state.session.current_position == 20.0

        # Seek is consumed; later syncs are monotonic again
        player.position = 10.0
        await tracker.sync(force=True)
        assert gateway.calls[-1][2] == 20.0

    @pytest.mark.asyncio
    async def test_sync_finishing_after_seek_reply_is_ignored(self, gateway, store, player, clock, scheduler, settings):
        """A sync sent before a seek must not overwrite the seeked position on return."""
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 90.0
        await tracker.sync()
        gateway.manual = True

        player.position = 100.0
        forward = asyncio.ensure_future(tracker.sync())
        await asyncio.sleep(0)
        player.position = 10.0
        tracker.seek(10.0)
        back = asyncio.ensure_future(tracker.sync())
        await asyncio.sleep(0)

        gateway.waiting[1].set()
        await back
        gateway.waiting[0].set()
        state = await forward

        assert state.session.current_position == 10.0
        gateway.manual = False
        player.position = 12.0
        await tracker.sync(force=True)
        assert gateway.calls[-1][2] == 12.0

    @pytest.mark.asyncio
    async def test_stale_sync_leaves_seek_for_next_sync(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        player.position = 90.0
        await tracker.sync()
        gateway.manual = True

        player.position = 100.0
        forward = asyncio.ensure_future(tracker.sync())
        await asyncio.sleep(0)
        player.position = 10.0
        tracker.seek(10.0)
        gateway.waiting[0].set()
        await forward
        gateway.manual = False

        await tracker.sync()

        assert gateway.calls[-1][2] == 10.0
        assert store.get_session_state(SESSION_ID).session.current_position == 10.0

    @pytest.mark.asyncio
    async def test_tick_only_syncs_while_playing(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)

        await tracker._tick()
        assert gateway.count("update_progress") == 0

        tracker.play()
        player.position = 5.0
        clock.advance(5)
        await tracker._tick()
        assert gateway.count("update_progress") == 1


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_sends_watch_time(self, gateway, store, player, clock, scheduler, settings):
        tracker = await _tracker(store, player, clock, scheduler, settings)
        tracker.play()
        clock.advance(295)

        state = await tracker.complete(300.0)

        assert gateway.calls[-1] == ("complete_session", SESSION_ID, 300.0, 295.0)
        assert state.metadata.completion_percentage == 100
        assert not tracker.is_playing
        scheduler.remove_job.assert_called_with(f"progress_sync_{SESSION_ID}")
