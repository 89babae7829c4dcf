"""
In-memory entity cache for video content and student sessions.

The store is the only owner of VideoState/SessionState. Every change
replaces the affected aggregate in one synchronous step (no await between
reading the old aggregate and storing the new one) and then publishes it.

Failure handling:
- A failed fetch is recorded in metadata.error and published.
- When usable cached data exists it is kept and returned (stale-but-valid).
- When no usable data exists the error is raised to the caller.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from functools import partial
from typing import Hashable, Iterable

from ..gateway import GatewayError
from ..progress import (
    calculate_answer_stats,
    calculate_completion_percentage,
    calculate_milestones_reached,
)
from ..types import (
    Milestone,
    Question,
    QuestionAttempt,
    SessionRecord,
    SessionState,
    StoreSnapshot,
    Video,
    VideoContent,
    VideoMetadata,
    VideoSession,
    VideoState,
    utc_now,
)
from .hub import (
    SessionListener,
    StoreListener,
    SubscriptionHub,
    Unsubscribe,
    VideoListener,
    notify,
)

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    """Raised when a session id is not in the cache."""

    pass


class MilestoneNotFoundError(Exception):
    """Raised when a milestone id is not part of a cached video."""

    pass


def _error_text(error: Exception) -> str:
    return str(error) or type(error).__name__


def _content_metadata(
    base: VideoMetadata,
    milestones: list[Milestone] | tuple[Milestone, ...],
    questions: dict[str, tuple[Question, ...]],
) -> VideoMetadata:
    per_milestone = {m.id: len(questions.get(m.id, ())) for m in milestones}
    return replace(
        base,
        questions_per_milestone=per_milestone,
        total_milestones=len(milestones),
        total_questions=sum(per_milestone.values()),
        last_updated=utc_now(),
    )


class VideoStateStore:
    """
    Keyed cache of VideoState and SessionState with change notifications.

    Args:
        gateway: Remote gateway (see videostate.gateway.VideoGateway)
        max_cached_videos: Optional LRU bound for video entries
    """

    def __init__(self, gateway, *, max_cached_videos: int | None = None):
        self.gateway = gateway
        self.max_cached_videos = max_cached_videos

        self._videos: OrderedDict[str, VideoState] = OrderedDict()
        self._sessions: dict[str, SessionState] = {}
        self._hub = SubscriptionHub()

        # In-flight requests shared by concurrent callers
        self._video_fetches: dict[str, asyncio.Task] = {}
        self._milestone_marks: dict[tuple[str, str], asyncio.Task] = {}

        # Explicit seeks per session; replies to requests sent before the
        # latest seek carry a superseded position
        self._seek_counts: dict[str, int] = {}

    # =========================================================================
    # Reads and subscriptions
    # =========================================================================

    def get_video_state(self, video_id: str) -> VideoState | None:
        return self._videos.get(video_id)

    def get_session_state(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot.of(self._videos, self._sessions)

    def subscribe(self, callback: StoreListener) -> Unsubscribe:
        """Observe every change. Called once right away with the current store."""
        unsubscribe = self._hub.add_store_listener(callback)
        notify(callback, self.snapshot())
        return unsubscribe

    def subscribe_to_video(self, video_id: str, callback: VideoListener) -> Unsubscribe:
        """
        Observe one video. Called right away if the video is cached, and with
        None when the video is cleared or evicted.
        """
        unsubscribe = self._hub.add_video_listener(video_id, callback)
        state = self._videos.get(video_id)
        if state is not None:
            notify(callback, video_id, state)
        return unsubscribe

    def subscribe_to_session(
        self, session_id: str, callback: SessionListener
    ) -> Unsubscribe:
        """
        Observe one session. Called right away if the session is cached, and
        with None when the session is cleared.
        """
        unsubscribe = self._hub.add_session_listener(session_id, callback)
        state = self._sessions.get(session_id)
        if state is not None:
            notify(callback, session_id, state)
        return unsubscribe

    # =========================================================================
    # Internal write path
    # =========================================================================

    def _put_video(self, state: VideoState) -> None:
        self._videos[state.video_id] = state
        self._videos.move_to_end(state.video_id)
        evicted = self._evict_videos(keep=state.video_id)
        self._hub.publish_video(state.video_id, state, self.snapshot())
        for video_id in evicted:
            self._hub.publish_video_removed(video_id)

    def _put_session(self, state: SessionState) -> None:
        self._sessions[state.session.id] = state
        self._hub.publish_session(state.session.id, state, self.snapshot())

    def _evict_videos(self, keep: str) -> list[str]:
        if not self.max_cached_videos:
            return []

        in_use = {s.session.video_id for s in self._sessions.values()}
        evicted = []
        for video_id in list(self._videos):
            if len(self._videos) <= self.max_cached_videos:
                break
            if video_id == keep or video_id in self._video_fetches or video_id in in_use:
                continue
            del self._videos[video_id]
            evicted.append(video_id)
            logger.debug("Evicted video %s from cache", video_id)
        return evicted

    def _share(self, registry: dict, key: Hashable, factory) -> asyncio.Future:
        """Return the in-flight task for key, starting one if there is none."""
        task = registry.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            registry[key] = task
            task.add_done_callback(partial(self._request_done, registry, key))
        # Shield so a cancelled caller does not cancel the shared request
        return asyncio.shield(task)

    @staticmethod
    def _request_done(registry: dict, key: Hashable, task: asyncio.Task) -> None:
        if registry.get(key) is task:
            del registry[key]
        if not task.cancelled():
            # Mark the exception retrieved; every caller re-raises it anyway
            task.exception()

    def require_session(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session not cached: {session_id}")
        return state

    def _video_for(self, session: VideoSession) -> Video | None:
        state = self._videos.get(session.video_id)
        return state.video if state else None

    def _with_session(self, state: SessionState, session: VideoSession, **changes) -> SessionState:
        """Swap in a new session record and refresh the derived completion."""
        metadata = replace(
            state.metadata,
            completion_percentage=calculate_completion_percentage(
                session, self._video_for(session)
            ),
            milestones_reached=calculate_milestones_reached(state.milestone_progress),
            last_updated=utc_now(),
            **changes,
        )
        return replace(state, session=session, metadata=metadata)

    def _record_session_error(self, session_id: str, error: Exception) -> None:
        state = self._sessions.get(session_id)
        if state is None:
            return
        self._put_session(
            replace(
                state,
                metadata=replace(
                    state.metadata, error=_error_text(error), last_updated=utc_now()
                ),
            )
        )

    # =========================================================================
    # Videos
    # =========================================================================

    async def load_video(self, video_id: str, force_refresh: bool = False) -> VideoState:
        """
        Return the cached video, fetching it when missing or when forced.

        Concurrent calls for the same id share a single request.

        Raises:
            GatewayError: If the fetch fails and nothing usable is cached
        """
        existing = self._videos.get(video_id)
        if existing is not None and existing.video is not None and not force_refresh:
            self._videos.move_to_end(video_id)
            return existing

        if video_id not in self._video_fetches:
            current = existing or VideoState(video_id=video_id)
            self._put_video(
                replace(
                    current,
                    metadata=replace(
                        current.metadata, is_loading=True, error=None, last_updated=utc_now()
                    ),
                )
            )

        return await self._share(
            self._video_fetches, video_id, partial(self._fetch_video, video_id)
        )

    async def _fetch_video(self, video_id: str) -> VideoState:
        try:
            content = await self.gateway.get_video(video_id)
        except GatewayError as e:
            return self._video_fetch_failed(video_id, e)

        state = self._video_state_from_content(video_id, content)
        self._put_video(state)
        logger.debug(
            "Loaded video %s with %d milestones", video_id, len(state.milestones)
        )
        return state

    def _video_fetch_failed(self, video_id: str, error: GatewayError) -> VideoState:
        current = self._videos.get(video_id) or VideoState(video_id=video_id)
        failed = replace(
            current,
            metadata=replace(
                current.metadata,
                is_loading=False,
                error=_error_text(error),
                last_updated=utc_now(),
            ),
        )
        self._put_video(failed)

        if failed.video is not None:
            logger.warning(
                "Refreshing video %s failed, serving cached copy: %s", video_id, error
            )
            return failed

        logger.warning("Loading video %s failed: %s", video_id, error)
        raise error

    @staticmethod
    def _video_state_from_content(video_id: str, content: VideoContent) -> VideoState:
        milestones = sorted(content.milestones, key=lambda m: m.timestamp)
        questions = {mid: tuple(qs) for mid, qs in content.questions.items()}
        for milestone in milestones:
            questions.setdefault(milestone.id, ())
        return VideoState(
            video_id=video_id,
            video=content.video,
            milestones=tuple(milestones),
            questions=questions,
            metadata=_content_metadata(VideoMetadata(), milestones, questions),
        )

    async def _require_video_content(self, video_id: str) -> VideoState:
        state = self._videos.get(video_id)
        if state is None or state.video is None:
            state = await self.load_video(video_id)
        return state

    def _replace_content(
        self,
        state: VideoState,
        milestones: list[Milestone],
        questions: dict[str, tuple[Question, ...]],
    ) -> VideoState:
        # Stable sort keeps authoring order for equal timestamps
        milestones = sorted(milestones, key=lambda m: m.timestamp)
        updated = replace(
            state,
            milestones=tuple(milestones),
            questions=questions,
            metadata=_content_metadata(state.metadata, milestones, questions),
        )
        self._put_video(updated)
        return updated

    async def add_milestone(self, video_id: str, milestone: Milestone) -> VideoState:
        """Apply a server-confirmed milestone. A known id is replaced."""
        state = await self._require_video_content(video_id)

        milestones = [m for m in state.milestones if m.id != milestone.id]
        milestones.append(milestone)
        questions = dict(state.questions)
        questions.setdefault(milestone.id, ())
        return self._replace_content(state, milestones, questions)

    async def add_question(
        self, video_id: str, milestone_id: str, question: Question
    ) -> VideoState:
        """Apply a server-confirmed question. A known id is replaced in place."""
        return await self.add_questions(video_id, milestone_id, [question])

    async def add_questions(
        self, video_id: str, milestone_id: str, questions: Iterable[Question]
    ) -> VideoState:
        """
        Apply a batch of server-confirmed questions (e.g. generated ones) in
        one change. Known ids are replaced in place, new ones appended in order.
        """
        state = await self._require_video_content(video_id)
        if state.find_milestone(milestone_id) is None:
            raise MilestoneNotFoundError(
                f"Milestone {milestone_id} not found in video {video_id}"
            )

        existing = list(state.questions_for(milestone_id))
        for question in questions:
            for i, q in enumerate(existing):
                if q.id == question.id:
                    existing[i] = question
                    break
            else:
                existing.append(question)

        questions = dict(state.questions)
        questions[milestone_id] = tuple(existing)
        return self._replace_content(state, list(state.milestones), questions)

    def update_milestone(self, video_id: str, milestone: Milestone) -> VideoState | None:
        """Replace a cached milestone by id. No-op if the video or id is unknown."""
        state = self._videos.get(video_id)
        if state is None or state.find_milestone(milestone.id) is None:
            return None

        milestones = [milestone if m.id == milestone.id else m for m in state.milestones]
        return self._replace_content(state, milestones, dict(state.questions))

    def remove_question(
        self, video_id: str, milestone_id: str, question_id: str
    ) -> VideoState | None:
        state = self._videos.get(video_id)
        if state is None:
            return None

        questions = dict(state.questions)
        questions[milestone_id] = tuple(
            q for q in state.questions_for(milestone_id) if q.id != question_id
        )
        return self._replace_content(state, list(state.milestones), questions)

    def clear_cache(self, video_id: str | None = None) -> None:
        """Drop one video, or every video and session. Scoped subscribers get None."""
        if video_id is not None:
            removed_videos = [video_id] if self._videos.pop(video_id, None) else []
            removed_sessions = []
        else:
            removed_videos = list(self._videos)
            removed_sessions = list(self._sessions)
            self._videos.clear()
            self._sessions.clear()
            self._seek_counts.clear()

        for removed in removed_videos:
            self._hub.publish_video_removed(removed)
        for removed in removed_sessions:
            self._hub.publish_session_removed(removed)
        self._hub.publish_store(self.snapshot())

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_or_resume_session(self, video_id: str) -> SessionState:
        """
        Resume the student's session for a video, or start a new one.

        Raises:
            GatewayError: If neither lookup nor creation succeeds
        """
        record = await self.gateway.get_session_by_video(video_id)
        if record is None:
            logger.info("No session for video %s, starting a new one", video_id)
            record = await self.gateway.start_session(video_id)

        # Needed for completion percentage; a session without it is still usable
        try:
            await self._require_video_content(video_id)
        except GatewayError as e:
            logger.warning("Session for video %s started without video data: %s", video_id, e)

        state = self._session_state_from_record(record)
        existing = self._sessions.get(record.session.id)
        if existing is not None:
            state = self._merge_resumed(existing, state)

        self._put_session(state)
        return state

    def _session_state_from_record(self, record: SessionRecord) -> SessionState:
        attempts = {a.question_id: a for a in record.attempts}
        correct, total = calculate_answer_stats(attempts.values())
        state = SessionState(
            session=record.session,
            milestone_progress=frozenset(record.reached_milestone_ids),
            question_attempts=attempts,
        )
        return self._with_session(
            state, record.session, correct_answers=correct, total_answers=total
        )

    def _merge_resumed(self, existing: SessionState, fresh: SessionState) -> SessionState:
        """Fold a refetched session into the cached one without losing local progress."""
        session = replace(
            fresh.session,
            current_position=max(
                existing.session.current_position, fresh.session.current_position
            ),
            total_watch_time=max(
                existing.session.total_watch_time, fresh.session.total_watch_time
            ),
        )
        attempts = {**existing.question_attempts, **fresh.question_attempts}
        correct, total = calculate_answer_stats(attempts.values())
        merged = replace(
            fresh,
            milestone_progress=existing.milestone_progress | fresh.milestone_progress,
            question_attempts=attempts,
            current_milestone=existing.current_milestone,
        )
        return self._with_session(
            merged, session, correct_answers=correct, total_answers=total
        )

    async def update_session_progress(
        self,
        session_id: str,
        current_time: float,
        total_watch_time: float,
        seek: bool = False,
    ) -> SessionState:
        """
        Record playback position and watch time, then sync them.

        The position is advanced locally first. Without seek=True the cached
        position never moves backwards, neither from the caller nor from a
        late server response. A reply to a request sent before a later seek
        never overrides the seeked position.

        Raises:
            SessionNotFoundError: If the session is not cached
            GatewayError: If the sync fails (recorded in metadata.error too)
        """
        state = self.require_session(session_id)
        position = (
            current_time if seek else max(state.session.current_position, current_time)
        )
        watch_time = max(state.session.total_watch_time, total_watch_time)
        if seek:
            self._seek_counts[session_id] = self._seek_counts.get(session_id, 0) + 1
        seeks_at_send = self._seek_counts.get(session_id, 0)

        local = replace(
            state.session, current_position=position, total_watch_time=watch_time
        )
        self._put_session(self._with_session(state, local))

        try:
            record = await self.gateway.update_progress(session_id, position, watch_time)
        except GatewayError as e:
            self._record_session_error(session_id, e)
            raise

        current = self.require_session(session_id)
        superseded = self._seek_counts.get(session_id, 0) != seeks_at_send
        if seek or superseded:
            confirmed_position = current.session.current_position
        else:
            confirmed_position = max(
                current.session.current_position, record.session.current_position
            )
        session = replace(
            record.session,
            current_position=confirmed_position,
            total_watch_time=max(
                current.session.total_watch_time, record.session.total_watch_time
            ),
        )
        updated = self._with_session(current, session, error=None)
        self._put_session(updated)
        return updated

    async def mark_milestone_reached(
        self, session_id: str, milestone_id: str, timestamp: float
    ) -> SessionState:
        """
        Record that a milestone was reached. Idempotent per session.

        Already-reached milestones return immediately without a request;
        concurrent marks for the same milestone share one request.
        """
        state = self.require_session(session_id)
        if milestone_id in state.milestone_progress:
            return state

        return await self._share(
            self._milestone_marks,
            (session_id, milestone_id),
            partial(self._send_milestone_mark, session_id, milestone_id, timestamp),
        )

    async def _send_milestone_mark(
        self, session_id: str, milestone_id: str, timestamp: float
    ) -> SessionState:
        try:
            await self.gateway.mark_milestone(session_id, milestone_id, timestamp)
        except GatewayError as e:
            self._record_session_error(session_id, e)
            raise

        state = self.require_session(session_id)
        if milestone_id in state.milestone_progress:
            return state

        reached = state.milestone_progress | {milestone_id}
        updated = replace(
            state,
            milestone_progress=reached,
            metadata=replace(
                state.metadata,
                milestones_reached=calculate_milestones_reached(reached),
                error=None,
                last_updated=utc_now(),
            ),
        )
        self._put_session(updated)
        logger.info("Session %s reached milestone %s", session_id, milestone_id)
        return updated

    def set_current_milestone(
        self, session_id: str, milestone: Milestone | None
    ) -> SessionState:
        state = self.require_session(session_id)
        updated = replace(
            state,
            current_milestone=milestone,
            metadata=replace(state.metadata, last_updated=utc_now()),
        )
        self._put_session(updated)
        return updated

    def apply_question_attempt(
        self, session_id: str, attempt: QuestionAttempt
    ) -> SessionState:
        """Store the latest verdict for a question, replacing any earlier one."""
        state = self.require_session(session_id)

        attempts = dict(state.question_attempts)
        attempts[attempt.question_id] = attempt
        # Recount from the whole map rather than adjusting the old counts
        correct, total = calculate_answer_stats(attempts.values())

        updated = replace(
            state,
            question_attempts=attempts,
            metadata=replace(
                state.metadata,
                correct_answers=correct,
                total_answers=total,
                error=None,
                last_updated=utc_now(),
            ),
        )
        self._put_session(updated)
        return updated

    async def complete_session(
        self, session_id: str, final_time: float, total_watch_time: float
    ) -> SessionState:
        """Mark the session COMPLETED on the server and in the cache."""
        self.require_session(session_id)
        try:
            record = await self.gateway.complete_session(
                session_id, final_time, total_watch_time
            )
        except GatewayError as e:
            self._record_session_error(session_id, e)
            raise

        current = self.require_session(session_id)
        session = replace(
            record.session,
            total_watch_time=max(
                current.session.total_watch_time, record.session.total_watch_time
            ),
        )
        updated = self._with_session(
            replace(current, current_milestone=None), session, error=None
        )
        self._put_session(updated)
        logger.info("Session %s completed", session_id)
        return updated
