"""
Milestone gate: pauses playback at milestones and surfaces quizzes.

States and transitions:

    WATCHING -> MILESTONE_PENDING     crossing detected, mark request in flight
    MILESTONE_PENDING -> GATED        QUIZ milestone with questions; overlay shown
    MILESTONE_PENDING -> WATCHING     anything else, or the mark failed
    GATED -> WATCHING                 overlay finished (answered or skipped)

Detection only runs while WATCHING, so a second milestone can never start
while one is pending or gated.
"""

import logging
from typing import Protocol

import sentry_sdk

from ..config import EngineSettings
from ..enums import GateState, MilestoneType
from ..gateway import GatewayError
from ..store import SessionNotFoundError, VideoStateStore
from ..types import Milestone

logger = logging.getLogger(__name__)


class Player(Protocol):
    """The video element, as far as the gate is concerned."""

    def play(self) -> None: ...

    def pause(self) -> None: ...


class GateTransitionError(Exception):
    """Raised on a transition the state machine does not allow."""

    pass


ALLOWED_TRANSITIONS: dict[GateState, frozenset[GateState]] = {
    GateState.WATCHING: frozenset({GateState.MILESTONE_PENDING}),
    GateState.MILESTONE_PENDING: frozenset({GateState.GATED, GateState.WATCHING}),
    GateState.GATED: frozenset({GateState.WATCHING}),
}


class MilestoneGate:
    """
    Watches playback position for one session and gates QUIZ milestones.

    Args:
        store: Entity cache holding the session and its video
        session_id: Cached session
        player: Object with play() and pause()
        settings: Detection tolerance
    """

    def __init__(
        self,
        store: VideoStateStore,
        session_id: str,
        player: Player,
        *,
        settings: EngineSettings | None = None,
    ):
        if store.get_session_state(session_id) is None:
            raise SessionNotFoundError(f"Session not cached: {session_id}")

        self.store = store
        self.session_id = session_id
        self.player = player
        self.settings = settings or EngineSettings()

        self._state = GateState.WATCHING
        self._milestone: Milestone | None = None
        self._paused_by_gate = False

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def milestone(self) -> Milestone | None:
        """Milestone being handled (pending or gated), if any."""
        return self._milestone

    def _transition(self, new_state: GateState, milestone: Milestone | None = None) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            raise GateTransitionError(
                f"Cannot move from {self._state.value} to {new_state.value}"
            )

        logger.debug(
            "Gate for session %s: %s -> %s",
            self.session_id,
            self._state.value,
            new_state.value,
        )
        self._state = new_state
        self._milestone = milestone if new_state != GateState.WATCHING else None

        if new_state == GateState.GATED:
            self.store.set_current_milestone(self.session_id, milestone)
        elif new_state == GateState.WATCHING:
            current = self.store.get_session_state(self.session_id)
            if current is not None and current.current_milestone is not None:
                self.store.set_current_milestone(self.session_id, None)

    def find_crossed_milestone(self, current_time: float) -> Milestone | None:
        """
        First unreached milestone within the tolerance window, in milestone order.

        When two milestones share a window only the first fires; the other is
        behind the playhead by the time detection resumes.
        """
        session_state = self.store.get_session_state(self.session_id)
        if session_state is None:
            return None
        video_state = self.store.get_video_state(session_state.session.video_id)
        if video_state is None:
            return None

        tolerance = self.settings.milestone_tolerance
        for milestone in video_state.milestones:
            if milestone.id in session_state.milestone_progress:
                continue
            if abs(current_time - milestone.timestamp) <= tolerance:
                return milestone
        return None

    async def on_position(self, current_time: float) -> Milestone | None:
        """
        Feed a playback position update (e.g. a timeupdate event).

        Returns the milestone that was triggered, or None.
        """
        if self._state != GateState.WATCHING:
            return None

        milestone = self.find_crossed_milestone(current_time)
        if milestone is None:
            return None

        self._transition(GateState.MILESTONE_PENDING, milestone)
        if milestone.type == MilestoneType.QUIZ:
            # Pause before the request so playback cannot run past the quiz
            self.player.pause()
            self._paused_by_gate = True

        try:
            await self.store.mark_milestone_reached(
                self.session_id, milestone.id, milestone.timestamp
            )
        except (GatewayError, SessionNotFoundError) as e:
            # Player stays paused; resuming inside the window retries the mark
            logger.warning(
                "Marking milestone %s failed for session %s: %s",
                milestone.id,
                self.session_id,
                e,
            )
            sentry_sdk.capture_exception(e)
            self._paused_by_gate = False
            self._transition(GateState.WATCHING)
            return None

        video_state = self.store.get_video_state(milestone.video_id)
        has_questions = bool(video_state and video_state.questions_for(milestone.id))
        # PAUSE and CHECKPOINT milestones never hold playback
        if milestone.type == MilestoneType.QUIZ and has_questions:
            self._transition(GateState.GATED, milestone)
        else:
            self._transition(GateState.WATCHING)
            self._resume()
        return milestone

    def complete(self) -> None:
        """The overlay finished: every question was answered or skipped."""
        if self._state != GateState.GATED:
            raise GateTransitionError(
                f"No gated milestone to complete (state is {self._state.value})"
            )
        self._transition(GateState.WATCHING)
        self._resume()

    def _resume(self) -> None:
        if self._paused_by_gate:
            self._paused_by_gate = False
            self.player.play()
