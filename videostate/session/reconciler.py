"""Submit quiz answers and fold the server's verdict into the session cache."""

import logging

from ..gateway import GatewayError
from ..store import VideoStateStore
from ..types import AnswerVerdict, QuestionAttempt, utc_now

logger = logging.getLogger(__name__)


class AnswerReconciler:
    """
    Correctness is decided server-side only. Nothing is written to the cache
    until the verdict arrives, and a failed submission leaves the cache
    untouched so the quiz can offer a retry.
    """

    def __init__(self, store: VideoStateStore):
        self.store = store

    async def submit_answer(
        self,
        session_id: str,
        question_id: str,
        raw_answer: str,
        milestone_id: str,
    ) -> AnswerVerdict:
        """
        Submit an answer and record the verdict as the question's latest attempt.

        Raises:
            SessionNotFoundError: If the session is not cached
            GatewayError: If the submission fails or is rejected
        """
        self.store.require_session(session_id)

        try:
            verdict = await self.store.gateway.submit_answer(
                session_id, question_id, milestone_id, raw_answer
            )
        except GatewayError as e:
            logger.warning(
                "Answer for question %s in session %s failed: %s",
                question_id,
                session_id,
                e,
            )
            raise

        self.store.apply_question_attempt(
            session_id,
            QuestionAttempt(
                question_id=question_id,
                milestone_id=milestone_id,
                is_correct=verdict.is_correct,
                score=verdict.score,
                submitted_at=utc_now(),
                explanation=verdict.explanation,
            ),
        )
        logger.info(
            "Session %s question %s answered (correct=%s)",
            session_id,
            question_id,
            verdict.is_correct,
        )
        return verdict
