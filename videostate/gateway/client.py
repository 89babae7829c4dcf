"""
REST gateway for video, milestone, question and session resources.

Thin typed wrapper around httpx. Every call either returns parsed
dataclasses or raises a GatewayError subclass; there are no partial results.
"""

import logging
from typing import Any

import httpx

from ..config import EngineSettings
from ..enums import MilestoneType, QuestionType
from ..types import (
    AnswerVerdict,
    Milestone,
    MilestoneReached,
    Question,
    SessionRecord,
    VideoContent,
)
from .parsing import (
    parse_milestone,
    parse_milestone_reached,
    parse_question,
    parse_session_record,
    parse_verdict,
    parse_video_content,
)

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for failed gateway calls."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Network failure, timeout or server error. Safe to retry."""


class NotFoundError(GatewayError):
    """The requested resource does not exist."""


class RejectedRequestError(GatewayError):
    """The server rejected the request as invalid."""


class MalformedResponseError(GatewayError):
    """The response body could not be parsed."""


REJECTED_STATUS_CODES = frozenset({400, 409, 422})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


def _unwrap(body: Any) -> Any:
    """Strip the {"success": ..., "data": ...} envelope when present."""
    if isinstance(body, dict) and "data" in body and (
        "success" in body or len(body) == 1
    ):
        return body["data"]
    return body


class VideoGateway:
    """
    Async client for the lesson platform REST API.

    Args:
        settings: Base URL, timeout and token
        include_answer_keys: Keep question answer keys (authoring roles only)
        client: Pre-built httpx.AsyncClient, mainly for tests
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        include_answer_keys: bool = False,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.include_answer_keys = include_answer_keys

        if client is None:
            headers = {"Accept": "application/json"}
            if self.settings.api_token:
                headers["Authorization"] = f"Bearer {self.settings.api_token}"
            client = httpx.AsyncClient(
                base_url=self.settings.api_url,
                headers=headers,
                timeout=self.settings.request_timeout,
            )
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out", method, path)
            raise TransientGatewayError(f"Request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransientGatewayError(f"Request failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(_error_message(response), status_code=404)
        if response.status_code in REJECTED_STATUS_CODES:
            raise RejectedRequestError(
                _error_message(response), status_code=response.status_code
            )
        if response.is_error:
            logger.warning("%s %s returned %d", method, path, response.status_code)
            raise TransientGatewayError(
                _error_message(response), status_code=response.status_code
            )

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response is not JSON: {method} {path}") from e
        return _unwrap(body)

    @staticmethod
    def _parse(parser, data, *args, **kwargs):
        try:
            return parser(data, *args, **kwargs)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unparseable response for %s: %s", parser.__name__, e)
            raise MalformedResponseError(f"Malformed response: {e}") from e

    # =========================================================================
    # Videos
    # =========================================================================

    async def get_video(self, video_id: str) -> VideoContent:
        data = await self._request("GET", f"/videos/{video_id}")
        if not data:
            raise NotFoundError(f"Video not found: {video_id}", status_code=404)
        return self._parse(
            parse_video_content, data, include_answer_keys=self.include_answer_keys
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def get_session_by_video(self, video_id: str) -> SessionRecord | None:
        """Existing session for the current student, or None if there is none."""
        try:
            data = await self._request("GET", f"/sessions/video/{video_id}")
        except NotFoundError:
            return None
        if not data:
            return None
        return self._parse(parse_session_record, data)

    async def start_session(self, video_id: str) -> SessionRecord:
        data = await self._request("POST", "/sessions/start", {"videoId": video_id})
        return self._parse(parse_session_record, data)

    async def update_progress(
        self, session_id: str, current_time: float, total_watch_time: float
    ) -> SessionRecord:
        data = await self._request(
            "PUT",
            f"/sessions/{session_id}/progress",
            {"currentTime": current_time, "totalWatchTime": total_watch_time},
        )
        return self._parse(parse_session_record, data)

    async def mark_milestone(
        self, session_id: str, milestone_id: str, timestamp: float
    ) -> MilestoneReached:
        data = await self._request(
            "POST",
            f"/sessions/{session_id}/milestone",
            {"milestoneId": milestone_id, "timestamp": timestamp},
        )
        if not data:
            return MilestoneReached(
                session_id=session_id, milestone_id=milestone_id, timestamp=timestamp
            )
        return self._parse(parse_milestone_reached, data, session_id)

    async def submit_answer(
        self, session_id: str, question_id: str, milestone_id: str, answer: str
    ) -> AnswerVerdict:
        data = await self._request(
            "POST",
            f"/sessions/{session_id}/question",
            {"questionId": question_id, "milestoneId": milestone_id, "answer": answer},
        )
        return self._parse(parse_verdict, data)

    async def complete_session(
        self, session_id: str, final_time: float, total_watch_time: float
    ) -> SessionRecord:
        data = await self._request(
            "PUT",
            f"/sessions/{session_id}/complete",
            {"finalTime": final_time, "totalWatchTime": total_watch_time},
        )
        return self._parse(parse_session_record, data)

    # =========================================================================
    # Authoring
    # =========================================================================

    async def create_milestone(
        self,
        video_id: str,
        *,
        timestamp: float,
        title: str,
        type: MilestoneType,
        description: str | None = None,
    ) -> Milestone:
        payload = {
            "videoId": video_id,
            "timestamp": timestamp,
            "title": title,
            "type": MilestoneType(type).value,
        }
        if description is not None:
            payload["description"] = description
        data = await self._request("POST", "/milestones", payload)
        return self._parse(parse_milestone, data, video_id=video_id)

    async def update_milestone(self, milestone_id: str, **changes) -> Milestone:
        """Update a milestone. Accepts timestamp, title, description and type."""
        payload = {k: v for k, v in changes.items() if v is not None}
        if "type" in payload:
            payload["type"] = MilestoneType(payload["type"]).value
        data = await self._request("PUT", f"/milestones/{milestone_id}", payload)
        return self._parse(parse_milestone, data)

    async def create_question(
        self,
        milestone_id: str,
        *,
        type: QuestionType,
        question: str,
        correct_answer: str,
        options: list[str] | None = None,
        explanation: str | None = None,
    ) -> Question:
        payload = {
            "type": QuestionType(type).value,
            "question": question,
            "correctAnswer": correct_answer,
        }
        if options is not None:
            payload["options"] = options
        if explanation is not None:
            payload["explanation"] = explanation
        data = await self._request(
            "POST", f"/milestones/{milestone_id}/questions", payload
        )
        return self._parse(parse_question, data, milestone_id, include_answer_key=True)

    async def delete_question(self, question_id: str) -> None:
        await self._request("DELETE", f"/questions/{question_id}")
