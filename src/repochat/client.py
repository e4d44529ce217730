"""Async client for the /chat stream, used by the CLI."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from .config import get_history_cap
from .core import Citation, parse_citations
from .frames import Frame, FrameDecoder
from .history import build_history
from .provider import CancellableStream, CancelToken
from .resolver import infer_active_repo
from .session import DELTA, DONE, ERROR, GENERIC_FAILURE, META, TERMINAL_STATES, TurnState

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """What the visitor ends up seeing for one turn."""

    state: TurnState = TurnState.STREAMING
    answer: str = ""
    citations: list[Citation] = field(default_factory=list)
    repo: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    warning: Optional[str] = None


class ChatClient:
    """One visitor's conversation with a repochat server.

    Only one turn streams at a time: asking again, switching sessions or
    starting a new one cancels whatever is in flight.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8080",
        visitor_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        history_cap: int | None = None,
    ):
        self.visitor_id = visitor_id or uuid.uuid4().hex
        self.session_id: str | None = None
        self.active_repo: str | None = None
        self.messages: list[dict] = []
        self.sessions: list[dict] = []
        self.history_cap = history_cap if history_cap is not None else get_history_cap()
        self._http = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(10.0, read=None))
        self._owns_http = client is None
        self._inflight: CancelToken | None = None

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_http:
            await self._http.aclose()

    def cancel(self) -> bool:
        """Cancel the streaming turn, if any. Never raises or reports an error."""
        token, self._inflight = self._inflight, None
        if token is None or token.cancelled:
            return False
        token.cancel()
        return True

    def new_session(self) -> None:
        self.cancel()
        self.session_id = None
        self.active_repo = None
        self.messages = []

    async def ask(
        self,
        question: str,
        on_delta: Callable[[str], None] | None = None,
    ) -> TurnResult:
        """Send a question and consume the answer stream."""
        self.cancel()
        token = CancelToken()
        self._inflight = token

        result = TurnResult(repo=self.active_repo, session_id=self.session_id)
        payload = {
            "question": question,
            "stream": True,
            "history": build_history(self.messages, self.history_cap),
            "visitorId": self.visitor_id,
        }
        if self.session_id:
            payload["sessionId"] = self.session_id
        if self.active_repo:
            payload["repo"] = self.active_repo

        decoder = FrameDecoder()
        try:
            async with self._http.stream("POST", "/chat", json=payload) as response:
                if response.status_code != 200:
                    logger.warning("Chat request failed with HTTP %d", response.status_code)
                    return self._finish(token, _failed(result))

                body = CancellableStream(response.aiter_bytes(), token)
                try:
                    async for chunk in body:
                        decoder.feed(chunk)
                        for frame in decoder.drain():
                            if token.cancelled:
                                break
                            self._apply(result, frame, on_delta)
                            if result.state in TERMINAL_STATES:
                                break
                        if token.cancelled or result.state in TERMINAL_STATES:
                            break
                finally:
                    await body.aclose()
        except (httpx.HTTPError, UnicodeDecodeError) as e:
            if not token.cancelled:
                logger.warning("Chat stream failed: %s", e)
                return self._finish(token, _failed(result))

        if token.cancelled and result.state not in TERMINAL_STATES:
            result.state = TurnState.CANCELLED
            return self._finish(token, result)
        if result.state not in TERMINAL_STATES:
            return self._finish(token, _failed(result))

        self._finish(token, result)
        if result.state == TurnState.COMPLETED:
            self.messages.append({"role": "user", "content": question})
            self.messages.append({
                "role": "assistant",
                "content": result.answer,
                "citations": [c.to_dict() for c in result.citations],
            })
            await self.refresh_sessions()
        return result

    async def refresh_sessions(self) -> list[dict]:
        try:
            response = await self._http.get("/api/sessions", params={"visitorId": self.visitor_id})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to refresh sessions: %s", e)
            return self.sessions
        self.sessions = response.json().get("sessions", [])
        return self.sessions

    async def switch_session(self, session_id: str) -> list[dict]:
        """Make session_id current and load its stored transcript."""
        self.cancel()
        response = await self._http.get(
            f"/api/sessions/{session_id}/messages",
            params={"visitorId": self.visitor_id},
        )
        response.raise_for_status()

        self.session_id = session_id
        self.messages = response.json().get("messages", [])
        self.active_repo = None
        for session in await self.refresh_sessions():
            if session.get("id") == session_id:
                self.active_repo = session.get("activeRepo")
                break
        return self.messages

    def _apply(self, result: TurnResult, frame: Frame, on_delta) -> None:
        data = frame.data if isinstance(frame.data, dict) else {}

        if frame.event == META:
            result.citations = parse_citations(data.get("citations"))
            result.repo = data.get("repo") or result.repo
            session_id = data.get("sessionId")
            if session_id and not self.session_id:
                self.session_id = session_id
            self.active_repo = (
                infer_active_repo(result.citations)
                or data.get("activeRepo")
                or self.active_repo
            )
        elif frame.event == DELTA:
            piece = data.get("delta")
            if isinstance(piece, str):
                result.answer += piece
                if on_delta is not None:
                    on_delta(piece)
        elif frame.event == DONE:
            session_id = data.get("sessionId")
            if session_id and not self.session_id:
                self.session_id = session_id
            result.warning = data.get("warning")
            result.state = TurnState.COMPLETED
        elif frame.event == ERROR:
            message = data.get("error")
            result.error = message if isinstance(message, str) and message else GENERIC_FAILURE
            result.state = TurnState.FAILED

    def _finish(self, token: CancelToken, result: TurnResult) -> TurnResult:
        if self._inflight is token:
            self._inflight = None
        result.session_id = self.session_id
        return result


def _failed(result: TurnResult) -> TurnResult:
    result.state = TurnState.FAILED
    result.error = GENERIC_FAILURE
    return result
