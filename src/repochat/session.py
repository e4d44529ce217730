"""Streaming session manager: the lifecycle of one chat turn.

A turn moves through explicit states::

    IDLE -> OPENING -> STREAMING -> COMPLETED | CANCELLED | FAILED

Opening resolves the target repository and builds the context window.
Streaming relays the provider's frames to the caller in receipt order and,
on `done`, records the question and the assembled answer in the store. A
cancelled or failed turn never writes anything.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

from .config import get_history_cap, get_persist_retries
from .core import Citation, Resolution, parse_citations
from .frames import Frame, FrameDecoder
from .history import build_history
from .provider import AnswerProvider, AnswerRequest, CancellableStream, CancelToken, ProviderError
from .resolver import infer_active_repo, resolve, should_reset_history
from .store import ChatStore, SessionNotFound, StoreError

logger = logging.getLogger(__name__)

META = "meta"
DELTA = "delta"
DONE = "done"
ERROR = "error"

GENERIC_FAILURE = "Something went wrong while generating the answer. Please try again."
PERSIST_WARNING = "The answer could not be saved; this conversation's history may be incomplete."


class TurnState(Enum):
    IDLE = "idle"
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED})

_TRANSITIONS = {
    TurnState.IDLE: {TurnState.OPENING},
    TurnState.OPENING: {TurnState.STREAMING, TurnState.CANCELLED, TurnState.FAILED},
    TurnState.STREAMING: {TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED},
}


class InvalidTransition(RuntimeError):
    """A turn was moved to a state it can't reach from where it is."""


@dataclass
class TurnRequest:
    """A client's request to start a turn."""

    question: str
    history: list[dict] = field(default_factory=list)
    visitor_id: Optional[str] = None
    repo: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class Turn:
    """State of one question/answer exchange."""

    question: str
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    previous_repo: Optional[str] = None
    resolution: Optional[Resolution] = None
    history: list[dict] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    answer_parts: list[str] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    active_repo: Optional[str] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    persisted: bool = False
    cancel: CancelToken = field(default_factory=CancelToken)

    @property
    def repo(self) -> Optional[str]:
        """Resolved repository, falling back to the previously active one."""
        if self.resolution is not None:
            return self.resolution.repo
        return self.previous_repo

    @property
    def explicit(self) -> bool:
        return bool(self.resolution and self.resolution.explicit)

    @property
    def answer(self) -> str:
        return "".join(self.answer_parts)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: TurnState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"{self.state.value} -> {state.value}")
        logger.debug("Turn %s: %s -> %s", self.session_id or "(new)", self.state.value, state.value)
        self.state = state


class SessionManager:
    """Runs chat turns against an answer provider and a store."""

    def __init__(
        self,
        store: ChatStore,
        provider: AnswerProvider,
        history_cap: int | None = None,
        persist_retries: int | None = None,
        retry_delay: float = 0.2,
    ):
        self.store = store
        self.provider = provider
        self.history_cap = history_cap if history_cap is not None else get_history_cap()
        self.persist_retries = persist_retries if persist_retries is not None else get_persist_retries()
        self.retry_delay = retry_delay
        # visitor id -> that visitor's open turn, held weakly so abandoned turns drop out
        self._inflight: weakref.WeakValueDictionary[str, Turn] = weakref.WeakValueDictionary()

    def open_turn(self, request: TurnRequest) -> Turn:
        """Resolve the repository and build context for a new turn.

        Cancels the visitor's in-flight turn, if any. Raises ValueError for a
        blank question and SessionNotFound for another visitor's session.
        """
        question = (request.question or "").strip()
        if not question:
            raise ValueError("Question must not be empty")

        turn = Turn(question=question, visitor_id=request.visitor_id, session_id=request.session_id)
        turn.advance(TurnState.OPENING)

        try:
            stored = None
            if request.session_id:
                stored = self.store.get_session(request.session_id)
                if stored is not None and stored.visitor_id != (request.visitor_id or ""):
                    raise SessionNotFound(request.session_id)

            turn.previous_repo = request.repo or (stored.active_repo if stored else None)
            turn.resolution = resolve(question, self.store.list_projects(), turn.previous_repo)
            turn.active_repo = turn.repo

            if should_reset_history(turn.resolution, turn.previous_repo):
                logger.info(
                    "Switching from %s to %s, starting with empty history",
                    turn.previous_repo, turn.resolution.repo,
                )
            else:
                source = request.history
                if not source and stored is not None:
                    source = self.store.list_messages(stored.id, stored.visitor_id, limit=self.history_cap)
                turn.history = build_history(source, self.history_cap)
        except (SessionNotFound, StoreError):
            turn.advance(TurnState.FAILED)
            raise

        self._register(turn)
        return turn

    async def stream_turn(self, turn: Turn) -> AsyncIterator[Frame]:
        """Stream a turn opened with open_turn.

        Yields a `meta` frame, then the relayed `meta`/`delta` frames, then
        exactly one `done` or `error`. Yields nothing further once the turn
        is cancelled. Closing the generator early cancels the turn.
        """
        turn.advance(TurnState.STREAMING)
        relay = self._relay(turn)
        try:
            yield self._meta_frame(turn)
            async for frame in relay:
                yield frame
        finally:
            if not turn.is_terminal:
                turn.cancel.cancel()
                turn.advance(TurnState.CANCELLED)
                logger.info("Turn for session %s cancelled", turn.session_id or "(new)")
            self._release(turn)
            await relay.aclose()

    def cancel_inflight(self, visitor_id: str) -> bool:
        """Cancel the visitor's streaming turn. Returns False if there is none."""
        turn = self._inflight.pop(visitor_id, None)
        if turn is None or turn.cancel.cancelled:
            return False
        turn.cancel.cancel()
        return True

    # ── Private helpers ──────────────────────────────────────────────

    async def _relay(self, turn: Turn) -> AsyncIterator[Frame]:
        request = AnswerRequest(
            question=turn.question,
            repo=turn.repo,
            history=turn.history,
            visitor_id=turn.visitor_id,
            session_id=turn.session_id,
        )
        decoder = FrameDecoder()
        chunks = CancellableStream(self.provider.stream(request, turn.cancel), turn.cancel)
        failed = False
        try:
            async for chunk in chunks:
                if turn.cancel.cancelled:
                    break
                decoder.feed(chunk)
                for frame in decoder.drain():
                    if turn.cancel.cancelled:
                        break
                    out = await self._handle(turn, frame)
                    if out is not None:
                        yield out
                    if turn.is_terminal:
                        return
                if turn.cancel.cancelled:
                    break
        except ProviderError as e:
            logger.warning("Answer provider failed: %s", e)
            failed = True
        except UnicodeDecodeError as e:
            logger.warning("Answer stream is not valid UTF-8: %s", e)
            failed = True
        except Exception:
            logger.exception("Answer provider raised an unexpected error")
            failed = True
        finally:
            await chunks.aclose()

        if turn.is_terminal:
            return
        if turn.cancel.cancelled:
            turn.advance(TurnState.CANCELLED)
            logger.info("Turn for session %s cancelled", turn.session_id or "(new)")
            return

        if not failed:
            if decoder.pending.strip():
                logger.warning("Discarding incomplete trailing frame (%d chars)", len(decoder.pending))
            logger.warning("Answer stream ended without a done or error frame")
        yield self._fail(turn, GENERIC_FAILURE)

    async def _handle(self, turn: Turn, frame: Frame) -> Frame | None:
        data = frame.data if isinstance(frame.data, dict) else {}

        if frame.event == META:
            turn.citations = parse_citations(data.get("citations"))
            session_id = data.get("sessionId")
            if session_id and not turn.session_id:
                turn.session_id = str(session_id)
            inferred = infer_active_repo(turn.citations)
            if inferred:
                turn.active_repo = inferred
            return self._meta_frame(turn)

        if frame.event == DELTA:
            piece = data.get("delta")
            if not isinstance(piece, str):
                logger.debug("Ignoring delta frame without text")
                return None
            turn.answer_parts.append(piece)
            return Frame(DELTA, {"delta": piece})

        if frame.event == DONE:
            await self._persist(turn)
            turn.advance(TurnState.COMPLETED)
            payload = {
                "sessionId": turn.session_id,
                "repo": turn.repo,
                "activeRepo": turn.active_repo,
                "persisted": turn.persisted,
            }
            if turn.warning:
                payload["warning"] = turn.warning
            return Frame(DONE, payload)

        if frame.event == ERROR:
            message = data.get("error")
            if not isinstance(message, str) or not message.strip():
                message = GENERIC_FAILURE
            logger.info("Answer provider reported an error: %s", message)
            return self._fail(turn, message)

        logger.debug("Ignoring unknown %r frame", frame.event)
        return None

    async def _persist(self, turn: Turn) -> None:
        if not turn.visitor_id:
            logger.debug("Turn has no visitor id, not recording it")
            return
        if not turn.session_id:
            turn.session_id = uuid.uuid4().hex

        for attempt in range(1, self.persist_retries + 1):
            try:
                self.store.record_turn(
                    session_id=turn.session_id,
                    visitor_id=turn.visitor_id,
                    question=turn.question,
                    answer=turn.answer,
                    citations=turn.citations,
                    active_repo=turn.active_repo,
                )
                turn.persisted = True
                return
            except SessionNotFound:
                logger.warning("Session %s belongs to another visitor, not recording turn", turn.session_id)
                break
            except StoreError as e:
                logger.warning(
                    "Failed to record turn (attempt %d/%d): %s",
                    attempt, self.persist_retries, e,
                )
                if attempt < self.persist_retries:
                    await asyncio.sleep(self.retry_delay * attempt)

        turn.warning = PERSIST_WARNING

    def _meta_frame(self, turn: Turn) -> Frame:
        return Frame(META, {
            "repo": turn.repo,
            "explicit": turn.explicit,
            "citations": [c.to_dict() for c in turn.citations],
            "sessionId": turn.session_id,
            "activeRepo": turn.active_repo,
        })

    def _fail(self, turn: Turn, message: str) -> Frame:
        turn.error = message
        turn.advance(TurnState.FAILED)
        return Frame(ERROR, {"error": message})

    def _register(self, turn: Turn) -> None:
        if not turn.visitor_id:
            return
        previous = self._inflight.get(turn.visitor_id)
        if previous is not None and not previous.cancel.cancelled:
            logger.info("Visitor %s started a new turn, cancelling the previous one", turn.visitor_id)
            previous.cancel.cancel()
        self._inflight[turn.visitor_id] = turn

    def _release(self, turn: Turn) -> None:
        if turn.visitor_id and self._inflight.get(turn.visitor_id) is turn:
            del self._inflight[turn.visitor_id]
