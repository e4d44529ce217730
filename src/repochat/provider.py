"""Abstract base class for answer-generation providers."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider could not be reached or refused the request."""


class CancelToken:
    """Cooperative cancellation flag for one streamed turn.

    Readers wrap their source in CancellableStream so a pending read is
    abandoned the moment the token is set. Cancelling never waits for the
    provider.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


_EXHAUSTED = object()


class CancellableStream:
    """Async iterator over `source` that stops as soon as `cancel` fires.

    Each read is raced against the token. When the token wins, the pending
    read is cancelled, which unwinds the source generator and closes
    whatever transport it holds, and iteration ends.
    """

    def __init__(self, source: AsyncGenerator, cancel: CancelToken):
        self._source = source
        self._cancel = cancel
        self._pending: Optional[asyncio.Task] = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._cancel.cancelled:
            raise StopAsyncIteration

        read = asyncio.ensure_future(self._read())
        waiter = asyncio.ensure_future(self._cancel.wait())
        self._pending = read
        try:
            await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if self._cancel.cancelled:
            read.cancel()
            await asyncio.wait({read})
            self._pending = None
            if not read.cancelled() and read.exception() is not None:
                logger.debug("Read failed after cancellation: %r", read.exception())
            raise StopAsyncIteration

        self._pending = None
        item = read.result()
        if item is _EXHAUSTED:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self._pending is not None and not self._pending.done():
            # Cancelling the read unwinds the source itself.
            self._pending.cancel()
            self._pending = None
            return
        self._pending = None
        await self._source.aclose()

    async def _read(self):
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            return _EXHAUSTED


@dataclass
class AnswerRequest:
    """Everything the provider is told about one turn."""

    question: str
    repo: Optional[str] = None
    history: list[dict] = field(default_factory=list)
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "question": self.question,
            "repo": self.repo,
            "history": self.history,
            "visitorId": self.visitor_id,
            "sessionId": self.session_id,
            "stream": True,
        }


class AnswerProvider(ABC):
    """Base class for answer-generation backends.

    A provider turns an AnswerRequest into raw bytes in the event-stream
    wire format (see repochat.frames). It knows nothing about frames.
    """

    name: str

    @abstractmethod
    def stream(self, request: AnswerRequest, cancel: CancelToken) -> AsyncGenerator[bytes, None]:
        """Yield response body chunks until done or cancelled.

        Raises ProviderError on transport failures or a non-success status.
        """
        ...
