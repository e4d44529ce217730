"""HTTP answer provider.

POSTs the turn as JSON to an external text-generation service and relays
its event-stream body chunk by chunk.
"""

import logging
from typing import AsyncGenerator

import httpx

from ..config import get_provider_timeout, get_provider_url
from ..provider import AnswerProvider, AnswerRequest, CancellableStream, CancelToken, ProviderError

logger = logging.getLogger(__name__)


class HttpAnswerProvider(AnswerProvider):
    """Provider backed by a streaming HTTP endpoint."""

    name = "http"

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url or get_provider_url()
        if not self.url:
            raise ValueError("No provider URL configured (set REPOCHAT_PROVIDER_URL)")
        self.timeout = timeout if timeout is not None else get_provider_timeout()
        self._client = client

    async def stream(self, request: AnswerRequest, cancel: CancelToken) -> AsyncGenerator[bytes, None]:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST",
                self.url,
                json=request.to_payload(),
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    raise ProviderError(f"HTTP {response.status_code} from answer provider")

                body = CancellableStream(response.aiter_bytes(), cancel)
                try:
                    async for chunk in body:
                        if chunk:
                            yield chunk
                finally:
                    await body.aclose()
                if cancel.cancelled:
                    logger.debug("Turn cancelled, closing provider stream")
        except httpx.TimeoutException as e:
            raise ProviderError("Answer provider timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Answer provider request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
