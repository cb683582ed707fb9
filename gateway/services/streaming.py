"""
Completion stream adapter

Re-emits the fragments produced by the inference backend as soon as they
arrive while collecting them into the full completion text. The finished
text is published through the ``completion`` future, which is resolved only
when the backend stream ends normally:

* natural end: the future gets the full text after the last fragment was
  yielded and before iteration stops
* backend error: iteration raises :class:`BackendStreamError` and the future
  is cancelled
* consumer stops early (client disconnect, ``aclose``): the future is
  cancelled and the backend stream is closed
"""

from typing import AsyncIterator, Callable, List, Optional
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send
import asyncio
import logging

from gateway.core.exceptions import BackendStreamError

logger = logging.getLogger(__name__)


class CompletionStream:
    def __init__(self, source: AsyncIterator[str]):
        self._source = source
        self._iterator: Optional[AsyncIterator[bytes]] = None
        self._callbacks: List[Callable[[str], None]] = []
        self._closed = False
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterator is not None or self._closed:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._iterator = self._iterate()
        return self._iterator

    def add_completion_callback(self, callback: Callable[[str], None]):
        """
        Run ``callback(text)`` once the stream has completed successfully.

        Callbacks run synchronously right after the completion future is
        resolved, before the outgoing stream ends.
        """
        self._callbacks.append(callback)

    async def aclose(self):
        if self._iterator is not None:
            await self._iterator.aclose()
        elif not self._closed:
            self._closed = True
            self.completion.cancel()
            await self._close_source()

    async def _iterate(self):
        parts: List[str] = []
        completed = False
        try:
            try:
                async for fragment in self._source:
                    parts.append(fragment)
                    yield fragment.encode("utf-8")
            except BackendStreamError as e:
                logger.error(f"Completion stream failed after {len(parts)} fragments: {e}")
                raise
            except Exception as e:
                logger.error(f"Completion stream failed after {len(parts)} fragments: {e}")
                raise BackendStreamError(str(e)) from e

            text = "".join(parts)
            self.completion.set_result(text)
            completed = True
            self._notify(text)
        finally:
            if not completed:
                self.completion.cancel()
                await self._close_source()

    def _notify(self, text: str):
        for callback in self._callbacks:
            try:
                callback(text)
            except Exception:
                logger.exception("Completion callback failed")

    async def _close_source(self):
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class CompletionStreamingResponse(StreamingResponse):
    """
    Streaming response that closes its :class:`CompletionStream` once the
    response is over. Starlette stops iterating the body on disconnect but
    leaves the iterator suspended, so the backend stream is closed here.
    """

    def __init__(self, content: CompletionStream, **kwargs):
        super().__init__(content, **kwargs)
        self.completion_stream = content

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.completion_stream.aclose()
