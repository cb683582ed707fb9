from typing import Optional, Set
import asyncio
import logging

from gateway.core.exceptions import AuthenticationMissing, RateLimiterUnavailable, RateLimitExceeded
from gateway.schemas.chat import ChatRequest, GenerationParams
from gateway.schemas.user import CurrentUser
from gateway.services.inference import InferenceClient
from gateway.services.persistence import ChatPersistence
from gateway.services.prompt import build_open_assistant_prompt
from gateway.services.rate_limit import RateLimiter
from gateway.services.streaming import CompletionStream, CompletionStreamingResponse

logger = logging.getLogger(__name__)


class ChatGateway:
    """
    Handles one chat completion request end to end.

    Checks identity and the user's rate limit, starts a streamed generation
    and returns it as the response body right away. The conversation is saved
    in the background once the stream has been fully delivered.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        inference_client: InferenceClient,
        persistence: ChatPersistence,
        model: str,
        params: Optional[GenerationParams] = None,
        fail_open: bool = False
    ):
        self.rate_limiter = rate_limiter
        self.inference_client = inference_client
        self.persistence = persistence
        self.model = model
        self.params = params or GenerationParams()
        self.fail_open = fail_open
        self._pending: Set[asyncio.Task] = set()

    async def handle(self, user: Optional[CurrentUser], request: ChatRequest) -> CompletionStreamingResponse:
        """
        Raises:
            AuthenticationMissing: If no user is signed in
            RateLimitExceeded: If the user has no requests left in the window
            RateLimiterUnavailable: If the limiter store is down and fail-open is off
        """
        if user is None:
            raise AuthenticationMissing()

        await self._check_rate_limit(user.id)

        prompt = build_open_assistant_prompt(request.messages)
        source = self.inference_client.generate_stream(self.model, prompt, self.params)
        stream = CompletionStream(source)
        stream.add_completion_callback(
            lambda completion: self._schedule_save(request, completion, user.id)
        )

        logger.info(f"Streaming completion for user {user.id} ({len(request.messages)} messages)")
        return CompletionStreamingResponse(
            stream,
            media_type="text/plain; charset=utf-8",
            headers={"X-Experimental-Stream-Data": "false"}
        )

    async def wait_for_pending(self):
        """Wait until every scheduled save has finished"""
        if self._pending:
            await asyncio.gather(*self._pending)

    async def _check_rate_limit(self, user_id: str):
        try:
            result = await self.rate_limiter.admit(user_id)
        except RateLimiterUnavailable:
            if not self.fail_open:
                raise
            logger.warning(f"Rate limiter unavailable, admitting user {user_id} (fail-open)")
            return

        if not result.success:
            raise RateLimitExceeded(result.reset)

    def _schedule_save(self, request: ChatRequest, completion: str, user_id: str):
        task = asyncio.get_running_loop().create_task(self._save(request, completion, user_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save(self, request: ChatRequest, completion: str, user_id: str):
        try:
            await self.persistence.save(request, completion, user_id)
        except Exception:
            # The response is already complete, nothing to report to the caller
            logger.exception(f"Failed to save chat for user {user_id}")
