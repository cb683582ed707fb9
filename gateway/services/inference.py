from typing import AsyncIterator, Optional
import httpx
import json
import logging

from gateway.core.exceptions import BackendStreamError
from gateway.schemas.chat import GenerationParams

logger = logging.getLogger(__name__)

# Tokens some models emit to mark the end of a generation
STOP_TOKENS = ("</s>", "<|endoftext|>", "<|end|>")


class InferenceClient:
    """Text-generation backend that streams fragments of the completion"""

    def generate_stream(self, model: str, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        raise NotImplementedError


class HuggingFaceInferenceClient(InferenceClient):
    """Streaming client for the Hugging Face Inference API"""

    def __init__(self, http_client: httpx.AsyncClient, api_url: str, api_key: Optional[str] = None):
        self.http_client = http_client
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key

    async def generate_stream(self, model: str, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        """
        Stream generated text fragments for ``prompt``.

        Args:
            model: Model repository ID (e.g., "OpenAssistant/oasst-sft-4-pythia-12b-epoch-3.5")
            prompt: Fully formatted prompt
            params: Generation parameters forwarded to the model

        Yields:
            Text fragments in generation order

        Raises:
            BackendStreamError: If the request fails or the backend reports an error
        """
        url = f"{self.api_url}/models/{model}"
        payload = {
            "inputs": prompt,
            "parameters": params.model_dump(),
            "stream": True
        }

        try:
            async with self.http_client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.error(f"Inference request for {model} failed with status {response.status_code}")
                    raise BackendStreamError(
                        f"Inference request failed with status {response.status_code}: "
                        f"{body.decode('utf-8', errors='replace')[:200]}",
                        status_code=response.status_code
                    )

                at_start = True
                async for line in response.aiter_lines():
                    event = self._parse_event(line)
                    if event is None:
                        continue

                    text = (event.get("token") or {}).get("text") or ""
                    if at_start:
                        text = text.lstrip()
                    if not text:
                        continue
                    at_start = False

                    # The final event repeats the whole generation in generated_text
                    if event.get("generated_text"):
                        continue
                    if text in STOP_TOKENS:
                        continue

                    yield text
        except httpx.HTTPError as e:
            logger.error(f"Inference request for {model} failed: {e}")
            raise BackendStreamError(f"Inference request failed: {e}") from e

    def _headers(self) -> dict:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _parse_event(self, line: str) -> Optional[dict]:
        """Decode one server-sent event line, ``None`` for keep-alives and other fields"""
        line = line.strip()
        if not line.startswith("data:"):
            return None

        data = line[len("data:"):].strip()
        if not data:
            return None

        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            raise BackendStreamError(f"Invalid event from inference backend: {data[:200]}") from e

        if "error" in event:
            raise BackendStreamError(f"Inference backend error: {event['error']}")
        return event
