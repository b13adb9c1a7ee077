from typing import AsyncIterator, Optional, Sequence

import httpx

from llmgate._logging import get_logger
from llmgate.catalog import ModelSpec
from llmgate.errors import ProviderError
from llmgate.messages import ChatMessage, StreamChunk, ToolDefinition, UsageTally
from llmgate.providers.base import StreamingProvider

logger = get_logger("LlmGate.Gamma")

_CHUNK_SIZE = 10
_FALLBACK_TEXT = (
    "I've created a presentation based on your request. "
    "You can view it at the link provided."
)


class GammaProvider(StreamingProvider):
    """Gamma presentation generator.

    The upstream call is a single request; its text is re-chunked so the
    caller sees the same incremental shape as the chat providers. Gamma
    reports no token usage and ignores tools.
    """

    name = "gamma"

    def __init__(
        self,
        provider_config: dict,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(provider_config)
        self.endpoint = self.config.get("endpoint", "https://api.gamma.app/v1").rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.endpoint,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key or ''}",
            },
            timeout=self.timeout,
            transport=transport,
        )

    async def stream(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        *,
        tally: Optional[UsageTally] = None,
    ) -> AsyncIterator[StreamChunk]:
        if not self.api_key:
            raise RuntimeError("Gamma API key not configured")

        prompt = next((m.content for m in reversed(messages) if m.role == "user"), "")
        if not prompt:
            raise ProviderError(str(model.model_id), "no user message to build a presentation from")

        resp = await self.client.post(
            "/generate", json={"prompt": prompt, "type": "presentation"}
        )
        if resp.is_error:
            raise ProviderError(
                str(model.model_id),
                f"Gamma API error: {resp.status_code} {resp.reason_phrase}",
            )

        text = resp.json().get("content") or _FALLBACK_TEXT
        for i in range(0, len(text), _CHUNK_SIZE):
            yield StreamChunk(content=text[i:i + _CHUNK_SIZE])

        yield StreamChunk(done=True, usage=None)

    async def aclose(self) -> None:
        await self.client.aclose()
