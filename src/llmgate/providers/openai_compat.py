"""OpenAI-compatible streaming chat/completions provider.

Serves OpenAI itself and any vendor exposing the same
``/chat/completions`` SSE stream (DeepSeek).

Config::

    openai:
      type: openai
      endpoint: https://api.openai.com/v1
      env_key: OPENAI_API_KEY
      include_usage: true        # send stream_options.include_usage
      timeout: 120
      parameters:
        max_tokens: 8192
        temperature: 0.7
"""

from __future__ import annotations

import json
from typing import AsyncIterator, Optional, Sequence

import httpx

from llmgate._logging import get_logger
from llmgate.catalog import ModelSpec
from llmgate.errors import ProviderError
from llmgate.messages import ChatMessage, StreamChunk, ToolDefinition, UsageTally
from llmgate.providers.base import StreamingProvider, ToolCallAccumulator
from llmgate.tools import to_openai_tools

logger = get_logger("LlmGate.OpenAICompat")


class OpenAICompatibleProvider(StreamingProvider):
    """Provider for OpenAI-API-compatible streaming endpoints.

    Usage is reported once, in the final SSE event, and only when the
    server supports it.
    """

    name = "openai"

    def __init__(
        self,
        provider_config: dict,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(provider_config)
        self.endpoint = self.config.get("endpoint", "https://api.openai.com/v1").rstrip("/")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self.client = httpx.AsyncClient(
            base_url=self.endpoint,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    def build_payload(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> dict:
        params = self.config.get("parameters", {})
        payload: dict = {
            "model": model.api_model,
            # System messages travel in-band for this protocol.
            "messages": [m.to_dict() for m in messages],
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if params.get("temperature") is not None:
            payload["temperature"] = params["temperature"]
        if self.config.get("include_usage", False):
            payload["stream_options"] = {"include_usage": True}
        openai_tools = to_openai_tools(tools)
        if openai_tools:
            payload["tools"] = openai_tools
        return payload

    async def stream(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        *,
        tally: Optional[UsageTally] = None,
    ) -> AsyncIterator[StreamChunk]:
        if not self.api_key:
            raise RuntimeError(f"{self.name} API key not configured")

        tally = tally if tally is not None else UsageTally()
        calls = ToolCallAccumulator()
        payload = self.build_payload(model, messages, tools)

        logger.debug("POST %s/chat/completions model=%s", self.endpoint, model.api_model)

        async with self.client.stream("POST", "/chat/completions", json=payload) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if not data:
                    continue
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError as exc:
                    raise ProviderError(str(model.model_id), f"malformed stream event: {exc}") from exc

                if "error" in event:
                    message = event["error"].get("message") if isinstance(event["error"], dict) else event["error"]
                    raise ProviderError(str(model.model_id), str(message))

                choices = event.get("choices") or []
                if choices:
                    delta = choices[0].get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield StreamChunk(content=content)
                    for fragment in delta.get("tool_calls") or []:
                        fn = fragment.get("function") or {}
                        calls.add(
                            fragment.get("index", 0),
                            id=fragment.get("id"),
                            name=fn.get("name"),
                            arguments=fn.get("arguments") or "",
                        )

                usage = event.get("usage")
                if usage:
                    tally.update(
                        input_tokens=usage.get("prompt_tokens", 0) or 0,
                        output_tokens=usage.get("completion_tokens", 0) or 0,
                    )

        if calls:
            yield StreamChunk(tool_calls=calls.drain())

        yield StreamChunk(done=True, usage=tally.snapshot())

    async def aclose(self) -> None:
        await self.client.aclose()
