import json
from typing import AsyncIterator, Optional, Sequence

from google import genai
from google.genai import types

from llmgate._logging import get_logger
from llmgate.catalog import ModelSpec
from llmgate.messages import ChatMessage, StreamChunk, ToolDefinition, UsageTally
from llmgate.providers.base import StreamingProvider, ToolCallAccumulator, split_system
from llmgate.tools import to_gemini_tools

logger = get_logger("LlmGate.Google")


def _parts(chunk) -> list:
    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


class GoogleProvider(StreamingProvider):
    """Google Gemini provider via the google-genai async client.

    Function calls arrive whole, so they are correlated by arrival order.
    Usage is taken from the last ``usage_metadata`` seen on the stream.
    """

    name = "google"

    def __init__(self, provider_config: dict):
        super().__init__(provider_config)
        self.client: Optional[genai.Client] = None
        if self.api_key:
            self.client = genai.Client(api_key=self.api_key)

    def build_request(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> dict:
        system, turns = split_system(messages)
        contents = [
            types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[types.Part(text=m.content)],
            )
            for m in turns
        ]

        params = self.config.get("parameters", {})
        config_kwargs: dict = {"max_output_tokens": self.max_tokens}
        if system:
            config_kwargs["system_instruction"] = system
        if params.get("temperature") is not None:
            config_kwargs["temperature"] = params["temperature"]
        gemini_tools = to_gemini_tools(tools)
        if gemini_tools:
            config_kwargs["tools"] = gemini_tools

        return {
            "model": model.api_model,
            "contents": contents,
            "config": types.GenerateContentConfig(**config_kwargs),
        }

    async def stream(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        *,
        tally: Optional[UsageTally] = None,
    ) -> AsyncIterator[StreamChunk]:
        if self.client is None:
            raise RuntimeError("Google API key not configured")

        tally = tally if tally is not None else UsageTally()
        calls = ToolCallAccumulator()
        position = 0

        response = await self.client.aio.models.generate_content_stream(
            **self.build_request(model, messages, tools)
        )
        try:
            async for chunk in response:
                for part in _parts(chunk):
                    text = getattr(part, "text", None)
                    function_call = getattr(part, "function_call", None)
                    if text:
                        yield StreamChunk(content=text)
                    elif function_call is not None:
                        calls.add(
                            position,
                            id=getattr(function_call, "id", None),
                            name=function_call.name,
                            arguments=json.dumps(dict(function_call.args or {})),
                        )
                        position += 1

                usage = getattr(chunk, "usage_metadata", None)
                if usage is not None:
                    tally.update(
                        input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
                        output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
                    )
        finally:
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                await aclose()

        if calls:
            yield StreamChunk(tool_calls=calls.drain())

        yield StreamChunk(done=True, usage=tally.snapshot())
