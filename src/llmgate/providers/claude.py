from typing import AsyncIterator, Optional, Sequence

import anthropic

from llmgate._logging import get_logger
from llmgate.catalog import ModelSpec
from llmgate.messages import ChatMessage, StreamChunk, ToolDefinition, UsageTally
from llmgate.providers.base import StreamingProvider, ToolCallAccumulator, split_system
from llmgate.tools import to_claude_tools

logger = get_logger("LlmGate.Claude")


class ClaudeProvider(StreamingProvider):
    """Anthropic messages API provider (raw streaming events).

    Usage arrives incrementally: ``message_start`` carries the input
    count, ``message_delta`` updates the output count as generation
    proceeds.
    """

    name = "claude"

    def __init__(self, provider_config: dict):
        super().__init__(provider_config)
        self.client: Optional[anthropic.AsyncAnthropic] = None
        if self.api_key:
            kwargs: dict = {"api_key": self.api_key, "timeout": self.timeout}
            if "max_retries" in self.config:
                kwargs["max_retries"] = int(self.config["max_retries"])
            self.client = anthropic.AsyncAnthropic(**kwargs)

    def build_request(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> dict:
        system, turns = split_system(messages)
        params = self.config.get("parameters", {})
        kwargs: dict = {
            "model": model.api_model,
            "max_tokens": self.max_tokens,
            "messages": [m.to_dict() for m in turns],
            "stream": True,
        }
        if system:
            kwargs["system"] = system
        claude_tools = to_claude_tools(tools)
        if claude_tools:
            kwargs["tools"] = claude_tools
        if params.get("temperature") is not None:
            kwargs["temperature"] = params["temperature"]
        return kwargs

    async def stream(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        *,
        tally: Optional[UsageTally] = None,
    ) -> AsyncIterator[StreamChunk]:
        if self.client is None:
            raise RuntimeError("Anthropic API key not configured")

        tally = tally if tally is not None else UsageTally()
        # content-block index -> tool_use id
        block_ids: dict[int, str] = {}
        calls = ToolCallAccumulator(key_fn=lambda index: block_ids.get(index, index))

        response = await self.client.messages.create(**self.build_request(model, messages, tools))
        async with response:
            async for event in response:
                kind = getattr(event, "type", "")

                if kind == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        tally.update(
                            input_tokens=getattr(usage, "input_tokens", 0) or 0,
                            output_tokens=getattr(usage, "output_tokens", 0) or 0,
                        )

                elif kind == "content_block_start":
                    block = event.content_block
                    if getattr(block, "type", "") == "tool_use":
                        block_ids[event.index] = block.id
                        calls.add(event.index, id=block.id, name=block.name)

                elif kind == "content_block_delta":
                    delta = event.delta
                    delta_type = getattr(delta, "type", "")
                    if delta_type == "text_delta" and delta.text:
                        yield StreamChunk(content=delta.text)
                    elif delta_type == "input_json_delta":
                        calls.add(event.index, arguments=delta.partial_json or "")

                elif kind == "message_delta":
                    usage = getattr(event, "usage", None)
                    if usage is not None:
                        input_tokens = getattr(usage, "input_tokens", None)
                        tally.update(
                            input_tokens=input_tokens or None,
                            output_tokens=getattr(usage, "output_tokens", None),
                        )

        if calls:
            tool_calls = calls.drain()
            logger.debug("Claude requested %d tool call(s)", len(tool_calls))
            yield StreamChunk(tool_calls=tool_calls)

        yield StreamChunk(done=True, usage=tally.snapshot())
