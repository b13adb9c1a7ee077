"""Static fallback chains: which models may stand in for which."""

from __future__ import annotations

from llmgate.catalog import ModelId

CHEAPEST_DEFAULT = ModelId.GPT_4O_MINI

# Same-vendor / similarly priced first, then cross-vendor, decreasing capability.
_CHAINS: dict[str, tuple[str, ...]] = {
    ModelId.CLAUDE_OPUS_4: (
        ModelId.CLAUDE_OPUS_4, ModelId.CLAUDE_SONNET_4, ModelId.GPT_4O, ModelId.GPT_4O_MINI,
    ),
    ModelId.CLAUDE_SONNET_4: (
        ModelId.CLAUDE_SONNET_4, ModelId.GPT_4O_MINI, ModelId.GEMINI_FLASH,
    ),
    ModelId.GPT_4O: (
        ModelId.GPT_4O, ModelId.GPT_4O_MINI, ModelId.CLAUDE_SONNET_4, ModelId.GEMINI_FLASH,
    ),
    ModelId.GPT_4O_MINI: (
        ModelId.GPT_4O_MINI, ModelId.GEMINI_FLASH, ModelId.CLAUDE_SONNET_4,
    ),
    ModelId.GEMINI_FLASH: (
        ModelId.GEMINI_FLASH, ModelId.GPT_4O_MINI, ModelId.CLAUDE_SONNET_4,
    ),
    ModelId.DEEPSEEK_CHAT: (
        ModelId.DEEPSEEK_CHAT, ModelId.GPT_4O_MINI, ModelId.CLAUDE_SONNET_4,
    ),
    # Specialized presentation tool, nothing substitutes for it
    ModelId.GAMMA: (ModelId.GAMMA,),
}


def get_fallback_chain(model: "str | ModelId") -> list:
    """Return the ordered, duplicate-free substitutes for *model*, primary first.

    ``auto`` yields ``[model, gpt-4o-mini]`` like any unknown value; it is
    expected to be resolved before this is called. Unknown strings are
    returned as-is at the head of the chain.
    """
    try:
        primary = ModelId(model)
    except ValueError:
        primary = model

    chain = _CHAINS.get(primary)
    if chain is None:
        chain = (primary, CHEAPEST_DEFAULT)

    result: list = []
    for candidate in chain:
        if candidate not in result:
            result.append(candidate)
    return result
