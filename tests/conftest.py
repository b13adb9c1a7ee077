from typing import Optional

import pytest
import yaml
from pathlib import Path

from llmgate.config import ConfigLoader
from llmgate.messages import ChatMessage, StreamChunk, Usage, UsageTally
from llmgate.providers import ProviderRegistry, StreamingProvider
from llmgate.quota.store import SQLiteQuotaStore


class FakeProvider(StreamingProvider):
    """Scripted provider: yields *texts*, optionally raising *error* after
    ``fail_after`` chunks. Input usage is reported up front, output usage at
    the end, the way the Anthropic stream does it.
    """

    def __init__(
        self,
        name: str,
        texts=("hello", " world"),
        error: Optional[BaseException] = None,
        fail_after: int = 0,
        usage: Optional[Usage] = Usage(10, 5),
        available: bool = True,
    ):
        super().__init__({"name": name, "api_key": "test-key" if available else None})
        self.texts = list(texts)
        self.error = error
        self.fail_after = fail_after
        self.usage = usage
        self.calls: list = []
        self.closed = False
        self.finished = False

    async def stream(self, model, messages, tools=None, *, tally=None):
        self.calls.append(model.model_id)
        tally = tally if tally is not None else UsageTally()
        try:
            if self.usage is not None:
                tally.update(input_tokens=self.usage.input_tokens)
            for i, text in enumerate(self.texts):
                if self.error is not None and i == self.fail_after:
                    raise self.error
                yield StreamChunk(content=text)
            if self.error is not None:
                raise self.error
            if self.usage is not None:
                tally.update(output_tokens=self.usage.output_tokens)
            self.finished = True
            yield StreamChunk(done=True, usage=tally.snapshot())
        finally:
            self.closed = True


def make_registry(**providers: StreamingProvider) -> ProviderRegistry:
    """Registry keyed by provider family (claude, openai, google, deepseek, gamma)."""
    return ProviderRegistry(providers)


@pytest.fixture
def messages():
    return [ChatMessage("user", "hello there")]


@pytest.fixture
def quota_store(tmp_path: Path):
    return SQLiteQuotaStore(db_path=tmp_path / "quota.db")


@pytest.fixture
def config(tmp_path: Path):
    """Create a minimal, valid config file in a temporary directory."""
    config_content = {
        "providers": {
            "claude": {"api_key": "sk-ant-test"},
            "openai": {"api_key": "sk-openai-test", "parameters": {"temperature": 0.2}},
        },
        "models": {
            "claude-sonnet-4": {"input_per_million": 4.0},
        },
        "tiers": {
            "free": {"max_tokens_per_day": 1000},
        },
        "quota": {"db_path": str(tmp_path / "quota.db"), "chars_per_token": 4},
        "alerts": {"thresholds": [50, 100]},
    }
    config_path = tmp_path / "llmgate.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config_content, f)

    return ConfigLoader(config_path=str(config_path))


@pytest.fixture
def config_empty():
    """A ConfigLoader with no actual config (built-in defaults only)."""
    return ConfigLoader(allow_missing=True)


@pytest.fixture
def fake_provider():
    """The ``FakeProvider`` class, for tests that script their own providers."""
    return FakeProvider


@pytest.fixture
def registry_factory():
    return make_registry
