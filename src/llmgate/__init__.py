"""llmgate: tier-aware LLM routing gateway with provider fallback and token quotas."""

__version__ = "0.1.0"

from llmgate.config import ConfigLoader
from llmgate.gateway import ChatGateway
from llmgate.router import ChatRouter

__all__ = ["ChatGateway", "ChatRouter", "ConfigLoader", "__version__"]
