"""
DevRunner Agents

Agent output contracts, the model runtime adapter and the agent catalog.
"""

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devrunner.agents.catalog import AgentCatalog, AgentExecutionContext
    from devrunner.agents.runtime import (
        AgentResult,
        AgentRuntime,
        AnthropicBackend,
        ModelBackend,
        ModelResponse,
    )

__all__ = [
    "AgentCatalog",
    "AgentExecutionContext",
    "AgentResult",
    "AgentRuntime",
    "AnthropicBackend",
    "ModelBackend",
    "ModelResponse",
]

_EXPORTS = {
    "AgentCatalog": "devrunner.agents.catalog",
    "AgentExecutionContext": "devrunner.agents.catalog",
    "AgentResult": "devrunner.agents.runtime",
    "AgentRuntime": "devrunner.agents.runtime",
    "AnthropicBackend": "devrunner.agents.runtime",
    "ModelBackend": "devrunner.agents.runtime",
    "ModelResponse": "devrunner.agents.runtime",
}


def __getattr__(name: str):
    module_path = _EXPORTS.get(name)
    if not module_path:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    return getattr(import_module(module_path), name)
