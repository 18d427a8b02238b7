# Engine-agnostic inference session layer
#
# This package provides a unified interface for running chat inference
# on either supported engine via adapters.
#
# Key components:
#   - adapters/       Engine-specific adapters (llama.cpp, transformers)
#   - registry.py     Maps backend names to adapters
#   - session.py      Backend selection, LocalLLM facade, create_llm()
#   - host.py         Background loading + ready notification
#   - chat.py         Multi-turn chat orchestrator
#   - single_shot.py  History-free streaming and completion helpers

from .chat import ChatConfig, ChatOrchestrator
from .host import ModelHost
from .session import LLMConfig, LocalLLM, create_llm, normalize_messages, select_backend
from .single_shot import CompletionRunner, SingleShotStreamer

__all__ = [
    "ChatConfig",
    "ChatOrchestrator",
    "CompletionRunner",
    "LLMConfig",
    "LocalLLM",
    "ModelHost",
    "SingleShotStreamer",
    "create_llm",
    "normalize_messages",
    "select_backend",
]
