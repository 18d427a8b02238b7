"""
localllm - Run chat models locally behind one engine-agnostic session API.

Two engines are supported: GGUF models on llama.cpp when GPU offload is
available, and Hugging Face transformers pipelines as the fallback.

Quick Start:
    import asyncio
    from localllm import LLMConfig, create_llm

    async def main():
        llm = await create_llm(LLMConfig(model="qwen-2.5-0.5b"))
        reply = await llm.stream("Hello!", lambda token, full: print(token, end="", flush=True))
        await llm.unload()

    asyncio.run(main())

Submodules:
    - localllm.engine: adapters, session factory, model host, orchestrators
    - localllm.models: model alias tables
    - localllm.runtime: capability probing

Environment Variables:
    LOCALLLM_MODEL, LOCALLLM_BACKEND, LOCALLLM_DEVICE, LOCALLLM_QUANTIZATION,
    LOCALLLM_SYSTEM_PROMPT, LOCALLLM_N_CTX, LOCALLLM_N_GPU_LAYERS,
    LOCALLLM_CACHE_DIR: read by `LLMConfig.from_env()`.
"""

__version__ = "0.1.0"

# Core types
from localllm.types import (
    ChatMessage,
    GenerateOptions,
    ImagePart,
    LoadProgress,
    TextPart,
    resolve_options,
)

# Errors
from localllm.errors import (
    GenerationError,
    LoadFailedError,
    LocalLLMError,
    NotLoadedError,
)

# Session layer
from localllm.engine import (
    ChatConfig,
    ChatOrchestrator,
    CompletionRunner,
    LLMConfig,
    LocalLLM,
    ModelHost,
    SingleShotStreamer,
    create_llm,
    normalize_messages,
    select_backend,
)

# Model aliases
from localllm.models import (
    DEFAULT_LLAMACPP_MODEL,
    DEFAULT_TRANSFORMERS_MODEL,
    LLAMACPP_MODELS,
    TRANSFORMERS_MODELS,
    list_models,
    resolve_model_id,
)

# Runtime utilities
from localllm.runtime import (
    Capabilities,
    check_gpu,
    detect_capabilities,
    log_capabilities,
)

__all__ = [
    # Version
    "__version__",
    # Types
    "ChatMessage",
    "GenerateOptions",
    "ImagePart",
    "LoadProgress",
    "TextPart",
    "resolve_options",
    # Errors
    "GenerationError",
    "LoadFailedError",
    "LocalLLMError",
    "NotLoadedError",
    # Session layer
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
    # Models
    "DEFAULT_LLAMACPP_MODEL",
    "DEFAULT_TRANSFORMERS_MODEL",
    "LLAMACPP_MODELS",
    "TRANSFORMERS_MODELS",
    "list_models",
    "resolve_model_id",
    # Runtime
    "Capabilities",
    "check_gpu",
    "detect_capabilities",
    "log_capabilities",
]
