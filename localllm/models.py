"""Model alias registry.

Static, human-friendly aliases for the model identifiers each backend can
load. Identifiers that are not aliases pass through `resolve_model_id`
unchanged, so callers can always use a raw identifier instead.

llamacpp identifiers are either a local ``.gguf`` path or
``<hf-org>/<hf-repo>/<filename-or-glob>``. transformers identifiers are
Hugging Face repo ids (or local checkpoint directories).
"""

from __future__ import annotations

from .types import Backend

DEFAULT_LLAMACPP_MODEL = "Qwen/Qwen2.5-1.5B-Instruct-GGUF/*q4_k_m.gguf"

LLAMACPP_MODELS: dict[str, str] = {
    # Llama 3.2 (Meta)
    "llama-3.2-1b": "bartowski/Llama-3.2-1B-Instruct-GGUF/*Q4_K_M.gguf",
    "llama-3.2-3b": "bartowski/Llama-3.2-3B-Instruct-GGUF/*Q4_K_M.gguf",
    # Llama 3.1 (Meta)
    "llama-3.1-8b": "bartowski/Meta-Llama-3.1-8B-Instruct-GGUF/*Q4_K_M.gguf",
    # Phi (Microsoft)
    "phi-3.5-mini": "bartowski/Phi-3.5-mini-instruct-GGUF/*Q4_K_M.gguf",
    # Qwen 2.5 (Alibaba)
    "qwen-2.5-0.5b": "Qwen/Qwen2.5-0.5B-Instruct-GGUF/*q4_k_m.gguf",
    "qwen-2.5-1.5b": "Qwen/Qwen2.5-1.5B-Instruct-GGUF/*q4_k_m.gguf",
    "qwen-2.5-3b": "Qwen/Qwen2.5-3B-Instruct-GGUF/*q4_k_m.gguf",
    "qwen-2.5-7b": "Qwen/Qwen2.5-7B-Instruct-GGUF/*q4_k_m*.gguf",
    "qwen-2.5-coder-1.5b": "Qwen/Qwen2.5-Coder-1.5B-Instruct-GGUF/*q4_k_m.gguf",
    # Gemma 2 (Google)
    "gemma-2-2b": "bartowski/gemma-2-2b-it-GGUF/*Q4_K_M.gguf",
    "gemma-2-9b": "bartowski/gemma-2-9b-it-GGUF/*Q4_K_M.gguf",
    # SmolLM2 (Hugging Face)
    "smollm2-135m": "bartowski/SmolLM2-135M-Instruct-GGUF/*Q4_K_M.gguf",
    "smollm2-360m": "bartowski/SmolLM2-360M-Instruct-GGUF/*Q4_K_M.gguf",
    "smollm2-1.7b": "bartowski/SmolLM2-1.7B-Instruct-GGUF/*Q4_K_M.gguf",
    # Mistral
    "mistral-7b": "bartowski/Mistral-7B-Instruct-v0.3-GGUF/*Q4_K_M.gguf",
    # DeepSeek R1 distills
    "deepseek-r1-qwen-7b": "bartowski/DeepSeek-R1-Distill-Qwen-7B-GGUF/*Q4_K_M.gguf",
    "deepseek-r1-llama-8b": "bartowski/DeepSeek-R1-Distill-Llama-8B-GGUF/*Q4_K_M.gguf",
    # Hermes (function calling)
    "hermes-3-llama-3.2-3b": "bartowski/Hermes-3-Llama-3.2-3B-GGUF/*Q4_K_M.gguf",
}

DEFAULT_TRANSFORMERS_MODEL = "Qwen/Qwen2.5-0.5B-Instruct"

TRANSFORMERS_MODELS: dict[str, str] = {
    # Qwen 2.5 (Alibaba)
    "qwen-2.5-0.5b": "Qwen/Qwen2.5-0.5B-Instruct",
    "qwen-2.5-1.5b": "Qwen/Qwen2.5-1.5B-Instruct",
    "qwen-2.5-coder-0.5b": "Qwen/Qwen2.5-Coder-0.5B-Instruct",
    "qwen-2.5-coder-1.5b": "Qwen/Qwen2.5-Coder-1.5B-Instruct",
    # Vision
    "qwen-2-vl-2b": "Qwen/Qwen2-VL-2B-Instruct",
    "phi-3.5-vision": "microsoft/Phi-3.5-vision-instruct",
    # SmolLM2 (Hugging Face)
    "smollm2-135m": "HuggingFaceTB/SmolLM2-135M-Instruct",
    "smollm2-360m": "HuggingFaceTB/SmolLM2-360M-Instruct",
    "smollm2-1.7b": "HuggingFaceTB/SmolLM2-1.7B-Instruct",
    # Phi (Microsoft)
    "phi-3-mini": "microsoft/Phi-3-mini-4k-instruct",
    # TinyLlama
    "tinyllama": "TinyLlama/TinyLlama-1.1B-Chat-v1.0",
}

# Rough download sizes for display.
TRANSFORMERS_MODEL_SIZES: dict[str, str] = {
    "qwen-2.5-0.5b": "~1GB",
    "qwen-2.5-1.5b": "~3GB",
    "qwen-2.5-coder-0.5b": "~1GB",
    "qwen-2.5-coder-1.5b": "~3GB",
    "qwen-2-vl-2b": "~4.5GB",
    "phi-3.5-vision": "~8.3GB",
    "smollm2-135m": "~270MB",
    "smollm2-360m": "~725MB",
    "smollm2-1.7b": "~3.4GB",
    "phi-3-mini": "~7.6GB",
    "tinyllama": "~2.2GB",
}

_ALIASES: dict[str, dict[str, str]] = {
    "llamacpp": LLAMACPP_MODELS,
    "transformers": TRANSFORMERS_MODELS,
}

_DEFAULTS: dict[str, str] = {
    "llamacpp": DEFAULT_LLAMACPP_MODEL,
    "transformers": DEFAULT_TRANSFORMERS_MODEL,
}


def _table(backend: str) -> dict[str, str]:
    if backend not in _ALIASES:
        available = ", ".join(_ALIASES.keys())
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}")
    return _ALIASES[backend]


def resolve_model_id(backend: Backend, model: str) -> str:
    """Map an alias to its concrete identifier; anything else passes through."""
    return _ALIASES.get(backend, {}).get(model, model)


def default_model(backend: Backend) -> str:
    _table(backend)
    return _DEFAULTS[backend]


def list_models(backend: Backend | None = None) -> list[tuple[str, str, str]]:
    """Return ``(backend, alias, identifier)`` rows, sorted by backend then alias."""
    backends = [backend] if backend is not None else list(_ALIASES.keys())
    rows: list[tuple[str, str, str]] = []
    for name in backends:
        for alias, model_id in sorted(_table(name).items()):
            rows.append((name, alias, model_id))
    return rows


def model_size(backend: Backend, alias: str) -> str | None:
    """Approximate download size for display, when known."""
    if backend == "transformers":
        return TRANSFORMERS_MODEL_SIZES.get(alias)
    return None


def is_vision_model(model_id: str) -> bool:
    lower = model_id.lower()
    return "-vl-" in lower or "vision" in lower or "moondream" in lower
