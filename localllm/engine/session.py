"""Session factory: pick a backend, load a model, hand back a `LocalLLM`."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Mapping

from ..errors import LoadFailedError
from ..models import default_model
from ..runtime import check_gpu
from ..types import (
    BACKENDS,
    DEVICES,
    QUANTIZATIONS,
    ChatMessage,
    GenerateOptions,
    LoadProgressCallback,
    MessagesInput,
    StreamCallback,
    resolve_options,
)
from .adapters.base import BaseAdapter
from .registry import get_adapter

logger = logging.getLogger(__name__)

_ENV_PREFIX = "LOCALLLM_"


@dataclass(frozen=True)
class LLMConfig:
    """Session configuration.

    `backend` is "auto", "llamacpp" or "transformers". `n_ctx` and
    `n_gpu_layers` only apply to llamacpp; `device` and `quantization` only
    to transformers.
    """

    model: str | None = None
    backend: str = "auto"
    device: str = "auto"
    quantization: str = "auto"
    system_prompt: str | None = None
    on_load_progress: LoadProgressCallback | None = None
    n_ctx: int = 4096
    n_gpu_layers: int = -1
    cache_dir: str | None = None

    def __post_init__(self) -> None:
        if self.backend not in ("auto",) + BACKENDS:
            raise ValueError(f"Invalid backend: {self.backend!r}. Expected auto or one of {', '.join(BACKENDS)}.")
        if self.device not in DEVICES:
            raise ValueError(f"Invalid device: {self.device!r}. Expected one of {', '.join(DEVICES)}.")
        if self.quantization not in QUANTIZATIONS:
            raise ValueError(
                f"Invalid quantization: {self.quantization!r}. Expected one of {', '.join(QUANTIZATIONS)}."
            )
        if self.n_ctx <= 0:
            raise ValueError("n_ctx must be > 0.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "LLMConfig":
        """Build a config from ``LOCALLLM_*`` variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        for f in fields(cls):
            if f.name == "on_load_progress":
                continue
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name in ("n_ctx", "n_gpu_layers"):
                try:
                    values[f.name] = int(raw)
                except ValueError as exc:
                    raise ValueError(f"{_ENV_PREFIX}{f.name.upper()} must be an integer, got {raw!r}.") from exc
            else:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def select_backend(requested: str, gpu_available: bool) -> str:
    """Resolve the requested backend against what the machine supports.

    A llamacpp request without GPU support is downgraded to transformers
    with a warning instead of failing.
    """
    if requested == "auto":
        return "llamacpp" if gpu_available else "transformers"
    if requested == "llamacpp":
        if not gpu_available:
            logger.warning("llamacpp requested but GPU offload is not available. Falling back to transformers.")
            return "transformers"
        return "llamacpp"
    if requested == "transformers":
        return "transformers"
    raise ValueError(f"Unknown backend: {requested!r}")


def normalize_messages(input: MessagesInput, system_prompt: str | None = None) -> list[ChatMessage]:
    """Turn a string or message sequence into the message list sent to an adapter."""
    messages: list[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))

    if isinstance(input, str):
        messages.append(ChatMessage(role="user", content=input))
        return messages

    for item in input:
        if isinstance(item, ChatMessage):
            messages.append(item)
        else:
            messages.append(ChatMessage.from_dict(item))
    return messages


class LocalLLM:
    """Backend-agnostic chat session over one loaded adapter."""

    def __init__(
        self,
        adapter: BaseAdapter,
        *,
        system_prompt: str | None = None,
        requested_backend: str | None = None,
    ) -> None:
        self._adapter = adapter
        self._system_prompt = system_prompt
        self._requested_backend = requested_backend or adapter.backend

    @property
    def adapter(self) -> BaseAdapter:
        return self._adapter

    @property
    def is_ready(self) -> bool:
        return self._adapter.is_ready

    @property
    def model_id(self) -> str | None:
        return self._adapter.model_id

    @property
    def backend(self) -> str:
        return self._adapter.backend

    @property
    def requested_backend(self) -> str:
        return self._requested_backend

    @property
    def downgraded(self) -> bool:
        """True when llamacpp was asked for explicitly but transformers is running."""
        return self._requested_backend not in ("auto", self.backend)

    @property
    def system_prompt(self) -> str | None:
        return self._system_prompt

    @property
    def model_info(self) -> dict[str, Any]:
        return self._adapter.model_info

    async def chat(self, input: MessagesInput, options: GenerateOptions | None = None) -> str:
        messages = normalize_messages(input, self._system_prompt)
        return await self._adapter.chat(messages, resolve_options(options))

    async def stream(
        self,
        input: MessagesInput,
        on_token: StreamCallback,
        options: GenerateOptions | None = None,
    ) -> str:
        messages = normalize_messages(input, self._system_prompt)
        return await self._adapter.stream(messages, on_token, resolve_options(options))

    async def unload(self) -> None:
        await self._adapter.unload()


def _adapter_options(backend: str, config: LLMConfig) -> dict[str, Any]:
    if backend == "llamacpp":
        return {"n_ctx": config.n_ctx, "n_gpu_layers": config.n_gpu_layers, "cache_dir": config.cache_dir}
    if backend == "transformers":
        return {"device": config.device, "quantization": config.quantization, "cache_dir": config.cache_dir}
    return {}


async def create_llm(
    config: LLMConfig | None = None,
    *,
    probe: Callable[[], Awaitable[bool]] = check_gpu,
    adapter_factory: Callable[..., BaseAdapter] = get_adapter,
) -> LocalLLM:
    """
    Create a `LocalLLM` with a loaded model.

    Args:
        config: Session configuration (defaults to `LLMConfig()`).
        probe: Async GPU capability check.
        adapter_factory: ``adapter_factory(backend, **options)`` builds the adapter.

    Raises:
        LoadFailedError: If the model cannot be loaded. Nothing is retried.
    """
    config = config or LLMConfig()

    gpu_available = await probe()
    backend = select_backend(config.backend, gpu_available)
    model = config.model or default_model(backend)
    logger.info("Using %s backend with model: %s", backend, model)

    adapter = adapter_factory(backend, **_adapter_options(backend, config))
    try:
        await adapter.load(model, config.on_load_progress)
    except LoadFailedError:
        raise
    except Exception as exc:
        raise LoadFailedError(model, str(exc)) from exc

    return LocalLLM(adapter, system_prompt=config.system_prompt, requested_backend=config.backend)
