"""Adapter for GGUF models running on llama.cpp (llama-cpp-python)."""

from __future__ import annotations

import asyncio
import gc
import logging
import threading
from typing import Any, AsyncIterator, Callable

from ...types import ChatMessage, GenerateOptions, ImagePart, TextPart
from .base import BaseAdapter, ProgressReporter
from .hub import download_gguf
from .streaming import iterate_in_thread

logger = logging.getLogger(__name__)

# Share of the progress bar spent downloading weights; the rest is engine init.
_DOWNLOAD_SPAN = (5.0, 80.0)


def to_llama_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert messages to llama.cpp chat-completion wire shape."""
    out: list[dict[str, Any]] = []
    for m in messages:
        if isinstance(m.content, str):
            out.append({"role": m.role, "content": m.content})
            continue
        parts: list[dict[str, Any]] = []
        for p in m.content:
            if isinstance(p, TextPart):
                parts.append({"type": "text", "text": p.text})
            elif isinstance(p, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": p.ref}})
        out.append({"role": m.role, "content": parts})
    return out


def _completion_kwargs(options: GenerateOptions) -> dict[str, Any]:
    # Unset fields are left to llama.cpp's own defaults.
    kwargs: dict[str, Any] = {}
    for key in ("temperature", "top_p", "max_tokens"):
        value = getattr(options, key)
        if value is not None:
            kwargs[key] = value
    if options.stop_sequences:
        kwargs["stop"] = list(options.stop_sequences)
    return kwargs


class LlamaCppAdapter(BaseAdapter):
    """
    Adapter for the GPU-compiled engine.

    Model ids are local ``.gguf`` paths or ``org/repo/filename-glob``
    references on the Hugging Face Hub. The engine's native streaming
    primitive is an iterator of chat-completion chunks; it is pulled on a
    worker thread and bridged onto the event loop.

    Thread Safety:
        A `llama_cpp.Llama` instance is not thread-safe. Callers must not run
        two generations on the same adapter concurrently.
    """

    backend = "llamacpp"

    def __init__(
        self,
        *,
        n_ctx: int = 4096,
        n_gpu_layers: int = -1,
        cache_dir: str | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__()
        self._n_ctx = n_ctx
        self._n_gpu_layers = n_gpu_layers
        self._cache_dir = cache_dir
        self._verbose = verbose
        self._model_path: str | None = None

    @property
    def model_info(self) -> dict[str, Any]:
        info = super().model_info
        info.update(
            {
                "model_path": self._model_path,
                "n_ctx": self._n_ctx,
                "n_gpu_layers": self._n_gpu_layers,
            }
        )
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def _download(self, model_id: str, on_progress: Callable[[int, int], None]) -> str:
        return download_gguf(model_id, cache_dir=self._cache_dir, on_progress=on_progress)

    def _build_engine(self, model_path: str) -> Any:
        from llama_cpp import Llama

        return Llama(
            model_path=model_path,
            n_gpu_layers=self._n_gpu_layers,
            n_ctx=self._n_ctx,
            verbose=self._verbose,
        )

    async def _open(self, model_id: str, report: ProgressReporter) -> Any:
        loop = asyncio.get_running_loop()
        report(0, "Initializing...")

        lo, hi = _DOWNLOAD_SPAN

        def on_download(done: int, total: int) -> None:
            pct = lo + (hi - lo) * (done / total if total else 0.0)
            status = f"Downloading weights ({done}/{total} files)"
            loop.call_soon_threadsafe(report, pct, status, done, total)

        report(lo, "Resolving model files...")
        path = await loop.run_in_executor(None, self._download, model_id, on_download)

        report(hi, "Loading model into memory...")
        engine = await loop.run_in_executor(None, self._build_engine, path)
        self._model_path = path

        report(100, "Ready")
        return engine

    async def _close(self, engine: Any) -> None:
        close = getattr(engine, "close", None)
        if callable(close):
            close()
        self._model_path = None
        del engine
        gc.collect()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def _complete(self, engine: Any, messages: list[ChatMessage], options: GenerateOptions) -> str:
        loop = asyncio.get_running_loop()
        payload = to_llama_messages(messages)
        kwargs = _completion_kwargs(options)

        def run() -> str:
            result = engine.create_chat_completion(messages=payload, stream=False, **kwargs)
            choices = result.get("choices") or [{}]
            message = choices[0].get("message") or {}
            return message.get("content") or ""

        return await loop.run_in_executor(None, run)

    def _iter_tokens(
        self, engine: Any, messages: list[ChatMessage], options: GenerateOptions
    ) -> AsyncIterator[str]:
        payload = to_llama_messages(messages)
        kwargs = _completion_kwargs(options)

        def produce(emit: Callable[[str], None], cancel: threading.Event) -> None:
            chunks = engine.create_chat_completion(messages=payload, stream=True, **kwargs)
            try:
                for chunk in chunks:
                    if cancel.is_set():
                        break
                    choices = chunk.get("choices") or [{}]
                    delta = choices[0].get("delta") or {}
                    content = delta.get("content")
                    if content:
                        emit(content)
            finally:
                close = getattr(chunks, "close", None)
                if callable(close):
                    close()

        return iterate_in_thread(produce, name="localllm-llamacpp")
