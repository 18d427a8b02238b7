"""Adapter for Hugging Face transformers text-generation pipelines."""

from __future__ import annotations

import asyncio
import gc
import logging
import threading
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from ...models import is_vision_model
from ...runtime import recommended_device
from ...types import ChatMessage, GenerateOptions, ImagePart, TextPart
from .base import BaseAdapter, ProgressReporter
from .hub import download_snapshot
from .streaming import StopSequenceFilter, cut_at_stop, iterate_in_thread
from .templates import TemplateFamily, select_template

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

_DOWNLOAD_SPAN = (5.0, 70.0)


def _to_pipeline_chat(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Chat-format input for image-text-to-text pipelines."""
    out: list[dict[str, Any]] = []
    for m in messages:
        if isinstance(m.content, str):
            out.append({"role": m.role, "content": [{"type": "text", "text": m.content}]})
            continue
        parts: list[dict[str, Any]] = []
        for p in m.content:
            if isinstance(p, TextPart):
                parts.append({"type": "text", "text": p.text})
            elif isinstance(p, ImagePart):
                parts.append({"type": "image", "url": p.ref})
        out.append({"role": m.role, "content": parts})
    return out


def _generated_text(result: Any) -> str:
    output = result[0] if isinstance(result, list) and result else result
    if isinstance(output, list) and output:
        output = output[0]
    text = output.get("generated_text", "") if isinstance(output, dict) else output
    if isinstance(text, list):
        # Chat-format output: the last message is the new assistant turn.
        last = text[-1] if text else {}
        text = last.get("content", "") if isinstance(last, dict) else last
    return text if isinstance(text, str) else ""


class TransformersAdapter(BaseAdapter):
    """
    Adapter for the interpreted fallback engine.

    Chat messages are flattened into one prompt using a template family
    picked from the model id, then run through a single blocking pipeline
    call. Tokens arrive through a `TextStreamer` callback on the worker
    thread and are bridged onto the event loop.

    Thread Safety:
        Pipelines are not thread-safe. Callers must not run two generations
        on the same adapter concurrently.
    """

    backend = "transformers"

    def __init__(
        self,
        *,
        device: str = "auto",
        quantization: str = "auto",
        cache_dir: str | None = None,
    ) -> None:
        super().__init__()
        self._device_pref = device
        self._quantization = quantization
        self._cache_dir = cache_dir
        self._device: str | None = None
        self._dtype: Any = None
        self._task = "text-generation"

    @property
    def device(self) -> str | None:
        """Device the model is loaded on."""
        return self._device

    @property
    def model_info(self) -> dict[str, Any]:
        info = super().model_info
        info.update(
            {
                "device": self._device,
                "dtype": str(self._dtype) if self._dtype is not None else None,
                "task": self._task,
            }
        )
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def _resolve_device(self) -> str:
        if self._device_pref != "auto":
            return self._device_pref
        return recommended_device()

    def _resolve_dtype(self, device: str) -> torch.dtype:
        import torch

        mapping = {
            "fp16": torch.float16,
            "bf16": torch.bfloat16,
            "fp32": torch.float32,
        }
        if self._quantization in mapping:
            return mapping[self._quantization]
        # Half precision only pays off on accelerators.
        return torch.float16 if device in ("cuda", "mps") else torch.float32

    def _download(self, model_id: str, on_progress: Callable[[int, int], None]) -> str:
        return download_snapshot(model_id, cache_dir=self._cache_dir, on_progress=on_progress)

    def _build_engine(self, model_path: str, task: str, device: str, dtype: Any) -> Any:
        from transformers import pipeline

        return pipeline(
            task,
            model=model_path,
            device=device,
            torch_dtype=dtype,
        )

    async def _open(self, model_id: str, report: ProgressReporter) -> Any:
        loop = asyncio.get_running_loop()
        report(0, "Initializing...")

        device = self._resolve_device()
        dtype = self._resolve_dtype(device)
        task = "image-text-to-text" if is_vision_model(model_id) else "text-generation"

        lo, hi = _DOWNLOAD_SPAN

        def on_download(done: int, total: int) -> None:
            pct = lo + (hi - lo) * (done / total if total else 0.0)
            status = f"Downloading weights ({done}/{total} files)"
            loop.call_soon_threadsafe(report, pct, status, done, total)

        report(lo, "Resolving model files...")
        path = await loop.run_in_executor(None, self._download, model_id, on_download)

        report(hi, f"Loading model on {device}...")
        engine = await loop.run_in_executor(None, self._build_engine, path, task, device, dtype)

        self._device = device
        self._dtype = dtype
        self._task = task
        report(100, "Ready")
        return engine

    async def _close(self, engine: Any) -> None:
        del engine
        gc.collect()
        try:
            import torch
        except ImportError:
            return
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _prepare(self, messages: list[ChatMessage]) -> tuple[Any, TemplateFamily]:
        family = select_template(self._model_id or "")
        if self._task == "image-text-to-text":
            return _to_pipeline_chat(messages), family
        return family.render(messages), family

    def _call_kwargs(self, options: GenerateOptions) -> dict[str, Any]:
        do_sample = options.temperature is not None and options.temperature > 0
        kwargs: dict[str, Any] = {
            "do_sample": do_sample,
            "return_full_text": False,
        }
        if options.max_tokens is not None:
            kwargs["max_new_tokens"] = options.max_tokens
        if do_sample:
            kwargs["temperature"] = options.temperature
            if options.top_p is not None:
                kwargs["top_p"] = options.top_p
        return kwargs

    def _run(self, engine: Any, inputs: Any, kwargs: dict[str, Any]) -> Any:
        if self._task == "image-text-to-text":
            return engine(text=inputs, **kwargs)
        return engine(inputs, **kwargs)

    async def _complete(self, engine: Any, messages: list[ChatMessage], options: GenerateOptions) -> str:
        loop = asyncio.get_running_loop()
        inputs, family = self._prepare(messages)
        kwargs = self._call_kwargs(options)

        result = await loop.run_in_executor(None, self._run, engine, inputs, kwargs)
        text = _generated_text(result)
        stops = list(options.stop_sequences or ()) + list(family.closing)
        return cut_at_stop(text, stops)

    def _make_streamer(self, engine: Any, on_text: Callable[[str], None]) -> Any:
        from transformers import TextStreamer

        class _CallbackStreamer(TextStreamer):
            def on_finalized_text(self, text: str, stream_end: bool = False) -> None:
                on_text(text)

        return _CallbackStreamer(engine.tokenizer, skip_prompt=True, skip_special_tokens=True)

    def _make_stopping_criteria(self, halt: Callable[[], bool]) -> Any:
        from transformers.generation.stopping_criteria import StoppingCriteria, StoppingCriteriaList

        class _StopOnSignal(StoppingCriteria):
            def __call__(self, gen_ids, scores, **kwargs) -> bool:
                return halt()

        return StoppingCriteriaList([_StopOnSignal()])

    def _iter_tokens(
        self, engine: Any, messages: list[ChatMessage], options: GenerateOptions
    ) -> AsyncIterator[str]:
        inputs, family = self._prepare(messages)
        kwargs = self._call_kwargs(options)
        stops = list(options.stop_sequences or ()) + list(family.closing)

        def produce(emit: Callable[[str], None], cancel: threading.Event) -> None:
            text_filter = StopSequenceFilter(stops)

            def on_text(text: str) -> None:
                out = text_filter.feed(text)
                if out:
                    emit(out)

            kwargs["streamer"] = self._make_streamer(engine, on_text)
            kwargs["stopping_criteria"] = self._make_stopping_criteria(
                lambda: cancel.is_set() or text_filter.stopped
            )
            self._run(engine, inputs, kwargs)
            rest = text_filter.finish()
            if rest:
                emit(rest)

        return iterate_in_thread(produce, name="localllm-transformers")
