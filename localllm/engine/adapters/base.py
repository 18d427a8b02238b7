"""Base adapter interface for inference engines."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, ClassVar, Sequence

from ...errors import GenerationError, LoadFailedError, LocalLLMError, NotLoadedError
from ...models import resolve_model_id
from ...types import ChatMessage, GenerateOptions, LoadProgress, LoadProgressCallback, StreamCallback

logger = logging.getLogger(__name__)

# Progress reporter handed to `_open`: report(progress, status, loaded=None, total=None).
ProgressReporter = Callable[..., None]


class BaseAdapter(ABC):
    """
    Abstract base class for engine adapters.

    Each supported engine implements the private hooks below so callers can
    load a model and run chat/stream requests without knowing which engine
    is active. The adapter owns at most one engine handle at a time.
    """

    backend: ClassVar[str] = ""

    def __init__(self) -> None:
        self._engine: Any = None
        self._model_id: str | None = None

    @property
    def is_ready(self) -> bool:
        return self._engine is not None and self._model_id is not None

    @property
    def model_id(self) -> str | None:
        return self._model_id

    @property
    def model_info(self) -> dict[str, Any]:
        """Return metadata about the loaded model."""
        return {
            "backend": self.backend,
            "model_id": self._model_id,
            "loaded": self.is_ready,
        }

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    async def load(self, model_id: str, on_progress: LoadProgressCallback | None = None) -> None:
        """
        Load a model, resolving aliases through the backend's alias table.

        Args:
            model_id: Alias or concrete identifier.
            on_progress: Receives `LoadProgress` updates (0-100) while loading.

        Raises:
            LoadFailedError: If the engine rejects initialization. The adapter
                is left not-ready.
        """
        resolved = resolve_model_id(self.backend, model_id)

        if self._engine is not None:
            logger.info("Releasing %s before loading %s", self._model_id, resolved)
            await self.unload()

        def report(progress: float, status: str, loaded: float | None = None, total: float | None = None) -> None:
            if on_progress is None:
                return
            pct = int(round(max(0.0, min(100.0, float(progress)))))
            on_progress(LoadProgress(progress=pct, status=status, loaded=loaded, total=total))

        logger.info("Loading %s model %s", self.backend, resolved)
        try:
            engine = await self._open(resolved, report)
        except LoadFailedError:
            raise
        except Exception as exc:
            logger.error("Failed to load %s: %s", resolved, exc)
            raise LoadFailedError(resolved, str(exc)) from exc

        self._engine = engine
        self._model_id = resolved
        logger.info("Loaded %s model %s", self.backend, resolved)

    async def chat(self, messages: Sequence[ChatMessage], options: GenerateOptions) -> str:
        """Run one non-streaming completion and return the generated text.

        `options` arrive already defaulted by the caller; fields left unset
        fall back to the engine's own defaults.
        """
        engine = self._require_engine()
        try:
            return await self._complete(engine, list(messages), options)
        except LocalLLMError:
            raise
        except Exception as exc:
            raise GenerationError(f"Generation failed: {exc}") from exc

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        on_token: StreamCallback,
        options: GenerateOptions,
    ) -> str:
        """
        Stream a completion token by token.

        Every token is passed to `on_token(token, full_text_so_far)` in
        emission order. Returns the full generated text.
        """
        engine = self._require_engine()

        full = ""
        tokens = self._iter_tokens(engine, list(messages), options)
        try:
            async for token in tokens:
                full += token
                on_token(token, full)
        except LocalLLMError:
            raise
        except Exception as exc:
            raise GenerationError(f"Generation failed: {exc}") from exc
        finally:
            await tokens.aclose()
        return full

    async def unload(self) -> None:
        """Release the engine handle and free resources. Idempotent."""
        engine = self._engine
        self._engine = None
        self._model_id = None
        if engine is None:
            return
        try:
            await self._close(engine)
        except Exception as exc:
            logger.warning("Error while releasing %s engine: %s", self.backend, exc)

    def _require_engine(self) -> Any:
        if not self.is_ready:
            raise NotLoadedError()
        return self._engine

    # -------------------------------------------------------------------------
    # Engine hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _open(self, model_id: str, report: ProgressReporter) -> Any:
        """Initialize the engine for `model_id` and return its handle."""

    @abstractmethod
    async def _complete(self, engine: Any, messages: list[ChatMessage], options: GenerateOptions) -> str:
        """Produce a full completion."""

    @abstractmethod
    def _iter_tokens(
        self, engine: Any, messages: list[ChatMessage], options: GenerateOptions
    ) -> AsyncIterator[str]:
        """Yield generated tokens as they are produced."""

    async def _close(self, engine: Any) -> None:
        """Release `engine`. Default implementation does nothing."""
