"""Background model loading with a one-shot ready notification."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable

from ..types import LoadProgress, LoadProgressCallback
from .session import LLMConfig, LocalLLM, create_llm

logger = logging.getLogger(__name__)

ReadyCallback = Callable[[LocalLLM], None]


class ModelHost:
    """Owns one `LocalLLM` and tracks its loading lifecycle.

    Consumers such as `ChatOrchestrator` read `llm`/`is_loading` and use
    `on_ready` to be told once when the model becomes usable. A failed load
    is recorded in `error` and is not retried.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        *,
        factory: Callable[[LLMConfig], Awaitable[LocalLLM]] = create_llm,
        on_load: ReadyCallback | None = None,
        on_progress: LoadProgressCallback | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._config = config or LLMConfig()
        self._factory = factory
        self._on_load = on_load
        self._on_progress = on_progress
        self._on_error = on_error

        self._llm: LocalLLM | None = None
        self._is_loading = False
        self._load_progress: LoadProgress | None = None
        self._error: BaseException | None = None
        self._ready_callbacks: list[ReadyCallback] = []
        self._task: asyncio.Task | None = None

    @property
    def llm(self) -> LocalLLM | None:
        return self._llm

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_ready(self) -> bool:
        return self._llm is not None and self._llm.is_ready

    @property
    def load_progress(self) -> LoadProgress | None:
        return self._load_progress

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def model_id(self) -> str | None:
        return self._llm.model_id if self._llm is not None else None

    @property
    def backend(self) -> str | None:
        return self._llm.backend if self._llm is not None else None

    def on_ready(self, callback: ReadyCallback) -> Callable[[], None]:
        """Register a one-shot callback fired after the next successful load.

        Returns a function that removes the callback if it has not fired yet.
        """
        self._ready_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._ready_callbacks:
                self._ready_callbacks.remove(callback)

        return unsubscribe

    def _handle_progress(self, progress: LoadProgress) -> None:
        self._load_progress = progress
        if self._on_progress is not None:
            self._on_progress(progress)
        user_cb = self._config.on_load_progress
        if user_cb is not None:
            user_cb(progress)

    async def load(self) -> LocalLLM | None:
        """Load the configured model. No-op while a load is already running."""
        if self._is_loading:
            return None
        self._is_loading = True
        return await self._load()

    async def _load(self) -> LocalLLM | None:
        self._error = None
        self._handle_progress(LoadProgress(progress=0, status="Initializing..."))

        cfg = replace(self._config, on_load_progress=self._handle_progress)
        try:
            llm = await self._factory(cfg)
        except Exception as exc:
            logger.error("Failed to load model: %s", exc)
            self._error = exc
            if self._on_error is not None:
                self._on_error(exc)
            return None
        finally:
            self._is_loading = False

        previous, self._llm = self._llm, llm
        if previous is not None and previous is not llm:
            logger.info("Releasing previous model %s", previous.model_id)
            await previous.unload()
        self._handle_progress(LoadProgress(progress=100, status="Ready"))
        logger.info("Model ready: %s (%s)", llm.model_id, llm.backend)

        if self._on_load is not None:
            self._on_load(llm)
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for cb in callbacks:
            cb(llm)
        return llm

    def start(self) -> asyncio.Task:
        """Schedule `load()` on the running event loop."""
        if self._task is None or self._task.done():
            if self._is_loading:
                raise RuntimeError("A load is already in progress.")
            # Loading is visible before the task first runs.
            self._is_loading = True
            self._task = asyncio.ensure_future(self._load())
        return self._task

    async def wait(self) -> LocalLLM | None:
        """Wait for a scheduled load to finish."""
        if self._task is not None:
            await self._task
        return self._llm

    async def unload(self) -> None:
        llm = self._llm
        self._llm = None
        self._load_progress = None
        if llm is not None:
            await llm.unload()

    async def reload(self) -> LocalLLM | None:
        await self.unload()
        return await self.load()

    async def __aenter__(self) -> "ModelHost":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._is_loading = False
        await self.unload()
