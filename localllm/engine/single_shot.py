"""History-free generation helpers over a `ModelHost`."""

from __future__ import annotations

import logging
from typing import Callable

from ..types import GenerateOptions, MessagesInput, StreamCallback, StreamState
from .host import ModelHost

logger = logging.getLogger(__name__)


class SingleShotStreamer:
    """Stream one completion at a time with no conversation history.

    After `stop()` later tokens are dropped, `on_finish` is not called and
    `stream()` returns the text surfaced before the stop.
    """

    def __init__(
        self,
        host: ModelHost,
        generate_options: GenerateOptions | None = None,
        *,
        on_token: StreamCallback | None = None,
        on_finish: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._host = host
        self._generate_options = generate_options
        self._on_token = on_token
        self._on_finish = on_finish
        self._on_error = on_error

        self._text = ""
        self._is_streaming = False
        self._in_flight = False
        self._state: StreamState | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    async def stream(self, input: MessagesInput) -> str:
        llm = self._host.llm
        if llm is None or not llm.is_ready or self._in_flight:
            return ""

        self._in_flight = True
        state = StreamState()
        self._state = state
        self._is_streaming = True
        self._text = ""

        def on_token(token: str, full_text: str) -> None:
            if state.aborted:
                return
            state.text = full_text
            self._text = full_text
            if self._on_token is not None:
                self._on_token(token, full_text)

        try:
            response = await llm.stream(input, on_token, self._generate_options)
        except Exception as exc:
            logger.error("Streaming failed: %s", exc)
            if self._on_error is not None:
                self._on_error(exc)
            return ""
        finally:
            if self._state is state:
                self._state = None
                self._is_streaming = False
            self._in_flight = False

        if state.aborted:
            return state.text

        if self._on_finish is not None:
            self._on_finish(response)
        return response

    def stop(self) -> None:
        if self._state is not None:
            self._state.aborted = True
        self._is_streaming = False

    def clear(self) -> None:
        self._text = ""


class CompletionRunner:
    """Non-streaming single completion; failures are logged and yield ``""``."""

    def __init__(self, host: ModelHost, generate_options: GenerateOptions | None = None) -> None:
        self._host = host
        self._generate_options = generate_options
        self._completion = ""
        self._is_loading = False

    @property
    def completion(self) -> str:
        return self._completion

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    async def complete(self, prompt: str) -> str:
        llm = self._host.llm
        if llm is None or not llm.is_ready:
            return ""

        self._is_loading = True
        try:
            response = await llm.chat(prompt, self._generate_options)
        except Exception as exc:
            logger.error("Completion failed: %s", exc)
            return ""
        finally:
            self._is_loading = False

        self._completion = response
        return response

    def clear(self) -> None:
        self._completion = ""
