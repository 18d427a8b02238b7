"""Multi-turn chat state machine over a `ModelHost`.

`ChatOrchestrator` keeps the conversation history, streams the assistant's
reply, and accepts messages while the model is still loading: the user
message is shown in history right away and generation starts by itself once
the host reports the model ready.

States:
    Idle -> Generating          send() with the model ready
    Idle -> Pending             send() while the model loads (queueing on)
    Pending -> Generating       model becomes ready
    Generating -> Idle          natural completion, error, or stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from ..types import (
    ChatMessage,
    GenerateOptions,
    MessageContent,
    StreamCallback,
    StreamState,
    is_blank,
)
from .host import ModelHost

logger = logging.getLogger(__name__)

ABORT_MARKER = "..."


@dataclass(frozen=True)
class ChatConfig:
    """Per-conversation options."""

    initial_messages: tuple[ChatMessage, ...] = field(default_factory=tuple)
    system_prompt: str | None = None
    generate_options: GenerateOptions | None = None
    # Accept send() while the model is loading and run it once ready.
    queue_while_loading: bool = True
    # Append a visible "Error: ..." assistant message when generation fails.
    error_messages: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "initial_messages", tuple(self.initial_messages))


class ChatOrchestrator:
    """Conversation history plus one streamed generation at a time.

    Only one generation runs per orchestrator; requests made while one is in
    flight are dropped and return ``""``. `stop()` only stops surfacing
    tokens: the engine call runs to completion in the background and its
    output is discarded.
    """

    def __init__(
        self,
        host: ModelHost,
        config: ChatConfig | None = None,
        *,
        on_start: Callable[[], None] | None = None,
        on_token: StreamCallback | None = None,
        on_finish: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._host = host
        self._config = config or ChatConfig()
        self._on_start = on_start
        self._on_token = on_token
        self._on_finish = on_finish
        self._on_error = on_error

        self._messages: list[ChatMessage] = list(self._config.initial_messages)
        self._streaming_text = ""
        self._is_generating = False
        self._pending: MessageContent | None = None
        self._in_flight = False
        self._state: StreamState | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._pending_task: asyncio.Future | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def host(self) -> ModelHost:
        return self._host

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @property
    def is_pending(self) -> bool:
        return self._pending is not None

    @property
    def streaming_text(self) -> str:
        return self._streaming_text

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def send(self, content: MessageContent | Sequence[Any]) -> str:
        """Send a user message.

        Returns the assistant reply, or ``""`` when the message was queued,
        dropped, or generation failed.
        """
        if is_blank(content):
            return ""

        if self._host.is_ready:
            return await self._generate(content)

        if self._host.is_loading and self._config.queue_while_loading:
            message = ChatMessage(role="user", content=content)
            self._messages.append(message)
            # Single slot: a newer queued message replaces the older one.
            self._pending = message.content
            self._subscribe()
            logger.debug("Model loading; queued message until ready.")
            return ""

        logger.debug("Model not ready and not loading; message dropped.")
        return ""

    def stop(self) -> None:
        """Stop surfacing tokens and keep the partial reply in history."""
        if self._state is not None:
            self._state.aborted = True
        self._is_generating = False
        self._pending = None

        if self._streaming_text:
            self._messages.append(ChatMessage(role="assistant", content=self._streaming_text + ABORT_MARKER))
            self._streaming_text = ""

    def clear(self) -> None:
        self._messages = list(self._config.initial_messages)
        self._streaming_text = ""
        self._pending = None

    def append(self, message: ChatMessage | Mapping[str, Any]) -> None:
        """Add a message to history without generating."""
        if not isinstance(message, ChatMessage):
            message = ChatMessage.from_dict(message)
        self._messages.append(message)

    async def reload(self) -> str:
        """Regenerate the reply to the last user message."""
        if self._in_flight:
            return ""

        last_user = None
        for i in range(len(self._messages) - 1, -1, -1):
            if self._messages[i].role == "user":
                last_user = i
                break
        if last_user is None:
            return ""

        content = self._messages[last_user].content
        del self._messages[last_user:]
        return await self.send(content)

    async def join(self) -> str:
        """Wait for a generation started automatically from the pending slot."""
        task = self._pending_task
        if task is None:
            return ""
        result = await task
        if self._pending_task is task:
            self._pending_task = None
        return result

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _subscribe(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._host.on_ready(self._handle_ready)

    def _handle_ready(self, llm: Any) -> None:
        self._unsubscribe = None
        content = self._pending
        if content is None:
            return
        self._pending = None
        self._pending_task = asyncio.ensure_future(self._generate(content, queued=True))

    async def _generate(self, content: MessageContent | Sequence[Any], *, queued: bool = False) -> str:
        llm = self._host.llm
        if llm is None or not llm.is_ready or self._in_flight:
            return ""
        self._in_flight = True

        if queued:
            # The user message went into history when it was queued.
            history = list(self._messages)
        else:
            user = ChatMessage(role="user", content=content)
            history = list(self._messages) + [user]
            self._messages.append(user)

        request: list[ChatMessage] = []
        if self._config.system_prompt:
            request.append(ChatMessage(role="system", content=self._config.system_prompt))
        request.extend(history)

        state = StreamState()
        self._state = state
        self._is_generating = True
        self._streaming_text = ""
        if self._on_start is not None:
            self._on_start()

        def on_token(token: str, full_text: str) -> None:
            if state.aborted:
                return
            state.text = full_text
            self._streaming_text = full_text
            if self._on_token is not None:
                self._on_token(token, full_text)

        try:
            response = await llm.stream(request, on_token, self._config.generate_options)
        except Exception as exc:
            if state.aborted:
                # stop() already committed the partial reply; nothing more is surfaced.
                logger.info("Generation failed after stop: %s", exc)
                return state.text
            logger.error("Generation failed: %s", exc)
            self._streaming_text = ""
            if self._on_error is not None:
                self._on_error(exc)
            if self._config.error_messages:
                self._messages.append(ChatMessage(role="assistant", content=f"Error: {exc}"))
            return ""
        finally:
            if self._state is state:
                self._state = None
                self._is_generating = False
            self._in_flight = False

        if state.aborted:
            # stop() already committed the partial reply.
            return state.text

        self._messages.append(ChatMessage(role="assistant", content=response))
        self._streaming_text = ""
        if self._on_finish is not None:
            self._on_finish(response)
        return response
