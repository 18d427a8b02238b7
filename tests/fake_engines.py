"""In-process fakes shared by the engine, server and CLI tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from localllm.engine.adapters.base import BaseAdapter
from localllm.engine.session import LLMConfig, LocalLLM


class FakeAdapter(BaseAdapter):
    """Adapter that replays a fixed token list.

    `gate` (an `asyncio.Event`) pauses generation before token `gate_after`
    and `load_gate` pauses loading, so tests can observe in-flight state.
    """

    backend = "fake"

    def __init__(
        self,
        tokens: tuple[str, ...] = ("Hel", "lo"),
        *,
        gate: asyncio.Event | None = None,
        gate_after: int = 0,
        load_gate: asyncio.Event | None = None,
        fail_load: BaseException | None = None,
        fail_generate: BaseException | None = None,
        **options: Any,
    ) -> None:
        super().__init__()
        self.tokens = list(tokens)
        self.gate = gate
        self.gate_after = gate_after
        self.load_gate = load_gate
        self.fail_load = fail_load
        self.fail_generate = fail_generate
        self.options = options
        self.requests: list[tuple[list, Any]] = []
        self.closed = 0

    async def _open(self, model_id: str, report) -> Any:
        report(50, "Loading fake model...")
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.fail_load is not None:
            raise self.fail_load
        return object()

    async def _complete(self, engine: Any, messages, options) -> str:
        self.requests.append((messages, options))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_generate is not None:
            raise self.fail_generate
        return "".join(self.tokens)

    async def _iter_tokens(self, engine: Any, messages, options):
        self.requests.append((messages, options))
        for i, token in enumerate(self.tokens):
            if self.gate is not None and i == self.gate_after:
                await self.gate.wait()
            if self.fail_generate is not None:
                raise self.fail_generate
            yield token

    async def _close(self, engine: Any) -> None:
        self.closed += 1


class FakeFactory:
    """`ModelHost` factory that builds `LocalLLM`s over `FakeAdapter`s."""

    def __init__(self, **adapter_kwargs: Any) -> None:
        self.adapter_kwargs = adapter_kwargs
        self.adapters: list[FakeAdapter] = []
        self.configs: list[LLMConfig] = []

    @property
    def adapter(self) -> FakeAdapter:
        return self.adapters[-1]

    async def __call__(self, config: LLMConfig) -> LocalLLM:
        self.configs.append(config)
        adapter = FakeAdapter(**self.adapter_kwargs)
        self.adapters.append(adapter)
        await adapter.load(config.model or "fake-model", config.on_load_progress)
        return LocalLLM(adapter, system_prompt=config.system_prompt, requested_backend=config.backend)


async def loaded_llm(**adapter_kwargs: Any) -> LocalLLM:
    adapter = FakeAdapter(**adapter_kwargs)
    await adapter.load("fake-model")
    return LocalLLM(adapter)


async def wait_until(predicate: Callable[[], bool], *, steps: int = 200) -> None:
    """Yield to the event loop until `predicate()` holds."""
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")
