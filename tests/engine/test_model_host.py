import asyncio

import pytest

from fake_engines import FakeFactory

from localllm.engine.host import ModelHost
from localllm.engine.session import LLMConfig
from localllm.errors import LoadFailedError


def test_load_tracks_progress_and_fires_callbacks():
    async def _run():
        seen = []
        user_seen = []
        loaded = []
        factory = FakeFactory()
        host = ModelHost(
            LLMConfig(model="fake-model", on_load_progress=user_seen.append),
            factory=factory,
            on_progress=seen.append,
            on_load=loaded.append,
        )
        ready = []
        host.on_ready(ready.append)

        llm = await host.load()
        return host, llm, seen, user_seen, loaded, ready

    host, llm, seen, user_seen, loaded, ready = asyncio.run(_run())

    assert host.is_ready
    assert host.is_loading is False
    assert host.model_id == "fake-model"
    assert host.backend == "fake"
    assert [p.progress for p in seen] == [0, 50, 100]
    assert [p.progress for p in user_seen] == [0, 50, 100]
    assert host.load_progress.status == "Ready"
    assert loaded == [llm]
    assert ready == [llm]


def test_ready_callbacks_fire_once_and_can_unsubscribe():
    async def _run():
        host = ModelHost(LLMConfig(model="m"), factory=FakeFactory())
        fired = []
        host.on_ready(lambda llm: fired.append("a"))
        unsubscribe = host.on_ready(lambda llm: fired.append("b"))
        unsubscribe()
        await host.load()
        await host.reload()
        return fired

    assert asyncio.run(_run()) == ["a"]


def test_start_marks_loading_immediately():
    async def _run():
        gate = asyncio.Event()
        host = ModelHost(LLMConfig(model="m"), factory=FakeFactory(load_gate=gate))
        task = host.start()
        assert host.is_loading is True
        assert host.is_ready is False
        # A second start returns the same task; a direct load is a no-op.
        assert host.start() is task
        assert await host.load() is None
        gate.set()
        llm = await host.wait()
        assert llm is host.llm
        assert host.is_loading is False

    asyncio.run(_run())


def test_failed_load_is_recorded_not_raised():
    async def _run():
        errors = []
        host = ModelHost(
            LLMConfig(model="m"),
            factory=FakeFactory(fail_load=RuntimeError("bad weights")),
            on_error=errors.append,
        )
        assert await host.load() is None
        return host, errors

    host, errors = asyncio.run(_run())
    assert host.is_ready is False
    assert host.is_loading is False
    assert isinstance(host.error, LoadFailedError)
    assert errors == [host.error]


def test_unload_releases_adapter():
    async def _run():
        factory = FakeFactory()
        host = ModelHost(LLMConfig(model="m"), factory=factory)
        await host.load()
        await host.unload()
        await host.unload()
        return host, factory

    host, factory = asyncio.run(_run())
    assert host.llm is None
    assert host.is_ready is False
    assert factory.adapter.closed == 1


def test_context_manager_loads_in_background_and_unloads():
    async def _run():
        factory = FakeFactory()
        async with ModelHost(LLMConfig(model="m"), factory=factory) as host:
            assert host.is_loading is True
            await host.wait()
            assert host.is_ready
        return host, factory

    host, factory = asyncio.run(_run())
    assert host.llm is None
    assert factory.adapter.closed == 1


def test_context_manager_cancels_pending_load():
    async def _run():
        gate = asyncio.Event()
        async with ModelHost(LLMConfig(model="m"), factory=FakeFactory(load_gate=gate)) as host:
            await asyncio.sleep(0)
        return host

    host = asyncio.run(_run())
    assert host.is_loading is False
    assert host.llm is None


def test_start_rejects_overlap_with_direct_load():
    async def _run():
        gate = asyncio.Event()
        host = ModelHost(LLMConfig(model="m"), factory=FakeFactory(load_gate=gate))
        direct = asyncio.ensure_future(host.load())
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            host.start()
        gate.set()
        await direct

    asyncio.run(_run())


def test_second_load_releases_previous_model():
    async def _run():
        factory = FakeFactory()
        host = ModelHost(LLMConfig(model="m"), factory=factory)
        first = await host.load()
        second = await host.load()
        return host, factory, first, second

    host, factory, first, second = asyncio.run(_run())
    assert first is not second
    assert host.llm is second
    assert host.is_ready
    assert first.is_ready is False
    assert factory.adapters[0].closed == 1
    assert factory.adapters[1].closed == 0
