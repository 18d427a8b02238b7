import asyncio
import logging

import pytest

from fake_engines import FakeAdapter, loaded_llm

from localllm.engine.session import LLMConfig, LocalLLM, create_llm, select_backend
from localllm.errors import LoadFailedError, NotLoadedError
from localllm.models import DEFAULT_LLAMACPP_MODEL, DEFAULT_TRANSFORMERS_MODEL
from localllm.types import GenerateOptions


def _probe(result):
    async def probe():
        return result

    return probe


class _AdapterFactory:
    def __init__(self, **adapter_kwargs):
        self.adapter_kwargs = adapter_kwargs
        self.calls = []

    def __call__(self, backend, **options):
        self.calls.append((backend, options))
        adapter = FakeAdapter(**self.adapter_kwargs)
        adapter.backend = backend
        return adapter


@pytest.mark.parametrize(
    "requested,gpu,expected",
    [
        ("auto", True, "llamacpp"),
        ("auto", False, "transformers"),
        ("llamacpp", True, "llamacpp"),
        ("llamacpp", False, "transformers"),
        ("transformers", True, "transformers"),
        ("transformers", False, "transformers"),
    ],
)
def test_select_backend(requested, gpu, expected):
    assert select_backend(requested, gpu) == expected


def test_select_backend_warns_on_downgrade(caplog):
    with caplog.at_level(logging.WARNING, logger="localllm.engine.session"):
        assert select_backend("llamacpp", False) == "transformers"
    assert "Falling back to transformers" in caplog.text


def test_select_backend_rejects_unknown():
    with pytest.raises(ValueError):
        select_backend("onnx", True)


def test_config_validation():
    with pytest.raises(ValueError):
        LLMConfig(backend="onnx")
    with pytest.raises(ValueError):
        LLMConfig(device="tpu")
    with pytest.raises(ValueError):
        LLMConfig(quantization="int4")
    with pytest.raises(ValueError):
        LLMConfig(n_ctx=0)


def test_config_from_env():
    env = {
        "LOCALLLM_MODEL": "smollm2-135m",
        "LOCALLLM_BACKEND": "transformers",
        "LOCALLLM_N_CTX": "2048",
        "LOCALLLM_DEVICE": "",
    }
    cfg = LLMConfig.from_env(env, device="cpu", system_prompt=None)
    assert cfg.model == "smollm2-135m"
    assert cfg.backend == "transformers"
    assert cfg.n_ctx == 2048
    assert cfg.device == "cpu"
    assert cfg.system_prompt is None

    # Explicit overrides win over the environment.
    assert LLMConfig.from_env(env, backend="llamacpp").backend == "llamacpp"

    with pytest.raises(ValueError, match="LOCALLLM_N_GPU_LAYERS"):
        LLMConfig.from_env({"LOCALLLM_N_GPU_LAYERS": "all"})


def test_create_llm_auto_uses_llamacpp_defaults_with_gpu():
    factory = _AdapterFactory()
    llm = asyncio.run(create_llm(LLMConfig(n_ctx=1024), probe=_probe(True), adapter_factory=factory))

    assert llm.backend == "llamacpp"
    assert llm.model_id == DEFAULT_LLAMACPP_MODEL
    assert llm.downgraded is False
    backend, options = factory.calls[0]
    assert backend == "llamacpp"
    assert options["n_ctx"] == 1024
    assert options["n_gpu_layers"] == -1


def test_create_llm_downgrades_explicit_llamacpp_without_gpu():
    factory = _AdapterFactory()
    cfg = LLMConfig(backend="llamacpp", device="cpu", quantization="fp32")
    llm = asyncio.run(create_llm(cfg, probe=_probe(False), adapter_factory=factory))

    assert llm.backend == "transformers"
    assert llm.requested_backend == "llamacpp"
    assert llm.downgraded is True
    assert llm.model_id == DEFAULT_TRANSFORMERS_MODEL
    assert factory.calls[0][1] == {"device": "cpu", "quantization": "fp32", "cache_dir": None}


def test_create_llm_forwards_progress():
    seen = []
    cfg = LLMConfig(model="m", on_load_progress=seen.append)
    asyncio.run(create_llm(cfg, probe=_probe(False), adapter_factory=_AdapterFactory()))
    assert [p.status for p in seen] == ["Loading fake model..."]


def test_create_llm_load_failure():
    factory = _AdapterFactory(fail_load=OSError("disk full"))
    with pytest.raises(LoadFailedError) as excinfo:
        asyncio.run(create_llm(LLMConfig(model="m"), probe=_probe(False), adapter_factory=factory))
    assert excinfo.value.model_id == "m"
    assert "disk full" in excinfo.value.reason


def test_create_llm_wraps_adapter_construction_errors():
    def broken_factory(backend, **options):
        adapter = FakeAdapter()

        async def load(model_id, on_progress=None):
            raise RuntimeError("no such engine")

        adapter.load = load
        return adapter

    with pytest.raises(LoadFailedError, match="no such engine"):
        asyncio.run(create_llm(LLMConfig(model="m"), probe=_probe(True), adapter_factory=broken_factory))


def test_local_llm_prepends_system_prompt_and_defaults_options():
    async def _run():
        adapter = FakeAdapter()
        await adapter.load("m")
        llm = LocalLLM(adapter, system_prompt="Be brief.")
        out = await llm.chat("hi")
        streamed = await llm.stream("hi", lambda t, f: None, GenerateOptions(max_tokens=4))
        return adapter, out, streamed

    adapter, out, streamed = asyncio.run(_run())
    assert out == "Hello"
    assert streamed == "Hello"
    messages, options = adapter.requests[0]
    assert [m.role for m in messages] == ["system", "user"]
    assert options.max_tokens == 512
    assert adapter.requests[1][1].max_tokens == 4


def test_local_llm_after_unload_raises_not_loaded():
    async def _run():
        llm = await loaded_llm()
        await llm.unload()
        assert llm.is_ready is False
        await llm.chat("hi")

    with pytest.raises(NotLoadedError, match="Call load\\(\\) first"):
        asyncio.run(_run())
