import asyncio

from localllm import runtime


def test_check_gpu_reports_probe_result(monkeypatch):
    monkeypatch.setattr(runtime, "is_gpu_offload_supported", lambda: True)
    assert asyncio.run(runtime.check_gpu()) is True


def test_check_gpu_never_raises(monkeypatch):
    def broken():
        raise OSError("driver missing")

    monkeypatch.setattr(runtime, "is_gpu_offload_supported", broken)
    assert asyncio.run(runtime.check_gpu()) is False


def test_detect_capabilities(monkeypatch):
    monkeypatch.setattr(runtime, "is_gpu_offload_supported", lambda: False)
    monkeypatch.setattr(runtime, "is_llama_cpp_available", lambda: True)
    monkeypatch.setattr(runtime, "is_transformers_available", lambda: True)
    monkeypatch.setattr(runtime, "is_cuda_available", lambda: False)
    monkeypatch.setattr(runtime, "is_mps_available", lambda: True)

    caps = runtime.log_capabilities()
    assert caps.recommended_backend == "transformers"
    assert caps.recommended_device == "mps"
    assert caps.to_dict()["llama_cpp"] is True
