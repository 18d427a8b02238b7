"""Runtime environment checks for localllm.

Engine libraries are imported lazily so the package (and its tests) import
without torch, transformers or llama-cpp-python installed.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1)
def is_llama_cpp_available() -> bool:
    """Check if llama-cpp-python is importable."""
    try:
        import llama_cpp  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_gpu_offload_supported() -> bool:
    """Check if the installed llama.cpp build can offload layers to a GPU."""
    if not is_llama_cpp_available():
        return False
    import llama_cpp

    probe = getattr(llama_cpp, "llama_supports_gpu_offload", None)
    if probe is None:
        return False
    try:
        return bool(probe())
    except Exception as exc:
        logger.debug("llama_supports_gpu_offload() failed: %s", exc)
        return False


@functools.lru_cache(maxsize=1)
def is_transformers_available() -> bool:
    """Check if transformers and torch are importable."""
    try:
        import torch  # noqa: F401
        import transformers  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    try:
        import torch
    except ImportError:
        return False
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if Apple Metal (MPS) is available."""
    try:
        import torch
    except ImportError:
        return False
    backends = getattr(torch, "backends", None)
    mps = getattr(backends, "mps", None)
    return bool(mps is not None and mps.is_available())


async def check_gpu() -> bool:
    """Report whether a GPU-accelerated engine can run here.

    Never raises; any probe failure counts as "no GPU".
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, is_gpu_offload_supported)
    except Exception as exc:
        logger.debug("GPU probe failed: %s", exc)
        return False


def recommended_device() -> str:
    if is_cuda_available():
        return "cuda"
    if is_mps_available():
        return "mps"
    return "cpu"


@dataclass(frozen=True)
class Capabilities:
    """Snapshot of what this machine can run."""

    llama_cpp: bool
    gpu_offload: bool
    transformers: bool
    cuda: bool
    mps: bool
    recommended_backend: str
    recommended_device: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def detect_capabilities() -> Capabilities:
    gpu = is_gpu_offload_supported()
    return Capabilities(
        llama_cpp=is_llama_cpp_available(),
        gpu_offload=gpu,
        transformers=is_transformers_available(),
        cuda=is_cuda_available(),
        mps=is_mps_available(),
        recommended_backend="llamacpp" if gpu else "transformers",
        recommended_device=recommended_device(),
    )


def log_capabilities(caps: Capabilities | None = None) -> Capabilities:
    caps = caps or detect_capabilities()
    logger.info(
        "capabilities: llama_cpp=%s gpu_offload=%s transformers=%s cuda=%s mps=%s -> %s/%s",
        caps.llama_cpp,
        caps.gpu_offload,
        caps.transformers,
        caps.cuda,
        caps.mps,
        caps.recommended_backend,
        caps.recommended_device,
    )
    return caps
