"""localllm inference server entrypoint (FastAPI + OpenAI-style Chat Completions).

Example:
    python -m apps.server.main --model qwen-2.5-0.5b --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from apps.server.app import create_app
from localllm.engine.session import LLMConfig, create_llm
from localllm.errors import LoadFailedError
from localllm.types import BACKENDS, DEVICES, QUANTIZATIONS, LoadProgress


def build_parser(p: argparse.ArgumentParser | None = None) -> argparse.ArgumentParser:
    p = p or argparse.ArgumentParser(description="localllm inference server")
    p.add_argument("--model", default=None, help="Model alias or id (default: per-backend default)")
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    p.add_argument(
        "--backend",
        default=None,
        choices=["auto", *BACKENDS],
        help="Engine backend (default: auto, or LOCALLLM_BACKEND)",
    )
    p.add_argument("--device", default=None, choices=list(DEVICES), help="transformers device (default: auto)")
    p.add_argument(
        "--quantization",
        default=None,
        choices=list(QUANTIZATIONS),
        help="transformers dtype (default: auto)",
    )
    p.add_argument("--system-prompt", default=None, help="System prompt prepended to every request")
    p.add_argument("--n-ctx", type=int, default=None, help="llama.cpp context window (default: 4096)")
    p.add_argument("--n-gpu-layers", type=int, default=None, help="llama.cpp layers to offload (-1 = all)")
    p.add_argument("--cache-dir", default=None, help="Hugging Face cache directory")
    p.add_argument(
        "--http-max-concurrency",
        type=int,
        default=0,
        help="Max in-flight /v1/chat/completions requests (0 = unlimited)",
    )
    p.add_argument(
        "--http-max-completion-tokens",
        type=int,
        default=0,
        help="Reject requests with max_tokens above this cap (0 = unlimited)",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return p


def config_from_args(args: argparse.Namespace) -> LLMConfig:
    last_pct: list[int] = [-1]

    def on_progress(p: LoadProgress) -> None:
        # Print each 10% step once.
        step = p.progress // 10
        if step != last_pct[0]:
            last_pct[0] = step
            print(f"[server] {p.progress:3d}% {p.status}", flush=True)

    return LLMConfig.from_env(
        model=args.model,
        backend=args.backend,
        device=args.device,
        quantization=args.quantization,
        system_prompt=args.system_prompt,
        n_ctx=args.n_ctx,
        n_gpu_layers=args.n_gpu_layers,
        cache_dir=args.cache_dir,
        on_load_progress=on_progress,
    )


def run(args: argparse.Namespace) -> int:
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = config_from_args(args)
    except ValueError as exc:
        print(f"[server] invalid configuration: {exc}", file=sys.stderr, flush=True)
        return 2

    print(
        "[server] loading model... "
        f"model={config.model!r} backend={config.backend!r} device={config.device!r}",
        flush=True,
    )
    try:
        llm = asyncio.run(create_llm(config))
    except LoadFailedError as exc:
        print(f"[server] {exc}", file=sys.stderr, flush=True)
        return 1

    if llm.downgraded:
        print("[server] note: llamacpp unavailable without GPU offload; using transformers", flush=True)
    print(f"[server] model loaded: {llm.model_id} ({llm.backend})", flush=True)

    app = create_app(
        llm=llm,
        http_max_concurrency=None if args.http_max_concurrency <= 0 else int(args.http_max_concurrency),
        http_max_completion_tokens=None
        if args.http_max_completion_tokens <= 0
        else int(args.http_max_completion_tokens),
    )

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.verbose else "info",
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
