"""`localllm`: local LLM CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from apps.cli.batch import read_prompts, run_batch
from apps.cli.chat_repl import DEFAULT_SYSTEM_PROMPT, chat_repl
from apps.cli.output import format_capabilities, format_models, print_json
from apps.server import main as server_main
from localllm.engine.host import ModelHost
from localllm.engine.session import LLMConfig
from localllm.models import list_models, model_size
from localllm.runtime import detect_capabilities
from localllm.types import BACKENDS, DEVICES, QUANTIZATIONS, GenerateOptions


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model", default=None, help="Model alias or id (default: per-backend default)")
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
    p.add_argument("--cache-dir", default=None, help="Hugging Face cache directory")


def _add_sampling_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--temperature", type=float, default=None, help="Sampling temperature (default: 0.7)")
    p.add_argument("--top-p", type=float, default=None, help="Top-p (nucleus) sampling (default: 0.95)")
    p.add_argument("--max-tokens", type=int, default=None, help="Max new tokens per reply (default: 512)")
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="localllm", description="Run LLMs locally (llama.cpp or transformers)")
    sub = p.add_subparsers(dest="command")

    models_p = sub.add_parser("models", help="List known model aliases")
    models_p.add_argument("--backend", choices=list(BACKENDS), default=None, help="Only this backend")
    models_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    caps_p = sub.add_parser("caps", help="Show detected runtime capabilities")
    caps_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    chat = sub.add_parser("chat", help="Chat REPL")
    _add_model_args(chat)
    _add_sampling_args(chat)
    chat.add_argument(
        "--system-prompt",
        type=str,
        default=None,
        help="Custom system prompt (default: built-in assistant prompt)",
    )
    chat.add_argument(
        "--no-system-prompt",
        action="store_true",
        help="Disable the default system prompt",
    )

    run_p = sub.add_parser("run", help="Answer a file of prompts (one per line) as JSON lines")
    _add_model_args(run_p)
    _add_sampling_args(run_p)
    run_p.add_argument("--prompts", required=True, help="Prompt file; blank lines and # comments are skipped")
    run_p.add_argument("--output", default=None, help="Write JSON lines here (default: stdout)")
    run_p.add_argument("--stream", action="store_true", help="Echo tokens to stderr as they arrive")

    serve = sub.add_parser("serve", help="Run the OpenAI-compatible HTTP server")
    server_main.build_parser(serve)

    return p


def _generate_options(args: argparse.Namespace) -> GenerateOptions:
    return GenerateOptions(
        temperature=args.temperature,
        top_p=args.top_p,
        max_tokens=args.max_tokens,
    )


def _llm_config(args: argparse.Namespace) -> LLMConfig:
    return LLMConfig.from_env(
        model=args.model,
        backend=args.backend,
        device=args.device,
        quantization=args.quantization,
        cache_dir=args.cache_dir,
    )


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        prompts = read_prompts(args.prompts)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    config = _llm_config(args)

    async def _main() -> int:
        host = ModelHost(config)
        try:
            if args.output:
                with open(args.output, "w", encoding="utf-8") as out:
                    await run_batch(
                        host, prompts, out=out, stream=args.stream, generate_options=_generate_options(args)
                    )
            else:
                await run_batch(
                    host, prompts, out=sys.stdout, stream=args.stream, generate_options=_generate_options(args)
                )
        except RuntimeError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        finally:
            await host.unload()
        return 0

    return asyncio.run(_main())


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    # `localllm` defaults to `localllm chat`.
    command = args.command or "chat"
    if command == "chat" and args.command is None:
        args = parser.parse_args(["chat"])

    if getattr(args, "verbose", False) and command != "serve":
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if command == "models":
        rows = list_models(args.backend)
        if args.json:
            print_json(
                [{"backend": b, "alias": a, "model": m, "size": model_size(b, a)} for b, a, m in rows]
            )
        else:
            print(format_models(rows))
        return 0

    if command == "caps":
        caps = detect_capabilities()
        if args.json:
            print_json(caps.to_dict())
        else:
            print(format_capabilities(caps))
        return 0

    if command == "serve":
        return server_main.run(args)

    try:
        if command == "chat":
            # Determine system prompt: custom > disabled > default
            if args.no_system_prompt:
                system_prompt = None
            elif args.system_prompt:
                system_prompt = args.system_prompt
            else:
                system_prompt = DEFAULT_SYSTEM_PROMPT
            return chat_repl(
                config=_llm_config(args),
                system_prompt=system_prompt,
                generate_options=_generate_options(args),
            )

        if command == "run":
            return _cmd_run(args)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
