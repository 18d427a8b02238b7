"""Run a file of prompts through the model, one completion per line."""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, TextIO

from localllm.engine.host import ModelHost
from localllm.engine.single_shot import CompletionRunner, SingleShotStreamer
from localllm.types import GenerateOptions


def read_prompts(path: str | Path) -> list[str]:
    """Read one prompt per line, skipping blank lines and ``#`` comments."""
    prompts: list[str] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text or text.startswith("#"):
                continue
            prompts.append(text)
    return prompts


async def run_batch(
    host: ModelHost,
    prompts: list[str],
    *,
    out: TextIO | None = None,
    stream: bool = False,
    generate_options: GenerateOptions | None = None,
    echo: TextIO | None = None,
) -> list[dict[str, Any]]:
    """Answer every prompt and write one JSON line per result to `out`.

    With `stream=True` tokens are echoed as they arrive. The host is loaded
    first if it is not ready yet.
    """
    if host.is_loading:
        await host.wait()
    elif not host.is_ready:
        await host.load()
    if not host.is_ready:
        raise RuntimeError(f"model failed to load: {host.error}")

    echo = echo or sys.stderr

    def on_token(token: str, full_text: str) -> None:
        echo.write(token)
        echo.flush()

    runner = CompletionRunner(host, generate_options)
    streamer = SingleShotStreamer(host, generate_options, on_token=on_token)

    results: list[dict[str, Any]] = []
    for index, prompt in enumerate(prompts):
        t0 = time.perf_counter()
        if stream:
            response = await streamer.stream(prompt)
            echo.write("\n")
        else:
            response = await runner.complete(prompt)
        record = {
            "index": index,
            "prompt": prompt,
            "response": response,
            "elapsed_s": round(time.perf_counter() - t0, 3),
        }
        results.append(record)
        if out is not None:
            out.write(json.dumps(record, ensure_ascii=False) + "\n")
            out.flush()
    return results
