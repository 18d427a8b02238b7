from __future__ import annotations

import json
from typing import Any, Iterable, Sequence

from localllm.models import model_size
from localllm.runtime import Capabilities
from localllm.types import ChatMessage, LoadProgress


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows_list = [list(r) for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r[: len(widths)]):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        padded = [c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)]
        return "  ".join(padded).rstrip()

    out = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    out.extend(fmt_row(r) for r in rows_list)
    return "\n".join(out)


def format_models(rows: Iterable[tuple[str, str, str]]) -> str:
    table = [(b, a, m, model_size(b, a) or "-") for b, a, m in rows]
    return format_table(["backend", "alias", "model", "size"], table)


def format_capabilities(caps: Capabilities) -> str:
    def yn(v: bool) -> str:
        return "yes" if v else "no"

    rows = [
        ("llama.cpp", yn(caps.llama_cpp)),
        ("gpu offload", yn(caps.gpu_offload)),
        ("transformers", yn(caps.transformers)),
        ("cuda", yn(caps.cuda)),
        ("mps", yn(caps.mps)),
        ("backend", caps.recommended_backend),
        ("device", caps.recommended_device),
    ]
    return format_table(["capability", "value"], rows)


def format_progress(progress: LoadProgress) -> str:
    return f"{progress.progress:3d}% {progress.status}"


def one_line(message: ChatMessage, *, width: int = 72) -> str:
    text = " ".join(message.text.split())
    if message.images:
        text = f"[{len(message.images)} image(s)] {text}".rstrip()
    if len(text) > width:
        text = text[: width - 3] + "..."
    return f"{message.role}: {text}"
