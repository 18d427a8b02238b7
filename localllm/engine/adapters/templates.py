"""Prompt templates for flattening chat messages into a single prompt.

The transformers backend runs a plain text-generation pipeline, so chat
turns are rendered with a template family chosen from the model id.
Selection is by lowercase substring match; the first family that matches
wins and unmatched ids fall back to `generic`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from ...types import ChatMessage


@dataclass(frozen=True)
class TemplateFamily:
    name: str
    markers: tuple[str, ...]
    render: Callable[[Sequence[ChatMessage]], str]
    # Tokens that close the assistant turn; stripped from generated text.
    closing: tuple[str, ...]


def _render_chatml(messages: Sequence[ChatMessage]) -> str:
    parts = [f"<|im_start|>{m.role}\n{m.text}<|im_end|>\n" for m in messages]
    parts.append("<|im_start|>assistant\n")
    return "".join(parts)


def _render_llama3(messages: Sequence[ChatMessage]) -> str:
    parts = ["<|begin_of_text|>"]
    for m in messages:
        parts.append(f"<|start_header_id|>{m.role}<|end_header_id|>\n\n{m.text}<|eot_id|>")
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


def _render_phi3(messages: Sequence[ChatMessage]) -> str:
    parts = [f"<|{m.role}|>\n{m.text}<|end|>\n" for m in messages]
    parts.append("<|assistant|>\n")
    return "".join(parts)


def _render_gemma(messages: Sequence[ChatMessage]) -> str:
    # Gemma has no system role: fold system text into the first user turn.
    system = "\n\n".join(m.text for m in messages if m.role == "system")
    parts: list[str] = []
    for m in messages:
        if m.role == "system":
            continue
        text = m.text
        if m.role == "user" and system:
            text = f"{system}\n\n{text}"
            system = ""
        role = "model" if m.role == "assistant" else "user"
        parts.append(f"<start_of_turn>{role}\n{text}<end_of_turn>\n")
    if system:
        parts.append(f"<start_of_turn>user\n{system}<end_of_turn>\n")
    parts.append("<start_of_turn>model\n")
    return "".join(parts)


def _render_inst(messages: Sequence[ChatMessage]) -> str:
    system = "\n\n".join(m.text for m in messages if m.role == "system")
    out = ""
    pending_user: str | None = None
    for m in messages:
        if m.role == "system":
            continue
        if m.role == "user":
            text = m.text
            if system:
                text = f"{system}\n\n{text}"
                system = ""
            if pending_user is not None:
                out += f"<s>[INST] {pending_user} [/INST]</s>"
            pending_user = text
        else:
            out += f"<s>[INST] {pending_user or ''} [/INST] {m.text}</s>"
            pending_user = None
    if pending_user is None:
        pending_user = system
    out += f"<s>[INST] {pending_user} [/INST]"
    return out


def _render_generic(messages: Sequence[ChatMessage]) -> str:
    lines = [f"{m.role}: {m.text}" for m in messages]
    lines.append("assistant:")
    return "\n".join(lines)


CHATML = TemplateFamily(
    name="chatml",
    markers=("qwen", "smollm", "hermes", "chatml", "deepseek-r1-distill-qwen"),
    render=_render_chatml,
    closing=("<|im_end|>", "<|endoftext|>"),
)
LLAMA3 = TemplateFamily(
    name="llama3",
    markers=("llama-3", "llama3"),
    render=_render_llama3,
    closing=("<|eot_id|>", "<|end_of_text|>"),
)
PHI3 = TemplateFamily(
    name="phi3",
    markers=("phi-3", "phi3"),
    render=_render_phi3,
    closing=("<|end|>", "<|endoftext|>"),
)
GEMMA = TemplateFamily(
    name="gemma",
    markers=("gemma",),
    render=_render_gemma,
    closing=("<end_of_turn>",),
)
INST = TemplateFamily(
    name="inst",
    markers=("mistral", "mixtral", "llama-2", "llama2"),
    render=_render_inst,
    closing=("</s>", "[INST]"),
)
GENERIC = TemplateFamily(
    name="generic",
    markers=(),
    render=_render_generic,
    closing=("\nuser:", "\nsystem:"),
)

TEMPLATE_FAMILIES: tuple[TemplateFamily, ...] = (CHATML, LLAMA3, PHI3, GEMMA, INST)


def select_template(model_id: str) -> TemplateFamily:
    lower = (model_id or "").lower()
    for family in TEMPLATE_FAMILIES:
        if any(marker in lower for marker in family.markers):
            return family
    return GENERIC

