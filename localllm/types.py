"""Core message, option and progress types.

These types are shared by every layer (adapters, facade, orchestrators, HTTP)
and are intentionally decoupled from any engine SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Literal, Mapping, Sequence, Union


Backend = Literal["llamacpp", "transformers"]
RequestedBackend = Literal["auto", "llamacpp", "transformers"]
Device = Literal["auto", "cuda", "mps", "cpu"]
Quantization = Literal["auto", "fp16", "bf16", "fp32"]
MessageRole = Literal["system", "user", "assistant"]

BACKENDS: tuple[str, ...] = ("llamacpp", "transformers")
DEVICES: tuple[str, ...] = ("auto", "cuda", "mps", "cpu")
QUANTIZATIONS: tuple[str, ...] = ("auto", "fp16", "bf16", "fp32")
ROLES: tuple[str, ...] = ("system", "user", "assistant")

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 512
DEFAULT_TOP_P = 0.95


@dataclass(frozen=True)
class TextPart:
    """A text segment of a multi-part message."""

    text: str


@dataclass(frozen=True)
class ImagePart:
    """A reference (path, URL or data URI) to an image attached to a message."""

    ref: str


ContentPart = Union[TextPart, ImagePart]
MessageContent = Union[str, tuple[ContentPart, ...]]


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message.

    `content` is either plain text or an ordered tuple of typed parts. Lists
    passed in are frozen to tuples so a message never changes once it is part
    of a conversation.
    """

    role: MessageRole
    content: MessageContent

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}.")
        if not isinstance(self.content, str):
            parts = tuple(self.content)
            for part in parts:
                if not isinstance(part, (TextPart, ImagePart)):
                    raise ValueError(f"Invalid content part: {part!r}.")
            object.__setattr__(self, "content", parts)

    @property
    def text(self) -> str:
        return message_text(self.content)

    @property
    def images(self) -> list[str]:
        if isinstance(self.content, str):
            return []
        return [p.ref for p in self.content if isinstance(p, ImagePart)]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        parts: list[dict[str, str]] = []
        for p in self.content:
            if isinstance(p, TextPart):
                parts.append({"type": "text", "text": p.text})
            else:
                parts.append({"type": "image", "ref": p.ref})
        return {"role": self.role, "content": parts}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatMessage":
        if not isinstance(data, Mapping):
            raise ValueError("Each message must be an object.")
        role = data.get("role")
        if role not in ROLES:
            raise ValueError(f"Invalid message role: {role!r}.")
        return cls(role=role, content=_content_from_wire(data.get("content")))


def _content_from_wire(raw: Any) -> MessageContent:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if not isinstance(raw, (list, tuple)):
        raise ValueError("'content' must be a string or a list of parts.")

    parts: list[ContentPart] = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise ValueError("Each content part must be an object.")
        kind = item.get("type")
        if kind == "text":
            parts.append(TextPart(str(item.get("text") or "")))
        elif kind == "image":
            ref = item.get("ref")
            if not isinstance(ref, str) or not ref:
                raise ValueError("Image parts require a non-empty 'ref'.")
            parts.append(ImagePart(ref))
        elif kind == "image_url":
            # OpenAI-style image part.
            url = item.get("image_url")
            if isinstance(url, Mapping):
                url = url.get("url")
            if not isinstance(url, str) or not url:
                raise ValueError("Image parts require a non-empty URL.")
            parts.append(ImagePart(url))
        else:
            raise ValueError(f"Unknown content part type: {kind!r}.")
    return tuple(parts)


def message_text(content: MessageContent | Sequence[ContentPart]) -> str:
    """Return the text of a message content value (text parts joined)."""
    if isinstance(content, str):
        return content
    return "".join(p.text for p in content if isinstance(p, TextPart))


def is_blank(content: MessageContent | Sequence[ContentPart] | None) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    return not any(
        isinstance(p, ImagePart) or (isinstance(p, TextPart) and p.text.strip()) for p in content
    )


@dataclass(frozen=True)
class GenerateOptions:
    """Sampling options. Unset fields are filled by `resolve_options`."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.stop_sequences is not None:
            object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))


def resolve_options(options: GenerateOptions | None = None) -> GenerateOptions:
    """Fill unset option fields with the session defaults."""
    options = options or GenerateOptions()
    return replace(
        options,
        temperature=DEFAULT_TEMPERATURE if options.temperature is None else float(options.temperature),
        max_tokens=DEFAULT_MAX_TOKENS if options.max_tokens is None else int(options.max_tokens),
        top_p=DEFAULT_TOP_P if options.top_p is None else float(options.top_p),
        stop_sequences=tuple(s for s in (options.stop_sequences or ()) if s),
    )


@dataclass(frozen=True)
class LoadProgress:
    """Model loading progress (0-100)."""

    progress: int
    status: str
    loaded: float | None = None
    total: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"progress": self.progress, "status": self.status}
        if self.loaded is not None:
            out["loaded"] = self.loaded
        if self.total is not None:
            out["total"] = self.total
        return out


StreamCallback = Callable[[str, str], None]
LoadProgressCallback = Callable[[LoadProgress], None]
MessagesInput = Union[str, Sequence[Union[ChatMessage, Mapping[str, Any]]]]


@dataclass
class StreamState:
    """Per-generation streaming state; discarded after completion or abort."""

    text: str = ""
    aborted: bool = False
