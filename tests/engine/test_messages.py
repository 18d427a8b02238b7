import pytest

from localllm.engine.session import normalize_messages
from localllm.models import default_model, is_vision_model, list_models, resolve_model_id
from localllm.types import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    ChatMessage,
    GenerateOptions,
    ImagePart,
    LoadProgress,
    TextPart,
    is_blank,
    resolve_options,
)


def test_message_from_openai_style_parts():
    msg = ChatMessage.from_dict(
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "what is "},
                {"type": "image_url", "image_url": {"url": "https://x/cat.png"}},
                {"type": "text", "text": "this?"},
            ],
        }
    )
    assert msg.text == "what is this?"
    assert msg.images == ["https://x/cat.png"]
    assert msg.to_dict()["content"][1] == {"type": "image", "ref": "https://x/cat.png"}


def test_message_content_is_frozen():
    parts = [TextPart("a")]
    msg = ChatMessage(role="user", content=parts)
    parts.append(TextPart("b"))
    assert msg.content == (TextPart("a"),)


@pytest.mark.parametrize(
    "raw",
    [
        {"role": "tool", "content": "x"},
        {"role": "user", "content": 3},
        {"role": "user", "content": [{"type": "audio"}]},
        {"role": "user", "content": [{"type": "image", "ref": ""}]},
        "not a dict",
    ],
)
def test_invalid_messages_are_rejected(raw):
    with pytest.raises(ValueError):
        ChatMessage.from_dict(raw)


def test_is_blank():
    assert is_blank("")
    assert is_blank("  \n")
    assert is_blank(None)
    assert is_blank((TextPart("  "),))
    assert not is_blank("hi")
    assert not is_blank((ImagePart("cat.png"),))


def test_resolve_options_fills_defaults():
    opts = resolve_options()
    assert opts.temperature == DEFAULT_TEMPERATURE
    assert opts.max_tokens == DEFAULT_MAX_TOKENS
    assert opts.top_p == DEFAULT_TOP_P
    assert opts.stop_sequences == ()

    custom = resolve_options(GenerateOptions(temperature=0, max_tokens=8, stop_sequences=["", "END"]))
    assert custom.temperature == 0.0
    assert custom.max_tokens == 8
    assert custom.stop_sequences == ("END",)


def test_normalize_messages_prepends_system_prompt():
    msgs = normalize_messages("hi", system_prompt="Be nice.")
    assert [(m.role, m.text) for m in msgs] == [("system", "Be nice."), ("user", "hi")]

    msgs = normalize_messages([{"role": "user", "content": "a"}, ChatMessage(role="assistant", content="b")])
    assert [(m.role, m.text) for m in msgs] == [("user", "a"), ("assistant", "b")]


def test_load_progress_to_dict_omits_unset_counts():
    assert LoadProgress(progress=5, status="x").to_dict() == {"progress": 5, "status": "x"}
    assert LoadProgress(progress=50, status="y", loaded=1, total=2).to_dict()["total"] == 2


def test_model_aliases():
    assert resolve_model_id("transformers", "qwen-2.5-0.5b") == "Qwen/Qwen2.5-0.5B-Instruct"
    assert resolve_model_id("llamacpp", "qwen-2.5-0.5b").endswith(".gguf")
    assert resolve_model_id("transformers", "my-org/my-model") == "my-org/my-model"
    assert default_model("llamacpp").endswith(".gguf")
    with pytest.raises(ValueError):
        default_model("onnx")


def test_list_models_is_sorted_per_backend():
    rows = list_models("transformers")
    assert rows
    assert all(backend == "transformers" for backend, _, _ in rows)
    assert [alias for _, alias, _ in rows] == sorted(alias for _, alias, _ in rows)
    assert {b for b, _, _ in list_models()} == {"llamacpp", "transformers"}


def test_vision_models_are_detected():
    assert is_vision_model("Qwen/Qwen2-VL-2B-Instruct")
    assert is_vision_model("microsoft/Phi-3.5-vision-instruct")
    assert not is_vision_model("Qwen/Qwen2.5-0.5B-Instruct")
