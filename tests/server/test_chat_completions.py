import asyncio
import json

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")

from fake_engines import FakeAdapter, loaded_llm  # noqa: E402


def _collect_sse_events(raw: str) -> list[str]:
    events: list[str] = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        if not block.startswith("data: "):
            continue
        events.append(block[len("data: ") :])
    return events


def _client(llm, **kwargs):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    app = create_app(llm=llm, model_id="localllm-test", **kwargs)
    return TestClient(app)


def _post(client, **payload):
    body = {"model": "localllm-test", "messages": [{"role": "user", "content": "hi"}]}
    body.update(payload)
    return client.post("/v1/chat/completions", json=body)


def test_non_stream_basic_shape():
    llm = asyncio.run(loaded_llm(tokens=("hel", "lo")))
    resp = _post(_client(llm))

    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "chat.completion"
    assert data["model"] == "localllm-test"
    assert data["id"].startswith("chatcmpl-")
    assert data["choices"][0]["message"]["role"] == "assistant"
    assert data["choices"][0]["message"]["content"] == "hello"
    assert data["choices"][0]["finish_reason"] == "stop"


def test_stream_sse_ordering_and_done():
    llm = asyncio.run(loaded_llm(tokens=("he", "llo")))
    client = _client(llm)

    with client.stream(
        "POST",
        "/v1/chat/completions",
        json={"model": "localllm-test", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
    ) as resp:
        assert resp.status_code == 200
        resp.read()  # Must read the stream before accessing .text
        raw = resp.text

    events = _collect_sse_events(raw)
    assert events[0] != "[DONE]"
    assert events[-1] == "[DONE]"

    first = json.loads(events[0])
    assert first["object"] == "chat.completion.chunk"
    assert first["choices"][0]["delta"]["role"] == "assistant"

    # Content chunks should concatenate.
    content = ""
    for e in events[1:]:
        if e == "[DONE]":
            break
        obj = json.loads(e)
        delta = obj["choices"][0]["delta"]
        if "content" in delta:
            content += delta["content"]
    assert content == "hello"

    # Terminal chunk includes finish_reason.
    terminal = json.loads(events[-2])
    assert terminal["choices"][0]["finish_reason"] == "stop"


def test_stream_error_is_reported_in_band():
    llm = asyncio.run(loaded_llm(fail_generate=RuntimeError("engine crashed")))
    client = _client(llm)

    with client.stream(
        "POST",
        "/v1/chat/completions",
        json={"stream": True, "messages": [{"role": "user", "content": "hi"}]},
    ) as resp:
        assert resp.status_code == 200
        resp.read()
        events = _collect_sse_events(resp.text)

    assert events[-1] == "[DONE]"
    errors = [json.loads(e) for e in events[:-1] if "error" in json.loads(e)]
    assert len(errors) == 1
    assert "engine crashed" in errors[0]["error"]["message"]
    assert errors[0]["error"]["type"] == "server_error"
    assert json.loads(events[-2])["choices"][0]["finish_reason"] == "error"


def test_sampling_options_are_forwarded():
    llm = asyncio.run(loaded_llm())
    adapter: FakeAdapter = llm.adapter
    resp = _post(
        _client(llm),
        temperature=0.1,
        top_p=0.5,
        max_completion_tokens=7,
        stop="END",
    )
    assert resp.status_code == 200

    _messages, options = adapter.requests[0]
    assert options.temperature == 0.1
    assert options.top_p == 0.5
    assert options.max_tokens == 7
    assert options.stop_sequences == ("END",)


def test_default_options_apply_when_omitted():
    llm = asyncio.run(loaded_llm())
    assert _post(_client(llm)).status_code == 200
    _messages, options = llm.adapter.requests[0]
    assert options.max_tokens == 512
    assert options.temperature == 0.7


def test_image_url_parts_are_accepted():
    llm = asyncio.run(loaded_llm())
    resp = _post(
        _client(llm),
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "what is this?"},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                ],
            }
        ],
    )
    assert resp.status_code == 200
    messages, _options = llm.adapter.requests[0]
    assert messages[0].images == ["data:image/png;base64,AAAA"]


@pytest.mark.parametrize(
    "payload",
    [
        {"messages": []},
        {"messages": "hi"},
        {"messages": [{"role": "tool", "content": "x"}]},
        {"max_tokens": 0},
        {"max_tokens": "many"},
        {"max_tokens": 5, "max_completion_tokens": 6},
        {"temperature": "hot"},
        {"stop": 3},
    ],
)
def test_invalid_requests_are_400(payload):
    llm = asyncio.run(loaded_llm())
    assert _post(_client(llm), **payload).status_code == 400


def test_invalid_json_is_400():
    llm = asyncio.run(loaded_llm())
    resp = _client(llm).post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


def test_unknown_model_is_404():
    llm = asyncio.run(loaded_llm())
    assert _post(_client(llm), model="other-model").status_code == 404


def test_backend_model_id_is_also_accepted():
    llm = asyncio.run(loaded_llm())
    assert _post(_client(llm), model=llm.model_id).status_code == 200


def test_max_completion_tokens_cap():
    llm = asyncio.run(loaded_llm())
    client = _client(llm, http_max_completion_tokens=16)
    assert _post(client, max_tokens=16).status_code == 200
    resp = _post(client, max_tokens=17)
    assert resp.status_code == 400
    assert "cap=16" in resp.json()["detail"]


def test_unloaded_model_is_503():
    async def _unloaded():
        llm = await loaded_llm()
        await llm.unload()
        return llm

    llm = asyncio.run(_unloaded())
    assert _post(_client(llm)).status_code == 503


def test_generation_failure_is_500():
    llm = asyncio.run(loaded_llm(fail_generate=RuntimeError("boom")))
    resp = _post(_client(llm))
    assert resp.status_code == 500
    assert "boom" in resp.json()["detail"]


def test_health_and_models():
    llm = asyncio.run(loaded_llm())
    client = _client(llm)

    health = client.get("/health").json()
    assert health == {"status": "ok", "ready": True, "backend": "fake", "model": "fake-model"}

    models = client.get("/v1/models").json()
    assert models["object"] == "list"
    assert models["data"][0]["id"] == "localllm-test"
    assert models["data"][0]["backend"] == "fake"


def test_invalid_server_limits_are_rejected():
    from apps.server.app import create_app

    llm = asyncio.run(loaded_llm())
    with pytest.raises(ValueError):
        create_app(llm=llm, http_max_concurrency=-1)
    with pytest.raises(ValueError):
        create_app(llm=llm, http_max_completion_tokens=0)


@pytest.mark.anyio
async def test_http_concurrency_limit_429():
    import anyio
    import httpx

    from apps.server.app import create_app
    from localllm.engine.session import LocalLLM

    started = anyio.Event()
    first_done = anyio.Event()
    first_status: int | None = None

    class SlowAdapter(FakeAdapter):
        async def _complete(self, engine, messages, options):
            started.set()
            # Block long enough for another request to arrive.
            await anyio.sleep(0.3)
            return "ok"

    adapter = SlowAdapter()
    await adapter.load("fake-model")
    app = create_app(llm=LocalLLM(adapter), model_id="localllm-test", http_max_concurrency=1)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:

        async def _first_request() -> None:
            nonlocal first_status
            resp = await client.post(
                "/v1/chat/completions",
                json={"model": "localllm-test", "messages": [{"role": "user", "content": "hi"}]},
            )
            first_status = resp.status_code
            first_done.set()

        async with anyio.create_task_group() as tg:
            tg.start_soon(_first_request)
            await started.wait()

            # Make a second request while the first is in-flight.
            resp2 = await client.post(
                "/v1/chat/completions",
                json={"model": "localllm-test", "messages": [{"role": "user", "content": "hi"}]},
            )
            assert resp2.status_code == 429

            await first_done.wait()

        assert first_status == 200
