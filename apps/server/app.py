"""FastAPI app for OpenAI-style Chat Completions.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the session layer (`localllm/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from localllm import __version__
from localllm.engine.session import LocalLLM
from localllm.errors import NotLoadedError
from localllm.types import ChatMessage, GenerateOptions

logger = logging.getLogger(__name__)

_DONE = object()


def create_app(
    *,
    llm: LocalLLM,
    model_id: str | None = None,
    http_max_concurrency: int | None = None,
    http_max_completion_tokens: int | None = None,
) -> FastAPI:
    app = FastAPI(title="localllm Inference Server", version=__version__)

    served_model = model_id or llm.model_id or "local"

    # Engines are not re-entrant: one generation at a time.
    generation_lock = asyncio.Lock()

    http_semaphore: asyncio.Semaphore | None = None
    if http_max_concurrency is not None:
        try:
            http_max_concurrency = int(http_max_concurrency)
        except Exception as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if http_max_concurrency > 0:
            http_semaphore = asyncio.Semaphore(http_max_concurrency)
        elif http_max_concurrency < 0:
            raise ValueError("http_max_concurrency must be >= 0")

    if http_max_completion_tokens is not None:
        try:
            http_max_completion_tokens = int(http_max_completion_tokens)
        except Exception as exc:
            raise ValueError("http_max_completion_tokens must be an integer") from exc
        if http_max_completion_tokens <= 0:
            raise ValueError("http_max_completion_tokens must be > 0")

    async def _try_acquire_semaphore() -> None:
        if http_semaphore is None:
            return
        if http_semaphore.locked():
            raise HTTPException(status_code=429, detail="Server is busy")
        await http_semaphore.acquire()

    def _release_semaphore() -> None:
        if http_semaphore is not None:
            http_semaphore.release()

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "ready": llm.is_ready,
            "backend": llm.backend,
            "model": llm.model_id,
        }

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": served_model,
                    "object": "model",
                    "created": now,
                    "owned_by": "localllm",
                    "backend": llm.backend,
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Chat Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Any:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc

        if isinstance(payload, dict):
            req_model = payload.get("model")
            if req_model is not None and req_model not in (served_model, llm.model_id):
                raise HTTPException(status_code=404, detail=f"Unknown model: {req_model}")

        messages, options, stream = _parse_chat_request(
            payload, http_max_completion_tokens=http_max_completion_tokens
        )

        if not llm.is_ready:
            raise HTTPException(status_code=503, detail="Model not loaded.")

        created = int(time.time())
        chatcmpl_id = f"chatcmpl-{uuid.uuid4().hex}"

        if stream:
            await _try_acquire_semaphore()
            event_iter = _stream_chat_completions(
                llm=llm,
                messages=messages,
                options=options,
                model_id=served_model,
                created=created,
                chatcmpl_id=chatcmpl_id,
                generation_lock=generation_lock,
                release=_release_semaphore,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        await _try_acquire_semaphore()
        try:
            async with generation_lock:
                content = await llm.chat(messages, options)
        except NotLoadedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.error("Chat completion failed: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            _release_semaphore()

        resp: dict[str, Any] = {
            "id": chatcmpl_id,
            "object": "chat.completion",
            "created": created,
            "model": served_model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        }
        return JSONResponse(resp)

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _chunk(*, chatcmpl_id: str, created: int, model_id: str, delta: dict[str, Any], finish_reason: str | None) -> str:
    return _sse(
        json.dumps(
            {
                "id": chatcmpl_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": model_id,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            },
            ensure_ascii=False,
        )
    )


def _error_event(message: str, error_type: str) -> str:
    return _sse(
        json.dumps(
            {
                "error": {
                    "message": message,
                    "type": error_type,
                    "param": None,
                    "code": None,
                }
            },
            ensure_ascii=False,
        )
    )


async def _stream_chat_completions(
    *,
    llm: LocalLLM,
    messages: list[ChatMessage],
    options: GenerateOptions,
    model_id: str,
    created: int,
    chatcmpl_id: str,
    generation_lock: asyncio.Lock,
    release: Any,
) -> AsyncIterator[str]:
    queue: asyncio.Queue[Any] = asyncio.Queue()

    def on_token(token: str, full_text: str) -> None:
        queue.put_nowait(token)

    async def run() -> None:
        try:
            async with generation_lock:
                await llm.stream(messages, on_token, options)
        except Exception as exc:
            queue.put_nowait(exc)
        finally:
            queue.put_nowait(_DONE)

    task: asyncio.Task | None = None
    finish_reason = "stop"
    try:
        # Initial chunk announces the role.
        yield _chunk(
            chatcmpl_id=chatcmpl_id,
            created=created,
            model_id=model_id,
            delta={"role": "assistant"},
            finish_reason=None,
        )

        task = asyncio.ensure_future(run())
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            if isinstance(item, BaseException):
                error_type = "invalid_request_error" if isinstance(item, ValueError) else "server_error"
                logger.error("Streaming completion failed: %s", item)
                yield _error_event(str(item), error_type)
                finish_reason = "error"
                continue
            yield _chunk(
                chatcmpl_id=chatcmpl_id,
                created=created,
                model_id=model_id,
                delta={"content": item},
                finish_reason=None,
            )

        yield _chunk(
            chatcmpl_id=chatcmpl_id,
            created=created,
            model_id=model_id,
            delta={},
            finish_reason=finish_reason,
        )
        yield _sse("[DONE]")
    finally:
        if task is not None and not task.done():
            task.cancel()
        release()


def _parse_chat_request(
    payload: Any, *, http_max_completion_tokens: int | None = None
) -> tuple[list[ChatMessage], GenerateOptions, bool]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise HTTPException(status_code=400, detail="'messages' must be a non-empty list.")

    messages: list[ChatMessage] = []
    for msg in raw_messages:
        try:
            messages.append(ChatMessage.from_dict(msg))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    max_tokens = payload.get("max_tokens")
    max_completion_tokens = payload.get("max_completion_tokens")

    if max_tokens is not None and max_completion_tokens is not None:
        try:
            if int(max_tokens) != int(max_completion_tokens):
                raise HTTPException(
                    status_code=400,
                    detail="'max_tokens' and 'max_completion_tokens' must match when both are provided.",
                )
        except HTTPException:
            raise
        except Exception as exc:
            raise HTTPException(
                status_code=400,
                detail="'max_tokens' and 'max_completion_tokens' must be integers.",
            ) from exc
    elif max_completion_tokens is not None:
        max_tokens = max_completion_tokens

    if max_tokens is not None:
        try:
            max_tokens = int(max_tokens)
        except Exception as exc:
            raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.") from exc
        if max_tokens <= 0:
            raise HTTPException(status_code=400, detail="'max_tokens' must be > 0.")
        if http_max_completion_tokens is not None and max_tokens > http_max_completion_tokens:
            raise HTTPException(
                status_code=400,
                detail=f"'max_tokens' too large: {max_tokens} (cap={http_max_completion_tokens}).",
            )

    temperature = payload.get("temperature")
    if temperature is not None:
        try:
            temperature = float(temperature)
        except Exception as exc:
            raise HTTPException(status_code=400, detail="'temperature' must be a number.") from exc

    top_p = payload.get("top_p")
    if top_p is not None:
        try:
            top_p = float(top_p)
        except Exception as exc:
            raise HTTPException(status_code=400, detail="'top_p' must be a number.") from exc

    stop = payload.get("stop") or []
    if isinstance(stop, str):
        stop = [stop]
    if not isinstance(stop, list):
        raise HTTPException(status_code=400, detail="'stop' must be a string or list of strings.")
    stop = [s for s in stop if isinstance(s, str)]

    stream = bool(payload.get("stream", False))

    options = GenerateOptions(
        temperature=temperature,
        max_tokens=max_tokens,
        top_p=top_p,
        stop_sequences=tuple(stop) if stop else None,
    )
    return messages, options, stream
