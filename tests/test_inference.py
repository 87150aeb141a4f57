from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from chat_client.errors import ConfigError, InferenceError
from chat_client.inference import (
    LlamaCppStream,
    OpenAIChatStream,
    create_inference_stream,
)

MESSAGES = [{"role": "user", "content": "hi"}]


def _chunk(content: Optional[str], finish_reason: Optional[str] = None, choices: bool = True) -> str:
    body = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "test-model",
        "choices": [],
    }
    if choices:
        delta = {"content": content} if content is not None else {}
        body["choices"] = [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
    return "data: " + json.dumps(body) + "\n\n"


def _sse(*events: str) -> httpx.Response:
    return httpx.Response(200, content="".join(events).encode(), headers={"content-type": "text/event-stream"})


async def _collect(stream) -> List[str]:
    return [d async for d in stream]


# -----------------------------
# OpenAI-compatible backend
# -----------------------------
def _backend(handler, **kwargs) -> OpenAIChatStream:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIChatStream(
        "test-model",
        api_key="sk-test",
        base_url="https://llm.test/v1/",
        max_retries=0,
        http_client=http_client,
        **kwargs,
    )


def test_openai_stream_yields_deltas():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return _sse(
            _chunk("Hel"),
            _chunk("lo"),
            _chunk("!"),
            _chunk(None, finish_reason="stop"),
            _chunk(None, choices=False),
            "data: [DONE]\n\n",
        )

    backend = _backend(handler, system_prompt="Be brief.", max_tokens=64)
    assert asyncio.run(_collect(backend.stream(MESSAGES))) == ["Hel", "lo", "!"]
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["stream"] is True
    assert seen["body"]["max_tokens"] == 64
    assert seen["body"]["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hi"},
    ]


def test_openai_stream_cut_short_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return _sse(_chunk("partial"), "data: [DONE]\n\n")

    async def main():
        got = []
        with pytest.raises(InferenceError, match="before the model finished"):
            async for d in _backend(handler).stream(MESSAGES):
                got.append(d)
        return got

    assert asyncio.run(main()) == ["partial"]


def test_openai_stream_error_event():
    def handler(request: httpx.Request) -> httpx.Response:
        return _sse(_chunk("a"), 'data: {"error": {"message": "rate limited"}}\n\n')

    with pytest.raises(InferenceError, match="rate limited"):
        asyncio.run(_collect(_backend(handler).stream(MESSAGES)))


def test_openai_stream_http_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "boom"}})

    with pytest.raises(InferenceError, match="500"):
        asyncio.run(_collect(_backend(handler).stream(MESSAGES)))


def test_openai_stream_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(InferenceError, match="Inference request failed"):
        asyncio.run(_collect(_backend(handler).stream(MESSAGES)))


# -----------------------------
# llama.cpp backend
# -----------------------------
class FakeLlama:
    def __init__(self, pieces, fail_after=None):
        self.pieces = pieces
        self.fail_after = fail_after
        self.calls = []

    def create_chat_completion(self, messages, **kwargs):
        self.calls.append((messages, kwargs))
        for i, piece in enumerate(self.pieces):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("kv cache exhausted")
            yield {"choices": [{"delta": {"content": piece}}]}
        yield {"choices": [{"delta": {}, "finish_reason": "stop"}]}


def test_llama_stream_yields_deltas():
    llama = FakeLlama(["Hi", " there"])
    backend = LlamaCppStream(llama=llama, system_prompt="sys", max_tokens=32)
    assert asyncio.run(_collect(backend.stream(MESSAGES))) == ["Hi", " there"]
    messages, kwargs = llama.calls[0]
    assert messages[0] == {"role": "system", "content": "sys"}
    assert kwargs["stream"] is True
    assert kwargs["max_tokens"] == 32


def test_llama_stream_error_is_inference_error():
    backend = LlamaCppStream(llama=FakeLlama(["a", "b"], fail_after=1))
    with pytest.raises(InferenceError, match="kv cache exhausted"):
        asyncio.run(_collect(backend.stream(MESSAGES)))


def test_llama_requires_model_path():
    with pytest.raises(ConfigError):
        LlamaCppStream()


# -----------------------------
# Factory
# -----------------------------
def test_factory_builds_openai_backend(clean_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    backend = create_inference_stream({"inference": {"provider": "openai", "model": "m1"}})
    assert isinstance(backend, OpenAIChatStream)
    assert backend.model == "m1"
    assert backend.api_key == "sk-env"


def test_factory_rejects_unknown_provider():
    with pytest.raises(ConfigError):
        create_inference_stream({"inference": {"provider": "carrier-pigeon"}})


def test_factory_missing_local_model(tmp_path):
    cfg = {"inference": {"provider": "llama_cpp", "model_dir": str(tmp_path), "model_path": "nope.gguf"}}
    with pytest.raises(FileNotFoundError):
        create_inference_stream(cfg)
