"""Streaming inference backends.

Every backend exposes ``stream(messages)``: an async iterator of text deltas.
Running to exhaustion means the model finished; any failure surfaces as
:class:`~chat_client.errors.InferenceError`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Protocol, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from .errors import ConfigError, InferenceError

logger = logging.getLogger(__name__)


class InferenceStream(Protocol):
    def stream(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]: ...


def _with_system(messages: Sequence[Dict[str, str]], system_prompt: Optional[str]) -> List[Dict[str, str]]:
    msgs = [{"role": m["role"], "content": m["content"]} for m in messages]
    if system_prompt:
        msgs.insert(0, {"role": "system", "content": str(system_prompt).strip()})
    return msgs


# -----------------------------
# OpenAI-compatible backend
# -----------------------------
class OpenAIChatStream:
    """Chat completions with ``stream=True`` through :class:`openai.AsyncOpenAI`.

    Works against OpenAI and any server exposing the same API (``base_url``).
    A stream that ends without a ``finish_reason`` is treated as truncated.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        max_retries: int = 2,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client
        self._http_client = http_client

    @property
    def client(self) -> AsyncOpenAI:
        # Built on first use so a missing key surfaces per request, not at startup.
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=self.max_retries,
                http_client=self._http_client,
            )
        return self._client

    def _request(self, messages: Sequence[Dict[str, str]]) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "model": self.model,
            "messages": _with_system(messages, self.system_prompt),
            "stream": True,
        }
        if self.temperature is not None:
            data["temperature"] = float(self.temperature)
        if self.max_tokens is not None:
            data["max_tokens"] = int(self.max_tokens)
        return data

    async def stream(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]:
        finished = False
        try:
            completion = await self.client.chat.completions.create(**self._request(messages))
            async with completion as chunks:
                async for chunk in chunks:
                    if not chunk.choices:
                        # usage-only chunks carry no content
                        continue
                    choice = chunk.choices[0]
                    delta = choice.delta.content if choice.delta else None
                    if delta:
                        yield delta
                    if choice.finish_reason:
                        finished = True
        except openai.APIStatusError as e:
            raise InferenceError(f"Upstream returned {e.status_code}: {e.message}") from e
        except openai.OpenAIError as e:
            raise InferenceError(f"Inference request failed: {e}") from e
        if not finished:
            raise InferenceError("Stream ended before the model finished")


# -----------------------------
# Local GGUF backend (llama.cpp)
# -----------------------------
def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


class LlamaCppStream:
    """Streams from a local GGUF model through :mod:`llama_cpp`.

    llama.cpp generates synchronously, so each request runs on a worker thread
    that hands deltas to the event loop through an :class:`asyncio.Queue`.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.7,
        top_p: float = 0.95,
        llama: Any = None,
        **kwargs: Any,
    ) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights. Ignored when ``llama`` is given.
        llama : Any
            An already-constructed ``llama_cpp.Llama`` (or compatible) object.
        kwargs : Any
            Passed to llama_cpp.Llama with some defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self._gen_lock = threading.Lock()
        self._llama = llama if llama is not None else self._load(model_path, kwargs)

    @staticmethod
    def _load(model_path: Optional[str], kwargs: Dict[str, Any]) -> Any:
        if not model_path:
            raise ConfigError("llama_cpp backend needs inference.model_path")
        # Lazy import so the HTTP backend works without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1
        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0
        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            return Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            return Llama(model_path=model_path, **kwargs)

    def _iter_deltas(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        chunks = self._llama.create_chat_completion(
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            stream=True,
        )
        for chunk in chunks:
            choices = chunk.get("choices") or [{}]
            delta = (choices[0].get("delta") or {}).get("content")
            if delta:
                yield delta

    async def stream(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        msgs = _with_system(messages, self.system_prompt)

        def worker() -> None:
            try:
                # One generation at a time per loaded model.
                with self._gen_lock:
                    for delta in self._iter_deltas(msgs):
                        if stop.is_set():
                            break
                        loop.call_soon_threadsafe(queue.put_nowait, ("delta", delta))
                loop.call_soon_threadsafe(queue.put_nowait, ("done", None))
            except Exception as e:  # forwarded to the awaiting coroutine
                loop.call_soon_threadsafe(queue.put_nowait, ("error", e))

        thread = threading.Thread(target=worker, name="llama-stream", daemon=True)
        thread.start()
        try:
            while True:
                kind, value = await queue.get()
                if kind == "delta":
                    yield value
                elif kind == "done":
                    return
                else:
                    raise InferenceError(f"Local model failed: {value}") from value
        finally:
            stop.set()


# -----------------------------
# Convenience factory
# -----------------------------
def create_inference_stream(cfg: Dict[str, Any]) -> InferenceStream:
    """Create the backend named by ``inference.provider``."""
    i_cfg = (cfg or {}).get("inference", {}) if isinstance(cfg, dict) else {}
    provider = str(i_cfg.get("provider", "openai")).lower()
    system_prompt = i_cfg.get("system_prompt")

    if provider == "openai":
        api_key = i_cfg.get("api_key") or os.environ.get(str(i_cfg.get("api_key_env") or "OPENAI_API_KEY"))
        if not api_key:
            logger.warning("No API key configured for inference provider %r", provider)
        return OpenAIChatStream(
            str(i_cfg.get("model") or "gpt-4o-mini"),
            api_key=api_key,
            base_url=str(i_cfg.get("base_url") or "https://api.openai.com/v1"),
            timeout=float(i_cfg.get("timeout") or 30.0),
            max_retries=int(i_cfg.get("max_retries") if i_cfg.get("max_retries") is not None else 2),
            system_prompt=system_prompt,
            temperature=i_cfg.get("temperature"),
            max_tokens=i_cfg.get("max_tokens"),
        )

    if provider == "llama_cpp":
        model_dir = i_cfg.get("model_dir")
        model_path = i_cfg.get("model_path")
        if model_dir and model_path and not os.path.isabs(model_path):
            model_path = os.path.join(model_dir, model_path)
        if not model_path or not os.path.exists(model_path):
            raise FileNotFoundError(f"Model not found at: {model_path!r}")
        params = {
            "n_ctx": i_cfg.get("n_ctx", 4096),
            "n_threads": i_cfg.get("n_threads"),
            "n_gpu_layers": i_cfg.get("n_gpu_layers"),
            "use_mmap": i_cfg.get("use_mmap", True),
        }
        # Remove None entries (llama.cpp is picky)
        params = {k: v for k, v in params.items() if v is not None}
        return LlamaCppStream(
            model_path,
            system_prompt=system_prompt,
            max_tokens=int(i_cfg.get("max_tokens") or 512),
            temperature=float(i_cfg.get("temperature") if i_cfg.get("temperature") is not None else 0.7),
            **params,
        )

    raise ConfigError(f"Unknown inference.provider: {provider!r}")
