from __future__ import annotations

"""Generation provider adapters.

Every provider exposes ``stream_response(prompt, history)`` returning a
finite async iterator of text deltas. Provider failures are mapped onto
``QuotaExceeded`` / ``SafetyBlocked`` / ``ProviderError`` from structured
signals only (HTTP status, error ``code``, ``finish_reason``).
"""

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Protocol, Sequence
import json
import logging
import os
import re
import time

import openai
import requests
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.errors import GenerationError, ProviderError, QuotaExceeded, SafetyBlocked
from .model_router import ModelRouter, ProviderSelection


logger = logging.getLogger(__name__)
LOG = logging.getLogger("chatstream.llm")

History = Sequence[Dict[str, str]]

QUOTA_CODES = frozenset({"insufficient_quota", "rate_limit_exceeded", "resource_exhausted", "quota_exceeded"})
SAFETY_CODES = frozenset({"content_filter", "content_policy_violation", "safety", "prohibited_content", "blocklist"})

DEFAULT_SYSTEM_PROMPT = "You are a helpful, concise assistant."

_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("CHAT_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("CHAT_LLM_BREAKER_COOLDOWN", "60.0"))
_STREAM_TIMEOUT = (int(os.getenv("CHAT_LLM_CONNECT_TIMEOUT", "3")), int(os.getenv("CHAT_LLM_READ_TIMEOUT", "60")))


class GenerationProvider(Protocol):
    def stream_response(self, prompt: str, history: Optional[History] = None) -> AsyncIterator[str]: ...


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


async def _guarded(deltas: AsyncIterator[str]) -> AsyncIterator[str]:
    """Fail fast while the breaker is open and feed outcomes back into it."""

    async with aclosing(deltas):
        if _breaker_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"code": "llm_circuit_open", "cooldown_s": _BREAKER_COOLDOWN})
            raise ProviderError("the model is temporarily unavailable")
        try:
            async for delta in deltas:
                yield delta
        except ProviderError:
            _record_fail()
            raise
    _record_success()


def classify_error(status_code: Optional[int], code: Optional[str], detail: str = "") -> GenerationError:
    code_l = str(code or "").strip().lower()
    if code_l in SAFETY_CODES:
        return SafetyBlocked(detail or "Response blocked by safety filters")
    if status_code == 429 or code_l in QUOTA_CODES:
        return QuotaExceeded(detail or "Provider quota exceeded")
    return ProviderError(detail or (f"HTTP {status_code}" if status_code else "provider failure"), status_code=status_code)


def _error_from_payload(status_code: Optional[int], payload: Any) -> GenerationError:
    code: Optional[str] = None
    detail = ""
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        code = err.get("code") or err.get("type") or err.get("status")
        detail = str(err.get("message") or "")
    elif isinstance(err, str):
        detail = err
    return classify_error(status_code, code, detail)


def _build_messages(prompt: str, history: Optional[History], system_prompt: str) -> List[Dict[str, str]]:
    msgs = [{"role": "system", "content": system_prompt}]
    for m in history or []:
        r = m.get("role") or "user"
        c = m.get("content") or ""
        if r not in ("system", "user", "assistant"):
            r = "user"
        if c:
            msgs.append({"role": r, "content": c})
    msgs.append({"role": "user", "content": prompt})
    return msgs


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


async def _iterate_in_thread(factory: Callable[[], Iterator[str]]) -> AsyncIterator[str]:
    """Drive a blocking iterator from worker threads, one item at a time."""

    iterator = factory()
    sentinel = object()
    try:
        while True:
            item = await asyncio.to_thread(next, iterator, sentinel)
            if item is sentinel:
                break
            yield item  # type: ignore[misc]
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            try:
                close()
            except ValueError:
                # Still executing in a worker thread; it will be collected once it yields.
                LOG.debug("llm_stream_close_deferred")


class LocalLLMClient:
    """Streams from a local OpenAI-compatible or Ollama endpoint over HTTP."""

    def __init__(self, base_url: str, model: str, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.system_prompt = system_prompt
        self.api_style = (os.getenv("CHAT_LLM_LOCAL_API") or "openai").lower()
        self._timeout = _STREAM_TIMEOUT
        self._session = _build_session()

    def stream_response(self, prompt: str, history: Optional[History] = None) -> AsyncIterator[str]:
        messages = _build_messages(prompt, history, self.system_prompt)
        return _guarded(_iterate_in_thread(lambda: self.stream(messages)))

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        try:
            if self.api_style == "ollama":
                yield from self._stream_ollama(messages)
            else:
                yield from self._stream_openai(messages)
        except requests.exceptions.RequestException as exc:
            LOG.warning("local_llm_stream_failed", extra={"base_url": self.base_url, "model": self.model, "err": str(exc)})
            raise ProviderError(f"network error: {exc.__class__.__name__}") from exc

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        resp = self._session.post(
            f"{self.base_url}{path}",
            json=payload,
            timeout=self._timeout,
            stream=True,
        )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            resp.close()
            raise _error_from_payload(resp.status_code, body)
        return resp

    def _stream_openai(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        LOG.debug("local_llm_stream", extra={"model": self.model, "base_url": self.base_url})
        payload = {"model": self.model, "messages": messages, "stream": True}
        with self._post("/v1/chat/completions", payload) as resp:
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if parsed.get("error"):
                    raise _error_from_payload(None, parsed)
                choice = (parsed.get("choices") or [{}])[0]
                token = (choice.get("delta") or {}).get("content") or ""
                if token:
                    yield token
                if choice.get("finish_reason") in SAFETY_CODES:
                    raise SafetyBlocked("Response blocked by safety filters")

    def _stream_ollama(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        LOG.debug("local_llm_stream_ollama", extra={"model": self.model, "base_url": self.base_url})
        payload = {"model": self.model, "messages": messages, "stream": True}
        with self._post("/api/chat", payload) as resp:
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line)
                except json.JSONDecodeError:
                    continue
                if data.get("error"):
                    raise _error_from_payload(None, data)
                token = (data.get("message") or {}).get("content") or ""
                if token:
                    yield token
                if data.get("done"):
                    break


class OpenAICompatibleProvider:
    """Hosted providers reached through the OpenAI-compatible chat API."""

    def __init__(self, client: Any, name: str, model: str, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self._client = client
        self.name = name
        self.model = model
        self.system_prompt = system_prompt

    def stream_response(self, prompt: str, history: Optional[History] = None) -> AsyncIterator[str]:
        messages = _build_messages(prompt, history, self.system_prompt)
        return _guarded(self._stream(messages))

    async def _stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        try:
            async for chunk in self._client.astream(messages):
                text = chunk.content if isinstance(chunk.content, str) else ""
                if text:
                    yield text
                finish_reason = (getattr(chunk, "response_metadata", None) or {}).get("finish_reason")
                if finish_reason in SAFETY_CODES:
                    raise SafetyBlocked("Response blocked by safety filters")
        except openai.APIStatusError as exc:
            LOG.warning("llm_stream_failed", extra={"provider": self.name, "status": exc.status_code, "code": exc.code})
            raise classify_error(exc.status_code, exc.code, _openai_detail(exc)) from exc
        except openai.APIConnectionError as exc:
            LOG.warning("llm_stream_unreachable", extra={"provider": self.name, "err": str(exc)})
            raise ProviderError("network error: provider unreachable") from exc


def _openai_detail(exc: openai.APIStatusError) -> str:
    body = exc.body if isinstance(exc.body, dict) else {}
    err = body.get("error") if isinstance(body.get("error"), dict) else body
    return str(err.get("message") or "") if isinstance(err, dict) else ""


class OfflineProvider:
    """Deterministic replies used when no model provider is configured."""

    name = "offline"
    model = "offline"

    def stream_response(self, prompt: str, history: Optional[History] = None) -> AsyncIterator[str]:
        return self._stream(prompt)

    async def _stream(self, prompt: str) -> AsyncIterator[str]:
        text = (prompt or "").strip()
        first_line = text.splitlines()[0][:180] if text else ""
        reply = (
            "No language model is configured for this deployment yet, so I can't give a real answer. "
            f"I received: \"{first_line}\". Set OPENAI_API_KEY, GEMINI_API_KEY or XAI_API_KEY to enable replies."
        )
        for piece in re.findall(r"\S+\s*", reply):
            yield piece
            await asyncio.sleep(0)


def build_provider(selection: ProviderSelection, system_prompt: Optional[str] = None) -> GenerationProvider:
    prompt = system_prompt or os.getenv("CHAT_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT
    base_url = selection.default_base_url
    if selection.base_url_env:
        base_url = os.getenv(selection.base_url_env) or base_url

    if selection.name == "local":
        logger.info("Using local LLM provider base_url=%s model=%s", base_url, selection.model)
        return LocalLLMClient(base_url=base_url or "http://127.0.0.1:11434", model=selection.model, system_prompt=prompt)

    api_key = os.getenv(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise RuntimeError("LLM not configured")
    logger.info(
        "Using remote LLM provider name=%s model=%s base_url=%s",
        selection.name,
        selection.model,
        base_url,
    )
    client = ChatOpenAI(api_key=api_key, base_url=base_url, model=selection.model, temperature=0.2, max_retries=1)
    return OpenAICompatibleProvider(client, name=selection.name, model=selection.model, system_prompt=prompt)


def get_generation_provider(router: Optional[ModelRouter] = None) -> GenerationProvider:
    selection = (router or ModelRouter()).maybe_select_provider()
    if selection is None:
        logger.warning("No model provider configured; replies will come from the offline provider")
        return OfflineProvider()
    return build_provider(selection)
