from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from airender.errors import GenerationFailed, StructuredParseFailed
from airender.intents import DEFAULT_MODEL, GenerationRequest

log = logging.getLogger(__name__)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_BASE_URL = (os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip() or "https://api.openai.com/v1").rstrip("/")
try:
    LLM_TIMEOUT_SECS = float(os.getenv("LLM_TIMEOUT_SECS", "75"))
except ValueError:
    LLM_TIMEOUT_SECS = 75.0

# Dollars per prompt / completion token. Advisory only.
FLAGSHIP_PRICING: Tuple[float, float] = (0.003, 0.006)
ECONOMY_PRICING: Tuple[float, float] = (0.00015, 0.0002)


@dataclass
class Generation:
    """What came back from one backend call."""

    data: Any
    content: Optional[str]
    parse_error: Optional[str]
    cost: Optional[float]
    completion: Dict[str, Any]


class ChatBackend:
    """Port for an OpenAI-compatible chat completion endpoint."""

    async def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenAIBackend(ChatBackend):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = OPENAI_API_KEY if api_key is None else api_key
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=LLM_TIMEOUT_SECS if timeout is None else timeout,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = await self._client.post("/chat/completions", headers=headers, json=payload)
        except httpx.HTTPError as exc:
            log.warning("llm request error model=%s: %r", payload.get("model"), exc)
            raise GenerationFailed(f"request to {self.endpoint} failed: {exc}") from exc

        if resp.status_code != 200:
            msg = _error_message(resp)
            log.warning("llm HTTP %s model=%s: %s", resp.status_code, payload.get("model"), msg)
            raise GenerationFailed(msg, backend_status=resp.status_code)

        try:
            return resp.json()
        except ValueError as exc:
            log.warning("llm: non-JSON HTTP body")
            raise GenerationFailed("backend returned a non-JSON body", backend_status=resp.status_code) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    text = (resp.text or "")[:400]
    return text or f"HTTP {resp.status_code}"


def estimate_cost(model: str, usage: Optional[Dict[str, Any]]) -> Optional[float]:
    if not usage:
        return None
    rate_in, rate_out = FLAGSHIP_PRICING if "gpt-4" in (model or "") else ECONOMY_PRICING
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    return round(prompt_tokens * rate_in + completion_tokens * rate_out, 5)


def parse_structured(raw: Optional[str]) -> Any:
    """JSON-decode a completion payload; raise StructuredParseFailed otherwise."""
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StructuredParseFailed(str(exc)) from exc


def _first_message(completion: Dict[str, Any]) -> Dict[str, Any]:
    choices = completion.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise GenerationFailed("backend response has no choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise GenerationFailed("backend response has no message")
    return message


async def invoke(request: GenerationRequest, backend: ChatBackend) -> Generation:
    payload = request.payload()
    completion = await backend.complete(payload)
    message = _first_message(completion)

    content = message.get("content")
    tool_calls = message.get("tool_calls") or []
    raw = content
    if tool_calls:
        raw = ((tool_calls[0] or {}).get("function") or {}).get("arguments")

    data = None
    parse_error = None
    if raw:
        try:
            data = parse_structured(raw)
        except StructuredParseFailed as exc:
            parse_error = str(exc)
            log.debug("llm: payload is not JSON (%s); keeping raw text", parse_error)

    cost = estimate_cost(request.model, completion.get("usage"))
    log.info(
        "llm completion model=%s tool_call=%s structured=%s cost=%s",
        request.model,
        bool(tool_calls),
        data is not None,
        cost,
    )
    return Generation(data=data, content=content, parse_error=parse_error, cost=cost, completion=completion)


def status() -> Dict[str, Any]:
    return {
        "provider": "openai" if OPENAI_API_KEY else None,
        "model": DEFAULT_MODEL,
        "endpoint": OPENAI_BASE_URL,
        "has_token": bool(OPENAI_API_KEY),
    }


_default_backend: Optional[ChatBackend] = None


def get_backend() -> ChatBackend:
    """Process-wide backend client, built on first use."""
    global _default_backend
    if _default_backend is None:
        _default_backend = OpenAIBackend()
    return _default_backend


def set_backend(backend: Optional[ChatBackend]) -> None:
    global _default_backend
    _default_backend = backend


async def close_backend() -> None:
    global _default_backend
    if _default_backend is not None:
        await _default_backend.aclose()
        _default_backend = None
