"""
Remote model capabilities used by the memory engine.

Two small capability protocols keep the engine testable by substitution:

- ``Embedder``: ``model_id()`` and ``embed(text) -> vector``.
- ``ModelCaller``: ``post(body) -> response document`` against an
  OpenAI-compatible ``/chat/completions`` endpoint.

The bundled implementations speak the OpenAI-compatible wire format over
httpx, enforce the response body caps while streaming, and raise
``TransportError`` for every transport-level failure.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from app_config import AppConfig, ProviderEndpoint
from memory_errors import InvalidInputError, TransportError

logger = logging.getLogger(__name__)

CHAT_TIMEOUT_SEC = 45.0
CHAT_BODY_LIMIT_BYTES = 2 * 1024 * 1024
EMBED_TIMEOUT_SEC = 30.0
EMBED_BODY_LIMIT_BYTES = 1024 * 1024
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


@runtime_checkable
class Embedder(Protocol):
    def model_id(self) -> str: ...

    async def embed(self, text: str) -> List[float]: ...


@runtime_checkable
class ModelCaller(Protocol):
    async def post(self, body: Dict[str, Any]) -> Dict[str, Any]: ...


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def resolve_api_key(endpoint: ProviderEndpoint) -> str:
    api_key = (endpoint.api_key or "").strip()
    if not api_key and (endpoint.api_key_env or "").strip():
        api_key = os.getenv(endpoint.api_key_env.strip(), "").strip()
    if not api_key:
        raise InvalidInputError("provider api key is required", code="api_key_missing")
    return api_key


async def post_json_capped(
    url: str,
    payload: Dict[str, Any],
    *,
    api_key: str,
    extra_headers: Optional[Dict[str, str]] = None,
    timeout_sec: float,
    body_limit: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """POST a JSON body and decode the JSON response, reading at most ``body_limit`` bytes."""
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    for key, value in (extra_headers or {}).items():
        headers[key] = value

    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_sec), transport=transport
        ) as client:
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                chunks: List[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > body_limit:
                        raise TransportError(
                            f"response body exceeds {body_limit} bytes",
                            code="response_too_large",
                        )
                    chunks.append(chunk)
                status_code = response.status_code
    except httpx.HTTPError as exc:
        raise TransportError(f"request to {url} failed: {exc}", code="request_failed") from exc

    body = b"".join(chunks)
    if status_code >= 300:
        snippet = body.decode("utf-8", errors="replace").strip()[:200]
        raise TransportError(
            f"request to {url} failed: status={status_code} body={snippet}",
            code=f"http_{status_code}",
        )
    try:
        parsed = json.loads(body)
    except ValueError as exc:
        raise TransportError("response is not valid JSON", code="invalid_response") from exc
    if not isinstance(parsed, dict):
        raise TransportError("response is not a JSON object", code="invalid_response")
    return parsed


class OpenAICompatibleEmbedder:
    """``POST <base>/embeddings`` with ``{model, input}``; first vector wins."""

    def __init__(
        self,
        endpoint: ProviderEndpoint,
        api_key: str,
        model: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self._transport = transport

    def model_id(self) -> str:
        return self.model

    async def embed(self, text: str) -> List[float]:
        text = (text or "").strip()
        if not text:
            raise InvalidInputError("embedding input text is required")
        if not (self.endpoint.base_url or "").strip():
            raise TransportError("embedding base_url is not configured", code="base_url_missing")
        payload = await post_json_capped(
            _join_api_url(self.endpoint.base_url.strip(), "/embeddings"),
            {"model": self.model, "input": text},
            api_key=self.api_key,
            extra_headers=self.endpoint.headers,
            timeout_sec=EMBED_TIMEOUT_SEC,
            body_limit=EMBED_BODY_LIMIT_BYTES,
            transport=self._transport,
        )
        return extract_embedding(payload)


def extract_embedding(payload: Dict[str, Any]) -> List[float]:
    data = payload.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise TransportError("embedding response missing vectors", code="invalid_response")
    raw_vector = data[0].get("embedding")
    if not isinstance(raw_vector, list) or not raw_vector:
        raise TransportError("embedding response missing vectors", code="invalid_response")
    try:
        return [float(value) for value in raw_vector]
    except (TypeError, ValueError) as exc:
        raise TransportError("embedding vector is not numeric", code="invalid_response") from exc


class ChatCompletionsCaller:
    """``POST <base>/chat/completions`` returning the decoded response document."""

    def __init__(
        self,
        endpoint: ProviderEndpoint,
        api_key: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self._transport = transport

    async def post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not (self.endpoint.base_url or "").strip():
            raise TransportError("chat base_url is not configured", code="base_url_missing")
        return await post_json_capped(
            _join_api_url(self.endpoint.base_url.strip(), "/chat/completions"),
            body,
            api_key=self.api_key,
            extra_headers=self.endpoint.headers,
            timeout_sec=CHAT_TIMEOUT_SEC,
            body_limit=CHAT_BODY_LIMIT_BYTES,
            transport=self._transport,
        )


def embedder_from_config(
    config: AppConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[Embedder]:
    if not config.memory.embeddings_enabled:
        return None
    provider = (config.memory.embedding_provider or "").strip().lower() or config.model.provider
    endpoint = config.provider_endpoint(provider)
    model = (config.memory.embedding_model or "").strip() or DEFAULT_EMBEDDING_MODEL
    return OpenAICompatibleEmbedder(
        endpoint, resolve_api_key(endpoint), model, transport=transport
    )


def model_caller_from_config(
    config: AppConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> ModelCaller:
    endpoint = config.provider_endpoint(config.model.provider)
    return ChatCompletionsCaller(endpoint, resolve_api_key(endpoint), transport=transport)
