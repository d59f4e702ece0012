"""
Async Ollama API client wrapper.

Talks to ``/api/chat`` in streaming mode. Ollama answers with one JSON object
per line; every line carries a delta of the assistant message (``content``
and, for reasoning models, ``thinking``) and the last line has ``done: true``.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from core.config import (
    OLLAMA_BASE_URL,
    OLLAMA_THINK,
    OLLAMA_TIMEOUT_SECONDS,
)
from core.errors import OllamaError

logger = logging.getLogger(__name__)


@dataclass
class ChatChunk:
    """One decoded line of an Ollama chat stream."""
    content: str = ""
    thinking: str = ""
    done: bool = False
    done_reason: Optional[str] = None


class OllamaClient:
    """Client for streaming chat completions from Ollama models."""

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = OLLAMA_TIMEOUT_SECONDS,
        think: bool = OLLAMA_THINK,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.think = think
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        response_format: Optional[Any] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream a chat completion, yielding decoded deltas."""
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "think": self.think,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }
        if response_format is not None:
            payload["format"] = response_format

        try:
            async with self.client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise OllamaError(
                        f"Ollama API error: HTTP {response.status_code}: {body[:300]}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    yield self._decode_line(line)
        except httpx.TimeoutException as e:
            raise OllamaError(f"Ollama API error: request timed out ({e})")
        except httpx.HTTPError as e:
            raise OllamaError(f"Ollama API error: {str(e)}")

    def _decode_line(self, line: str) -> ChatChunk:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            raise OllamaError(f"Ollama API error: malformed stream line: {line[:200]}")

        if data.get("error"):
            raise OllamaError(f"Ollama API error: {data['error']}")

        message = data.get("message") or {}
        return ChatChunk(
            content=message.get("content") or "",
            thinking=message.get("thinking") or "",
            done=bool(data.get("done")),
            done_reason=data.get("done_reason"),
        )

    async def aclose(self):
        await self.client.aclose()
