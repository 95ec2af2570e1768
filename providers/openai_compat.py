"""
Client for backends that speak the OpenAI-compatible /chat/completions protocol
(OpenRouter, MegaLLM, AgentRouter, Routeway).
"""

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, Iterator, List, Optional

from providers.base import (
    ChatRequest, ChatResponse, ProviderClient, ProviderError, is_retryable_status,
)

logger = logging.getLogger(__name__)


class OpenAICompatibleClient(ProviderClient):

    def __init__(self, backend_id: str, base_url: str, api_key: str,
                 timeout: int = 120, headers: Optional[Dict[str, str]] = None):
        self.id = backend_id
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self._headers = dict(headers or {})

    def _build_messages(self, request: ChatRequest) -> List[Dict[str, Any]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.messages)
        return messages

    def _open(self, request: ChatRequest, stream: bool):
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": self._build_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        headers.update(self._headers)
        req = urllib.request.Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            return urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:500]
            raise ProviderError(f"HTTP {e.code}: {detail}", status=e.code,
                                retryable=is_retryable_status(e.code))
        except urllib.error.URLError as e:
            raise ProviderError(f"Connection to {self.id} failed: {e.reason}")
        except TimeoutError:
            raise ProviderError(f"Request to {self.id} timed out after {self.timeout}s")

    def chat(self, request: ChatRequest) -> ChatResponse:
        with self._open(request, stream=False) as resp:
            raw = resp.read()
        try:
            data = json.loads(raw)
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ProviderError(f"Invalid response format from {self.id}", retryable=False)
        if content is None:
            raise ProviderError(f"Empty response from {self.id}")
        return ChatResponse(
            content=content,
            model=data.get("model") or request.model,
            provider=self.id,
            usage={k: int(v) for k, v in (data.get("usage") or {}).items() if isinstance(v, (int, float))},
            finish_reason=choice.get("finish_reason"),
        )

    def stream(self, request: ChatRequest) -> Iterator[Dict[str, Any]]:
        with self._open(request, stream=True) as resp:
            for raw_line in resp:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if payload == "[DONE]":
                    return
                try:
                    chunk = json.loads(payload)
                except ValueError:
                    # Keep-alive comments and partial frames
                    continue
                usage = chunk.get("usage")
                if usage:
                    yield {"type": "usage", "usage": {
                        k: int(v) for k, v in usage.items() if isinstance(v, (int, float))
                    }}
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                text = delta.get("content") or choices[0].get("text") or ""
                if text:
                    yield {"type": "text", "content": text}
