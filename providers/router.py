"""
Multi-backend request router.

Every request walks a fallback chain of (backend, model) candidates. A
candidate without a credential or with an exhausted rate budget is skipped
without being called. Otherwise it is called with exponential backoff and
jitter; the outcome updates that backend's health and budget under the
backend's own lock. When every candidate fails or is skipped the caller gets a
BackendError listing what happened to each one.
"""

import asyncio
import logging
import queue
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config import BACKEND_SPECS, MODEL_COMPATIBILITY, lookup_api_key, router_config
from errors import BackendError
from providers.base import ChatOptions, ChatRequest, ChatResponse, ProviderClient, ProviderError

logger = logging.getLogger(__name__)

UNHEALTHY_AFTER = 3

TokenSink = Callable[[str], Union[None, Awaitable[None]]]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class BackendHealth:
    id: str
    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None

    def record_success(self) -> None:
        self.status = HealthStatus.HEALTHY
        self.consecutive_failures = 0
        self.last_success = datetime.now(timezone.utc)

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.last_error = error
        if self.consecutive_failures >= UNHEALTHY_AFTER:
            self.status = HealthStatus.UNHEALTHY
        else:
            self.status = HealthStatus.DEGRADED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
        }


@dataclass
class RateBudget:
    """Tokens used in the current fixed window. reset_time is a clock() value."""
    limit: int
    used: int = 0
    reset_time: float = 0.0

    def roll(self, now: float, window: float) -> None:
        if now >= self.reset_time:
            self.used = 0
            self.reset_time = now + window

    def exhausted(self) -> bool:
        return self.used >= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {"used": self.used, "limit": self.limit, "remaining": self.remaining,
                "reset_time": self.reset_time}


@dataclass(frozen=True)
class BackendInfo:
    """Static description of one backend, built from a BACKEND_SPECS entry"""
    id: str
    name: str
    kind: str
    models: Tuple[str, ...]
    api_key_env: str
    tokens_per_window: int
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    base_url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    model_ids: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_spec(cls, spec: Dict[str, Any]) -> "BackendInfo":
        return cls(
            id=spec["id"],
            name=spec.get("name", spec["id"]),
            kind=spec.get("kind", "openai"),
            models=tuple(spec.get("models", [])),
            api_key_env=spec["api_key_env"],
            tokens_per_window=int(spec.get("tokens_per_window", 100000)),
            max_retries=int(spec.get("max_retries", 3)),
            base_delay=float(spec.get("base_delay", 1.0)),
            max_delay=float(spec.get("max_delay", 10.0)),
            base_url=spec.get("base_url", ""),
            headers=dict(spec.get("headers", {})),
            model_ids=dict(spec.get("model_ids", {})),
        )

    def serves(self, model: str) -> bool:
        return model in self.models


def default_client_factory(info: BackendInfo, api_key: str) -> ProviderClient:
    """Build the real network client for a backend."""
    if info.kind == "bedrock":
        from providers.bedrock import BedrockClient
        return BedrockClient(backend_id=info.id, region=api_key, model_ids=info.model_ids)
    from providers.openai_compat import OpenAICompatibleClient
    return OpenAICompatibleClient(
        backend_id=info.id,
        base_url=info.base_url,
        api_key=api_key,
        timeout=router_config.request_timeout,
        headers=info.headers,
    )


def _estimate_tokens(request: ChatRequest, content: str) -> int:
    # Rough 4-chars-per-token estimate for backends that report no usage
    prompt_chars = sum(len(str(m.get("content", ""))) for m in request.messages)
    prompt_chars += len(request.system_prompt or "")
    return (prompt_chars + len(content)) // 4 + 1


class _StreamAborted(Exception):
    """A backend failed after tokens were already delivered."""

    def __init__(self, error: str, partial: str):
        super().__init__(error)
        self.partial = partial


class _SinkFailed(Exception):
    """The caller's token sink raised; the backend is not at fault."""

    def __init__(self, error: Exception):
        super().__init__(str(error))
        self.error = error


class RequestRouter:
    """Spreads model calls across backends with fallback, budgets and health."""

    def __init__(
        self,
        specs: Optional[List[Dict[str, Any]]] = None,
        default_backend: Optional[str] = None,
        default_model: Optional[str] = None,
        key_lookup: Callable[[str], Optional[str]] = lookup_api_key,
        clients: Optional[Dict[str, ProviderClient]] = None,
        client_factory: Callable[[BackendInfo, str], ProviderClient] = default_client_factory,
        compatibility: Optional[Dict[str, List[str]]] = None,
        window_seconds: Optional[float] = None,
        jitter: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        infos = [BackendInfo.from_spec(s) for s in (specs if specs is not None else BACKEND_SPECS)]
        if not infos:
            raise ValueError("RequestRouter needs at least one backend")
        self._backends: Dict[str, BackendInfo] = {b.id: b for b in infos}
        default = default_backend or router_config.default_backend
        self._default = default if default in self._backends else infos[0].id
        self.default_model = default_model or router_config.default_model
        self._key_lookup = key_lookup
        self._clients: Dict[str, ProviderClient] = dict(clients or {})
        self._client_factory = client_factory
        self._compat = compatibility if compatibility is not None else MODEL_COMPATIBILITY
        self._window = window_seconds if window_seconds is not None else router_config.rate_window_seconds
        self._jitter = jitter if jitter is not None else router_config.retry_jitter
        self._sleep = sleep
        self._clock = clock
        self._rand = rand
        self._health: Dict[str, BackendHealth] = {b.id: BackendHealth(id=b.id) for b in infos}
        self._budgets: Dict[str, RateBudget] = {
            b.id: RateBudget(limit=b.tokens_per_window) for b in infos
        }
        self._locks: Dict[str, threading.Lock] = {b.id: threading.Lock() for b in infos}
        self._clients_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def default_backend(self) -> str:
        return self._default

    def switch_backend(self, backend_id: str) -> None:
        if backend_id not in self._backends:
            raise ValueError(f"Unknown backend: {backend_id}")
        self._default = backend_id
        logger.info(f"Default backend switched to {backend_id}")

    def backend_ids(self) -> List[str]:
        return list(self._backends)

    def health(self) -> Dict[str, BackendHealth]:
        out = {}
        for bid, h in self._health.items():
            with self._locks[bid]:
                out[bid] = BackendHealth(h.id, h.status, h.consecutive_failures, h.last_success, h.last_error)
        return out

    def budgets(self) -> Dict[str, RateBudget]:
        now = self._clock()
        out = {}
        for bid, b in self._budgets.items():
            with self._locks[bid]:
                b.roll(now, self._window)
                out[bid] = RateBudget(b.limit, b.used, b.reset_time)
        return out

    def available_backends(self) -> List[str]:
        """Backends that currently have a credential."""
        return [b.id for b in self._backends.values() if self._key_lookup(b.api_key_env)]

    def status(self) -> List[Dict[str, Any]]:
        health = self.health()
        budgets = self.budgets()
        available = set(self.available_backends())
        return [
            {
                "id": b.id,
                "name": b.name,
                "models": list(b.models),
                "default": b.id == self._default,
                "configured": b.id in available,
                "health": health[b.id].to_dict(),
                "budget": budgets[b.id].to_dict(),
            }
            for b in self._backends.values()
        ]

    # ------------------------------------------------------------------
    # Fallback chain
    # ------------------------------------------------------------------

    def build_fallback_chain(self, model: str, preferred: Optional[str] = None) -> List[Tuple[str, str]]:
        """Ordered (backend_id, model) candidates for a request.

        Default backend first, then other backends serving the model, then
        backends serving a documented substitute. Unhealthy backends keep their
        relative order but move to the end.
        """
        substitutes = [m for m in self._compat.get(model, []) if m != model]
        first_id = preferred if preferred in self._backends else self._default
        first = self._backends[first_id]

        chain: List[Tuple[str, str]] = []
        if first.serves(model):
            chain.append((first.id, model))
        else:
            # A listed substitute, else the requested model as-is; never a guess
            sub = next((m for m in substitutes if first.serves(m)), None)
            chain.append((first.id, sub or model))

        seen = {first.id}
        for b in self._backends.values():
            if b.id not in seen and b.serves(model):
                chain.append((b.id, model))
                seen.add(b.id)
        for sub in substitutes:
            for b in self._backends.values():
                if b.id not in seen and b.serves(sub):
                    chain.append((b.id, sub))
                    seen.add(b.id)

        healthy = [c for c in chain if self._health[c[0]].status != HealthStatus.UNHEALTHY]
        unhealthy = [c for c in chain if self._health[c[0]].status == HealthStatus.UNHEALTHY]
        return healthy + unhealthy

    # ------------------------------------------------------------------
    # Candidate bookkeeping
    # ------------------------------------------------------------------

    def _skip_reason(self, backend_id: str) -> Optional[str]:
        info = self._backends[backend_id]
        if not self._key_lookup(info.api_key_env):
            return "skipped: no credential configured"
        with self._locks[backend_id]:
            budget = self._budgets[backend_id]
            budget.roll(self._clock(), self._window)
            if budget.exhausted():
                return f"skipped: rate budget exhausted ({budget.used}/{budget.limit})"
        return None

    def _client(self, backend_id: str) -> ProviderClient:
        with self._clients_lock:
            client = self._clients.get(backend_id)
            if client is None:
                info = self._backends[backend_id]
                client = self._client_factory(info, self._key_lookup(info.api_key_env) or "")
                self._clients[backend_id] = client
            return client

    def _record_success(self, backend_id: str, tokens: int) -> None:
        with self._locks[backend_id]:
            self._health[backend_id].record_success()
            budget = self._budgets[backend_id]
            budget.roll(self._clock(), self._window)
            budget.used += max(tokens, 0)

    def _record_failure(self, backend_id: str, error: str) -> None:
        with self._locks[backend_id]:
            health = self._health[backend_id]
            health.record_failure(error)
            status = health.status.value
        logger.warning(f"Backend {backend_id} failed ({status}): {error}")

    def _retry_delay(self, info: BackendInfo, attempt: int) -> float:
        return min(info.base_delay * (2 ** attempt) + self._rand(0, self._jitter), info.max_delay)

    def _make_request(self, messages: List[Dict[str, Any]], model: str,
                      options: ChatOptions) -> ChatRequest:
        return ChatRequest(
            messages=list(messages),
            model=model,
            temperature=options.temperature if options.temperature is not None else 0.2,
            max_tokens=options.max_tokens or 4000,
            system_prompt=options.system_prompt,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def chat(self, messages: List[Dict[str, Any]],
                   options: Optional[ChatOptions] = None) -> ChatResponse:
        options = options or ChatOptions()
        model = options.model or self.default_model
        failures: Dict[str, str] = {}

        for backend_id, candidate_model in self.build_fallback_chain(model, options.backend):
            reason = self._skip_reason(backend_id)
            if reason:
                logger.info(f"Backend {backend_id} {reason}")
                failures[backend_id] = reason
                continue
            info = self._backends[backend_id]
            request = self._make_request(messages, candidate_model, options)
            client = self._client(backend_id)
            last_error = ""
            for attempt in range(info.max_retries + 1):
                try:
                    response = await asyncio.to_thread(client.chat, request)
                except Exception as e:
                    last_error = str(e) or type(e).__name__
                    retryable = getattr(e, "retryable", True)
                    if retryable and attempt < info.max_retries:
                        delay = self._retry_delay(info, attempt)
                        logger.warning(
                            f"Backend {backend_id} attempt {attempt + 1}/{info.max_retries + 1} failed: "
                            f"{last_error}; retrying in {delay:.2f}s"
                        )
                        await self._sleep(delay)
                        continue
                    break
                tokens = response.total_tokens or _estimate_tokens(request, response.content)
                self._record_success(backend_id, tokens)
                logger.info(f"Backend {backend_id} answered with {candidate_model} ({tokens} tokens)")
                return response
            self._record_failure(backend_id, last_error)
            failures[backend_id] = last_error

        raise BackendError(self._summary(model, failures), failures=failures)

    async def complete(self, prompt: str, options: Optional[ChatOptions] = None) -> ChatResponse:
        return await self.chat([{"role": "user", "content": prompt}], options)

    async def stream_chat(self, messages: List[Dict[str, Any]], on_token: TokenSink,
                          options: Optional[ChatOptions] = None) -> ChatResponse:
        """Deliver tokens to on_token as they arrive; returns the assembled response.

        A backend may be replaced by the next candidate only until the first
        token has been delivered. After that a failure ends the request.
        An exception from on_token is re-raised as-is and does not count
        against the backend.
        """
        options = options or ChatOptions()
        model = options.model or self.default_model
        failures: Dict[str, str] = {}

        for backend_id, candidate_model in self.build_fallback_chain(model, options.backend):
            reason = self._skip_reason(backend_id)
            if reason:
                logger.info(f"Backend {backend_id} {reason}")
                failures[backend_id] = reason
                continue
            info = self._backends[backend_id]
            request = self._make_request(messages, candidate_model, options)
            client = self._client(backend_id)
            last_error = ""
            for attempt in range(info.max_retries + 1):
                try:
                    content, usage = await self._consume_stream(client, request, on_token)
                except _SinkFailed as e:
                    logger.info(f"Token sink raised while streaming from {backend_id}: {e}")
                    raise e.error
                except _StreamAborted as e:
                    self._record_failure(backend_id, str(e))
                    failures[backend_id] = str(e)
                    raise BackendError(
                        f"Stream from {backend_id} failed after partial output: {e}",
                        failures=failures,
                        partial_content=e.partial,
                    )
                except Exception as e:
                    last_error = str(e) or type(e).__name__
                    if getattr(e, "retryable", True) and attempt < info.max_retries:
                        delay = self._retry_delay(info, attempt)
                        logger.warning(
                            f"Stream from {backend_id} attempt {attempt + 1}/{info.max_retries + 1} failed: "
                            f"{last_error}; retrying in {delay:.2f}s"
                        )
                        await self._sleep(delay)
                        continue
                    break
                response = ChatResponse(content=content, model=candidate_model,
                                        provider=backend_id, usage=usage)
                self._record_success(backend_id, response.total_tokens or _estimate_tokens(request, content))
                return response
            self._record_failure(backend_id, last_error)
            failures[backend_id] = last_error

        raise BackendError(self._summary(model, failures), failures=failures)

    async def _consume_stream(self, client: ProviderClient, request: ChatRequest,
                              on_token: TokenSink) -> Tuple[str, Dict[str, int]]:
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding chunks to the queue."""
            stream = None
            try:
                stream = client.stream(request)
                for c in stream:
                    if stop.is_set():
                        break
                    chunk_queue.put(c)
                chunk_queue.put(None)  # sentinel: stream complete
            except Exception as exc:
                chunk_queue.put(exc)
            finally:
                if stream is not None and hasattr(stream, "close"):
                    stream.close()

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        parts: List[str] = []
        usage: Dict[str, int] = {}
        try:
            while True:
                chunk = await asyncio.to_thread(chunk_queue.get)
                if chunk is None:
                    break
                if isinstance(chunk, Exception):
                    if parts:
                        raise _StreamAborted(str(chunk) or type(chunk).__name__, "".join(parts))
                    raise chunk
                if chunk.get("type") == "usage":
                    usage = dict(chunk.get("usage") or {})
                    continue
                text = chunk.get("content", "")
                if not text:
                    continue
                parts.append(text)
                try:
                    result = on_token(text)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    raise _SinkFailed(e)
        finally:
            # Producer drops the rest of the stream on its next chunk
            stop.set()
        return "".join(parts), usage

    @staticmethod
    def _summary(model: str, failures: Dict[str, str]) -> str:
        if not failures:
            return f"No backend available for {model}"
        detail = "; ".join(f"{bid}: {err}" for bid, err in failures.items())
        return f"All backends failed for {model}. {detail}"
