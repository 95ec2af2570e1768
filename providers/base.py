"""Provider client interface and the request/response types shared by the router."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


class ProviderError(Exception):
    """Raised by provider clients. retryable=False stops the retry loop early."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


def is_retryable_status(status: int) -> bool:
    return status in (408, 409, 425, 429) or status >= 500


@dataclass
class ChatOptions:
    """Caller-facing knobs for a router request"""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    # Try this backend first instead of the router default
    backend: Optional[str] = None


@dataclass
class ChatRequest:
    """What a single provider call receives"""
    messages: List[Dict[str, Any]]
    model: str
    temperature: float = 0.2
    max_tokens: int = 4000
    system_prompt: Optional[str] = None


@dataclass
class ChatResponse:
    content: str
    model: str
    provider: str
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"])
        return int(self.usage.get("prompt_tokens", 0)) + int(self.usage.get("completion_tokens", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "model": self.model,
            "provider": self.provider,
            "usage": dict(self.usage),
            "finish_reason": self.finish_reason,
        }


class ProviderClient(ABC):
    """One language-model backend. Calls are blocking; the router runs them in threads."""

    id: str = ""

    @abstractmethod
    def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a non-streaming request."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> Iterator[Dict[str, Any]]:
        """Yield stream events.

        {"type": "text", "content": str} for each token chunk and, at most once,
        {"type": "usage", "usage": {...}} when the backend reports token counts.
        """
