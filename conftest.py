"""Shared fixtures and fake model backends for the test suite."""

import json
from typing import Any, Dict, Iterator, List, Optional

import pytest

from backend import LocalBackend
from providers import ChatRequest, ChatResponse, ProviderClient, ProviderError, RequestRouter
from state_machine import RuntimeState, StateMachine
from tools import ToolRegistry, register_core_tools


class FakeClient(ProviderClient):
    """Scripted backend. Each reply is a string or an exception to raise."""

    def __init__(self, id: str, replies: Optional[List[Any]] = None,
                 streams: Optional[List[List[Any]]] = None):
        self.id = id
        self.replies = list(replies or [])
        self.streams = list(streams or [])
        self.requests: List[ChatRequest] = []

    def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if not self.replies:
            raise ProviderError(f"{self.id}: no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(content=reply, model=request.model, provider=self.id,
                            usage={"total_tokens": 10})

    def stream(self, request: ChatRequest) -> Iterator[Dict[str, Any]]:
        self.requests.append(request)
        script = self.streams.pop(0) if self.streams else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield {"type": "text", "content": item}


def make_spec(backend_id: str, models: List[str], tokens: int = 100000, max_retries: int = 0) -> Dict[str, Any]:
    return {
        "id": backend_id,
        "name": backend_id.title(),
        "kind": "openai",
        "base_url": f"https://{backend_id}.invalid/v1",
        "api_key_env": f"{backend_id.upper()}_API_KEY",
        "models": models,
        "tokens_per_window": tokens,
        "max_retries": max_retries,
        "base_delay": 1.0,
        "max_delay": 10.0,
    }


class Sleeper:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_router(specs: List[Dict[str, Any]], clients: Dict[str, ProviderClient],
                configured: Optional[List[str]] = None, **kwargs) -> RequestRouter:
    """Router over fake clients. Backends in configured (default: all) have a key."""
    keyed = {s["api_key_env"] for s in specs if configured is None or s["id"] in configured}
    kwargs.setdefault("sleep", Sleeper())
    kwargs.setdefault("rand", lambda a, b: 0.0)
    return RequestRouter(
        specs=specs,
        default_backend=specs[0]["id"],
        default_model=specs[0]["models"][0],
        key_lookup=lambda env: "test-key" if env in keyed else None,
        clients=clients,
        compatibility=kwargs.pop("compatibility", {}),
        **kwargs,
    )


def plan_json(*steps: Dict[str, Any]) -> str:
    return json.dumps({"steps": list(steps)})


def planning_router(*replies: Any) -> RequestRouter:
    """Router whose single backend answers decomposition requests with replies."""
    spec = make_spec("fake", ["anthropic/claude-3.5-sonnet"])
    return make_router([spec], {"fake": FakeClient("fake", replies=list(replies))})


@pytest.fixture
def backend(tmp_path):
    return LocalBackend(str(tmp_path))


@pytest.fixture
def sm():
    machine = StateMachine()
    machine.transition(RuntimeState.READY, "test setup")
    return machine


@pytest.fixture
def registry(sm, backend):
    reg = ToolRegistry(sm, backend)
    register_core_tools(reg)
    reg.freeze()
    return reg
