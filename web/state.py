"""
Shared mutable state for the web server.

The runtime is the process-wide one from runtime.get_runtime(). State
snapshots and agent events are fanned out to every connected /ws/state
client through a per-client asyncio.Queue.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from agent import AgentEvent
from runtime import Runtime
import runtime as _runtime_module
from state_machine import StateSnapshot

logger = logging.getLogger(__name__)

# ============================================================
# Globals
# ============================================================

# client id -> (loop that owns the queue, queue)
_clients: Dict[int, Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = {}
_client_ids = itertools.count(1)
_clients_lock = threading.Lock()

_wired_runtime: Optional[Runtime] = None
_subscription: Optional[int] = None
_wire_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Process-wide runtime with its state and events hooked up to the sockets."""
    rt = _runtime_module.get_runtime()
    _wire(rt)
    return rt


def _wire(rt: Runtime) -> None:
    global _wired_runtime, _subscription
    with _wire_lock:
        if _wired_runtime is rt:
            return
        if _wired_runtime is not None and _subscription is not None:
            _wired_runtime.state_machine.unsubscribe(_subscription)
        _subscription = rt.state_machine.subscribe(_on_snapshot)
        rt.orchestrator.on_event = _on_agent_event
        _wired_runtime = rt


# ============================================================
# Fan-out
# ============================================================

def register_client(loop: asyncio.AbstractEventLoop) -> Tuple[int, asyncio.Queue]:
    queue: asyncio.Queue = asyncio.Queue()
    with _clients_lock:
        client_id = next(_client_ids)
        _clients[client_id] = (loop, queue)
    logger.info(f"State client {client_id} connected")
    return client_id, queue


def unregister_client(client_id: int) -> None:
    with _clients_lock:
        _clients.pop(client_id, None)
    logger.info(f"State client {client_id} disconnected")


def broadcast(message: Dict[str, Any]) -> None:
    """Queue message for every client. Safe to call from any thread."""
    with _clients_lock:
        targets = list(_clients.items())
    for client_id, (loop, queue) in targets:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, message)
        except RuntimeError:
            # loop already closed
            unregister_client(client_id)


def _on_snapshot(snapshot: StateSnapshot) -> None:
    broadcast({"type": "state", "snapshot": snapshot.to_dict()})


async def _on_agent_event(event: AgentEvent) -> None:
    broadcast({"type": "agent_event", "event": event.to_dict()})
