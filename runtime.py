"""
Runtime composition.
Wires the single StateMachine, the frozen ToolRegistry, the RequestRouter and
the AgentOrchestrator around one workspace Backend.
"""

import logging
import threading
from typing import Optional

from agent import AgentOrchestrator
from backend import Backend, LocalBackend
from config import app_config
from errors import ValidationError
from mode_store import ModeStore
from modes import CapabilityMode, get_mode
from providers import RequestRouter
from state_machine import RuntimeState, StateMachine
from tools import ToolRegistry, register_core_tools

logger = logging.getLogger(__name__)


class Runtime:
    """Holds the collaborators for one working directory."""

    def __init__(
        self,
        working_directory: Optional[str] = None,
        backend: Optional[Backend] = None,
        router: Optional[RequestRouter] = None,
        mode_store: Optional[ModeStore] = None,
        state_machine: Optional[StateMachine] = None,
        auto_approve: bool = False,
    ):
        self.backend = backend or LocalBackend(working_directory or app_config.working_directory)
        self.state_machine = state_machine or StateMachine(mode=self._default_mode())
        self.registry = ToolRegistry(self.state_machine, self.backend)
        register_core_tools(self.registry)
        self.registry.freeze()
        self.router = router or RequestRouter()
        self.mode_store = mode_store if mode_store is not None else ModeStore(
            working_directory=self.backend.working_directory,
        )
        self.orchestrator = AgentOrchestrator(
            self.state_machine,
            self.registry,
            self.router,
            mode_store=self.mode_store,
            auto_approve=auto_approve,
        )

    @staticmethod
    def _default_mode() -> CapabilityMode:
        try:
            return get_mode(app_config.default_mode)
        except ValidationError:
            logger.warning(f"Unknown DEFAULT_MODE {app_config.default_mode!r}; using ask")
            return get_mode("ask")

    @property
    def working_directory(self) -> str:
        return self.backend.working_directory

    def initialize(self) -> None:
        """Restore the persisted mode and move Idle -> Ready. Safe to call twice."""
        if self.state_machine.state != RuntimeState.IDLE:
            return
        saved = self.mode_store.load() if self.mode_store is not None else None
        if saved:
            try:
                self.state_machine.set_mode(get_mode(saved))
                logger.info(f"Restored mode {saved}")
            except ValidationError:
                logger.warning(f"Ignoring unknown persisted mode {saved!r}")
        self.state_machine.transition(RuntimeState.READY, "Runtime initialized")


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Process-wide runtime, created and initialized on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
            _runtime.initialize()
        return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Replace the process-wide runtime (entry points and tests)."""
    global _runtime
    with _runtime_lock:
        _runtime = runtime
