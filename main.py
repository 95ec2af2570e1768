"""
Vibe Runtime - run one agent task from the terminal.
Output built with Rich; approvals are asked inline.

Run:  python main.py "add a README" [--mode agent] [--yes] [--dir .]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from agent import AgentEvent, Step, Task
from config import app_config
from errors import AgentError
from modes import mode_names
from runtime import Runtime, set_runtime
from state_machine import RuntimeState, StateSnapshot

# Configure logging to file so it doesn't interfere with console output
logging.basicConfig(
    filename="vibe_runtime.log",
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

STATUS_STYLE = {
    "pending": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
}


def _print_state(last: dict):
    def _on_snapshot(snapshot: StateSnapshot) -> None:
        if snapshot.state == last.get("state"):
            return
        last["state"] = snapshot.state
        console.print(f"[dim]state -> {snapshot.state.value}[/dim]")
    return _on_snapshot


async def _print_event(event: AgentEvent) -> None:
    data = event.data or {}
    if event.type == "plan_ready":
        table = Table(title="Plan", show_lines=False)
        table.add_column("id")
        table.add_column("tool")
        table.add_column("description")
        table.add_column("approval")
        for step in data.get("steps", []):
            table.add_row(step["id"], step["tool"], rich_escape(step["description"]),
                          "yes" if step["requires_approval"] else "")
        console.print(table)
    elif event.type == "step_start":
        console.print(f"[yellow]>[/yellow] {rich_escape(event.content)} [dim]({data.get('tool')})[/dim]")
    elif event.type == "step_result":
        style = STATUS_STYLE.get(data.get("status", ""), "white")
        line = f"[{style}]{data.get('status')}[/{style}] {data.get('id')}"
        if data.get("error"):
            line += f": {rich_escape(str(data['error']))}"
        console.print(line)
    elif event.type == "rollback":
        console.print(f"[magenta]rollback[/magenta] {rich_escape(event.content)}")
    elif event.type == "error":
        console.print(f"[red]error[/red] {rich_escape(event.content)}")


def _ask_approval(step: Step) -> bool:
    params = json.dumps(step.parameters, indent=2, ensure_ascii=False)
    console.print(Panel(
        f"{rich_escape(step.description)}\n\n[bold]{step.tool_name}[/bold]\n{rich_escape(params)}",
        title=f"Approval required: {step.id}",
        border_style="yellow",
    ))
    return Confirm.ask("Run this step?", default=False)


def _print_summary(task: Optional[Task]) -> None:
    if task is None:
        return
    table = Table(title=f"Task {task.id} - {task.status.value}")
    table.add_column("step")
    table.add_column("status")
    table.add_column("time", justify="right")
    table.add_column("rolled back")
    for step in task.steps:
        style = STATUS_STYLE.get(step.status.value, "white")
        table.add_row(
            step.id,
            f"[{style}]{step.status.value}[/{style}]",
            f"{step.duration:.2f}s" if step.duration is not None else "",
            "yes" if step.rolled_back else "",
        )
    console.print(table)
    if task.error:
        console.print(f"[red]{rich_escape(task.error)}[/red]")


async def run_task(runtime: Runtime, description: str, mode: str) -> int:
    orchestrator = runtime.orchestrator
    sm = runtime.state_machine
    try:
        task = await orchestrator.start_agent(description, mode)
        while sm.state == RuntimeState.AWAITING_APPROVAL:
            step = task.awaiting_step
            if step is None:
                break
            if _ask_approval(step):
                task = await orchestrator.approve_and_resume(step.id)
            else:
                task = await orchestrator.reject_step(step.id, "declined at prompt")
    except AgentError as e:
        console.print(f"[bold red]{e.kind}[/bold red]: {rich_escape(e.message)}")
        _print_summary(orchestrator.current_task)
        return 1
    finally:
        if sm.state in (RuntimeState.COMPLETED, RuntimeState.ERROR, RuntimeState.CANCELLED):
            orchestrator.acknowledge()

    _print_summary(task)
    return 0 if task.status.value == "completed" else 1


def main():
    parser = argparse.ArgumentParser(description="Vibe Runtime - agent task runner")
    parser.add_argument("task", help="What the agent should do")
    parser.add_argument("--mode", default="agent", choices=mode_names(), help="Capability mode (default: agent)")
    parser.add_argument("--yes", action="store_true", help="Approve every step without asking")
    parser.add_argument("--dir", default=app_config.working_directory, help="Working directory for the agent")
    parser.add_argument("--backend", default=None, help="Preferred backend id")
    args = parser.parse_args()

    runtime = Runtime(working_directory=args.dir, auto_approve=args.yes)
    runtime.initialize()
    set_runtime(runtime)
    if args.backend:
        try:
            runtime.router.switch_backend(args.backend)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(2)

    runtime.state_machine.subscribe(_print_state({}))
    runtime.orchestrator.on_event = _print_event
    console.print(f"[bold]Vibe Runtime[/bold] [dim]{runtime.working_directory}[/dim]")

    try:
        code = asyncio.run(run_task(runtime, args.task, args.mode))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
