"""
Bedrock Codex Engine - run one task through the execution engine.
Composition root: wires the Bedrock client, tool registry, confirmation
broker, retry manager and session store into an AgentSession.
"""

import asyncio
import argparse
import logging
import os
import sys
from typing import Any, Dict

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from agent import (
    AgentEvent,
    AgentSession,
    ApprovalScope,
    CircuitBreakerConfig,
    ConfirmationBroker,
    ConfirmationResponse,
    DefaultStepPlanner,
    EventBus,
    ExecutionError,
    ModelSummarizer,
    PERMISSION_ASKED,
    PlanStepPlanner,
    ResultCache,
    RetryConfig,
    RetryManager,
    Task,
    TaskKind,
    TaskStatus,
)
from bedrock_service import BedrockService, BedrockError
from config import app_config, context_settings, get_model_name, model_config, retry_settings
from sessions import SessionStore, make_session_id
from tools import (
    CommandPolicy,
    FileExtensionPolicy,
    NeverConfirm,
    Tool,
    ToolDispatcher,
    ToolKind,
    ToolRegistry,
    ToolResult,
)

logging.basicConfig(
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

EXIT_CODES = {
    TaskStatus.COMPLETED: 0,
    TaskStatus.FAILED: 1,
    TaskStatus.CANCELLED: 130,
}


# ============================================================
# Built-in tools
# ============================================================

def build_registry(working_dir: str) -> ToolRegistry:
    """A minimal local tool set: read, write and run."""

    def _resolve(path: str) -> str:
        full = os.path.abspath(os.path.join(working_dir, path))
        if not full.startswith(os.path.abspath(working_dir)):
            raise PermissionError(f"Path escapes working directory: {path}")
        return full

    async def read_file(params: Dict[str, Any], ctx) -> ToolResult:
        with open(_resolve(params["path"]), "r", encoding="utf-8", errors="replace") as f:
            return ToolResult.ok(f.read())

    async def write_file(params: Dict[str, Any], ctx) -> ToolResult:
        full = _resolve(params["path"])
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(params["content"])
        return ToolResult.ok(f"Wrote {len(params['content'])} chars to {params['path']}")

    async def run_command(params: Dict[str, Any], ctx) -> ToolResult:
        proc = await asyncio.create_subprocess_shell(
            params["command"],
            cwd=working_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            out, _ = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            raise
        text = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            error = ExecutionError(f"Command exited with {proc.returncode}", code=f"EXIT_{proc.returncode}", retryable=False)
            return ToolResult(success=False, output=text, error=error.to_dict())
        return ToolResult.ok(text)

    return ToolRegistry([
        Tool(
            name="read_file",
            handler=read_file,
            kind=ToolKind.READ,
            is_read_only=True,
            description="Read a text file relative to the working directory.",
            param_schema={
                "type": "object",
                "properties": {"path": {"type": "string", "minLength": 1}},
                "required": ["path"],
                "additionalProperties": False,
            },
            confirmation_policy=NeverConfirm(),
            resource_keys=("path",),
        ),
        Tool(
            name="write_file",
            handler=write_file,
            kind=ToolKind.EDIT,
            description="Create or overwrite a text file relative to the working directory.",
            param_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
                "additionalProperties": False,
            },
            confirmation_policy=FileExtensionPolicy(),
            resource_keys=("path",),
        ),
        Tool(
            name="run_command",
            handler=run_command,
            kind=ToolKind.EXECUTE,
            description="Run a shell command in the working directory.",
            param_schema={
                "type": "object",
                "properties": {"command": {"type": "string", "minLength": 1}},
                "required": ["command"],
                "additionalProperties": False,
            },
            confirmation_policy=CommandPolicy(block_destructive=app_config.block_destructive_commands),
        ),
    ])


# ============================================================
# Terminal responder for confirmation requests
# ============================================================

def attach_terminal_responder(bus: EventBus, broker: ConfirmationBroker, auto_approve: bool) -> None:
    async def _on_asked(payload: Dict[str, Any]) -> None:
        request_id = payload["id"]
        if auto_approve:
            broker.resolve(request_id, ConfirmationResponse(approved=True))
            return
        table = Table(show_header=False, box=None)
        table.add_row("[bold]Tool[/]", payload["tool_name"])
        table.add_row("[bold]Risk[/]", payload["risk_level"])
        table.add_row("[bold]Reason[/]", payload["description"])
        for key, value in payload.get("args", {}).items():
            table.add_row(f"[dim]{key}[/]", str(value)[:200])
        console.print(Panel(table, title="Approval required", border_style="yellow"))

        loop = asyncio.get_running_loop()
        answer = await loop.run_in_executor(
            None,
            lambda: Prompt.ask("Approve? [y]es / [n]o / [a]lways this session", choices=["y", "n", "a"], default="n"),
        )
        if answer == "a":
            response = ConfirmationResponse(approved=True, scope=ApprovalScope.SESSION, remember=True)
        elif answer == "y":
            response = ConfirmationResponse(approved=True)
        else:
            response = ConfirmationResponse.denied("declined at terminal")
        broker.resolve(request_id, response)

    bus.subscribe(PERMISSION_ASKED, _on_asked)


async def print_event(event: AgentEvent) -> None:
    if event.type == "step_start":
        console.print(f"[cyan]▶[/] {event.content}")
    elif event.type == "step_end" and event.content == "failed":
        console.print("[red]✗ step failed[/]")
    elif event.type == "compaction":
        console.print(f"[dim]context compacted: {event.content}[/]")


# ============================================================
# Entry Point
# ============================================================

async def run_task(args: argparse.Namespace) -> int:
    working_dir = os.path.abspath(args.directory)
    service = BedrockService(model_id=args.model)
    bus = EventBus()
    broker = ConfirmationBroker(bus)
    attach_terminal_responder(bus, broker, auto_approve=args.yes)

    retry_manager = RetryManager(RetryConfig.from_settings(), CircuitBreakerConfig.from_settings())
    cache = ResultCache(context_settings.result_cache_size, context_settings.result_cache_ttl)
    dispatcher = ToolDispatcher(build_registry(working_dir), broker, retry_manager, cache)
    store = SessionStore(app_config.session_dir)

    model_params = {"model_id": service.model_id, "max_tokens": model_config.max_tokens}
    planner = (
        PlanStepPlanner(
            service,
            model_params,
            fallback=DefaultStepPlanner(),
            retry_manager=retry_manager,
            timeout=retry_settings.model_call_timeout,
        )
        if args.plan else DefaultStepPlanner()
    )
    session = AgentSession(
        make_session_id(working_dir, args.session),
        service,
        retry_manager,
        broker=broker,
        dispatcher=dispatcher,
        store=store,
        planner=planner,
        summarizer=ModelSummarizer(service, model_config.summary_model_id),
        on_event=print_event,
        model_params=model_params,
        system_prompt=f"You are a coding assistant working in {working_dir}.",
    )
    if args.resume and session.load():
        console.print(f"[dim]Resumed session {session.session_id}[/]")

    task = Task(prompt=" ".join(args.prompt), kind=TaskKind(args.mode))
    console.print(f"[bold]{app_config.title}[/] · {get_model_name(service.model_id)} · {task.kind.value}")

    runner = asyncio.ensure_future(session.run(task))
    try:
        outcome = await asyncio.shield(runner)
    except asyncio.CancelledError:
        session.cancel("interrupted")
        outcome = await runner

    if outcome.response and outcome.response.content:
        console.print(Markdown(outcome.response.content))
    if outcome.error:
        console.print(f"[red]{outcome.status.value}: {outcome.error.get('message')}[/]")
    else:
        console.print(f"[green]{outcome.status.value}[/]")
    return EXIT_CODES[outcome.status]


def main():
    parser = argparse.ArgumentParser(
        description="Bedrock Codex Engine - run a task through the execution engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py "explain main.py"                   One model call
  python main.py --mode steering "add a test"        Planned steps
  python main.py --mode parallel --yes "review code" Concurrent sub-tasks
        """,
    )
    parser.add_argument("prompt", nargs="+", help="Task prompt")
    parser.add_argument(
        "--mode",
        choices=[k.value for k in TaskKind],
        default=TaskKind.SIMPLE.value,
        help="Execution mode (default: simple)",
    )
    parser.add_argument("-d", "--directory", default=".", help="Working directory (default: current directory)")
    parser.add_argument("-s", "--session", default="default", help="Session name (default: default)")
    parser.add_argument("--resume", action="store_true", help="Resume the stored session state")
    parser.add_argument("--plan", action="store_true", help="Ask the model for the steering plan")
    parser.add_argument("--model", default=None, help="Model id (default: BEDROCK_MODEL_ID)")
    parser.add_argument("-y", "--yes", action="store_true", help="Approve every confirmation request")

    args = parser.parse_args()

    if not os.path.isdir(args.directory):
        console.print(f"Error: {args.directory} is not a directory")
        sys.exit(1)

    try:
        code = asyncio.run(run_task(args))
    except BedrockError as e:
        console.print(f"[red]{e.message}[/]")
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
