"""Command-line entry point for Maxian."""

import asyncio
import json
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from maxian.combine import combine_api_requests, combine_command_sequences
from maxian.config import Config, set_config
from maxian.exceptions import ConfigurationError, MaxianError, TaskNotFoundError
from maxian.llm import create_handler
from maxian.logging import configure_logging
from maxian.messages import Message
from maxian.metrics import get_api_metrics
from maxian.persistence import DirectorySizeCache, TaskHistoryStore, TaskStorage
from maxian.pricing import format_cost
from maxian.task import Task, create_task

app = typer.Typer(help="Maxian - an agentic coding assistant for the terminal")
console = Console()


def _load_config(config_path: str, model: str = "", verbose: bool = False) -> Config:
    try:
        config = Config.from_yaml(config_path or None)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    if model:
        config.model.model = model
    if verbose:
        config.logging.level = "DEBUG"
    set_config(config)
    configure_logging()
    return config


def _storage(config: Config) -> TaskStorage:
    return TaskStorage(
        config.resolved_tasks_path(),
        DirectorySizeCache(ttl=config.storage.size_cache_ttl),
    )


def _render_message(message: Message) -> None:
    """Print finished log records."""
    if message.partial:
        return
    if message.is_say("text"):
        console.print(message.text or "")
    elif message.is_say("error"):
        console.print(f"[red]{message.text}[/red]")
    elif message.is_say("completion_result"):
        console.print(Panel(message.text or "", title="Task completed", border_style="green"))
    elif message.is_say("api_req_retried"):
        console.print("[yellow]Retrying API request...[/yellow]")
    elif message.is_say("condense_context") and message.context_condense:
        condense = message.context_condense
        console.print(
            f"[dim]Context condensed: {condense.prev_context_tokens} -> "
            f"{condense.new_context_tokens} tokens[/dim]"
        )
    elif message.is_say("tool"):
        try:
            payload = json.loads(message.text or "{}")
        except json.JSONDecodeError:
            payload = {}
        console.print(f"[dim]{payload.get('tool', 'tool')} {payload.get('path') or ''}[/dim]")
    elif message.is_say("command_output"):
        console.print(f"[dim]{message.text}[/dim]")


def _make_prompt_handler(task_ref: list[Task]):
    """Answer asks from the terminal."""

    async def handle(message: Message) -> None:
        task = task_ref[0]
        ask = message.ask
        if ask in ("tool", "command"):
            label = "Run command" if ask == "command" else "Allow tool"
            console.print(Panel(message.text or "", title=label, border_style="yellow"))
            approved = await asyncio.to_thread(Confirm.ask, "Approve?", default=True)
            if approved:
                task.submit_response(message.ts, "yesButtonClicked")
                return
            feedback = await asyncio.to_thread(Prompt.ask, "Feedback (optional)", default="")
            if feedback:
                task.submit_response(message.ts, "messageResponse", feedback)
            else:
                task.submit_response(message.ts, "noButtonClicked")
        elif ask in ("completion_result", "resume_completed_task"):
            feedback = await asyncio.to_thread(
                Prompt.ask, "Press enter to finish or type feedback", default=""
            )
            if feedback:
                task.submit_response(message.ts, "messageResponse", feedback)
            else:
                task.submit_response(message.ts, "yesButtonClicked")
        elif ask in ("api_req_failed", "mistake_limit_reached", "resume_task"):
            if message.text:
                console.print(f"[yellow]{message.text}[/yellow]")
            feedback = await asyncio.to_thread(Prompt.ask, "Continue? (y/n or guidance)", default="y")
            if feedback.lower() in ("y", "yes"):
                task.submit_response(message.ts, "yesButtonClicked")
            elif feedback.lower() in ("n", "no"):
                task.submit_response(message.ts, "noButtonClicked")
            else:
                task.submit_response(message.ts, "messageResponse", feedback)
        else:
            console.print(f"[cyan]{message.text or ''}[/cyan]")
            answer = await asyncio.to_thread(Prompt.ask, "Answer")
            task.submit_response(message.ts, "messageResponse", answer)

    return handle


def _install_abort_handler(task: Task) -> None:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, task.abort_task)
    except (NotImplementedError, RuntimeError):
        pass


async def _run_task(config: Config, prompt: str, cwd: Path, task_id: str | None = None) -> None:
    handler = create_handler(
        provider=config.model.provider,
        model=config.model.model,
        api_key=config.model.api_key or None,
        base_url=config.model.base_url or None,
        temperature=config.model.temperature,
        max_tokens=config.model.max_tokens,
        native_tools=config.model.native_tools,
        timeout=config.model.request_timeout,
    )
    history_store = TaskHistoryStore(config.storage.history_db)
    task_ref: list[Task] = []
    try:
        if task_id is None:
            number = await history_store.next_number()
        else:
            existing = await history_store.get(task_id)
            number = existing.number if existing else await history_store.next_number()

        task = create_task(
            handler,
            cwd=cwd,
            config=config,
            task_id=task_id,
            task_number=number,
            storage=_storage(config),
            history_store=history_store,
            on_message=_render_message,
            on_user_input_required=_make_prompt_handler(task_ref),
        )
        task_ref.append(task)
        _install_abort_handler(task)

        if task_id is None:
            status = await task.start(prompt)
        else:
            status = await task.resume_from_history()

        usage = task.get_token_usage()
        console.print(
            f"[dim]Task {task.task_id} {status.value} - tokens in {usage.total_tokens_in}, "
            f"out {usage.total_tokens_out}, cost {format_cost(usage.total_cost)}[/dim]"
        )
    finally:
        await history_store.close()
        await handler.close()


@app.command()
def run(
    task: str = typer.Argument(..., help="What the agent should do"),
    cwd: str = typer.Option(".", "--cwd", help="Workspace directory"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Run tools without asking"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start a new task."""
    cfg = _load_config(config, model, verbose)
    if auto_approve:
        cfg.tools.auto_approve = True
    try:
        asyncio.run(_run_task(cfg, task, Path(cwd).expanduser().resolve()))
    except MaxianError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Task ID to resume"),
    cwd: str = typer.Option(".", "--cwd", help="Workspace directory"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Resume a saved task."""
    cfg = _load_config(config, verbose=verbose)
    try:
        asyncio.run(_run_task(cfg, "", Path(cwd).expanduser().resolve(), task_id=task_id))
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except MaxianError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)


async def _list_history(config: Config, limit: int, workspace: str | None) -> None:
    store = TaskHistoryStore(config.storage.history_db)
    try:
        items = await store.list(limit=limit, workspace=workspace)
    finally:
        await store.close()

    if not items:
        console.print("No tasks yet.")
        return

    table = Table(title="Task history")
    table.add_column("#", justify="right")
    table.add_column("ID")
    table.add_column("Task")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for item in items:
        summary = item.task if len(item.task) <= 60 else item.task[:57] + "..."
        table.add_row(
            str(item.number),
            item.id,
            summary,
            f"{item.tokens_in}/{item.tokens_out}",
            format_cost(item.total_cost),
        )
    console.print(table)


@app.command()
def history(
    limit: int = typer.Option(20, "-n", "--limit", help="Number of tasks"),
    workspace: str = typer.Option("", "--workspace", help="Only tasks from this workspace"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List recent tasks."""
    cfg = _load_config(config)
    resolved = str(Path(workspace).expanduser().resolve()) if workspace else None
    asyncio.run(_list_history(cfg, limit, resolved))


async def _show_metrics(config: Config, task_id: str) -> None:
    storage = _storage(config)
    if not storage.task_exists(task_id):
        raise TaskNotFoundError(task_id)
    messages = await storage.read_task_messages(task_id)
    usage = get_api_metrics(combine_api_requests(combine_command_sequences(messages[1:])))

    table = Table(title=f"Task {task_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Tokens in", str(usage.total_tokens_in))
    table.add_row("Tokens out", str(usage.total_tokens_out))
    table.add_row("Cache writes", str(usage.total_cache_writes or 0))
    table.add_row("Cache reads", str(usage.total_cache_reads or 0))
    table.add_row("Context tokens", str(usage.context_tokens))
    table.add_row("Cost", format_cost(usage.total_cost))
    table.add_row("Size on disk", f"{storage.directory_size(task_id)} bytes")
    console.print(table)


@app.command()
def metrics(
    task_id: str = typer.Argument(..., help="Task ID"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show token usage and cost of a saved task."""
    cfg = _load_config(config)
    try:
        asyncio.run(_show_metrics(cfg, task_id))
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


async def _delete_task(config: Config, task_id: str) -> bool:
    storage = _storage(config)
    store = TaskHistoryStore(config.storage.history_db)
    try:
        removed_files = await storage.delete_task(task_id)
        removed_row = await store.delete(task_id)
    finally:
        await store.close()
    return removed_files or removed_row


@app.command()
def delete(
    task_id: str = typer.Argument(..., help="Task ID"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Delete a saved task and its history entry."""
    cfg = _load_config(config)
    if not asyncio.run(_delete_task(cfg, task_id)):
        console.print(f"[red]Task not found: {task_id}[/red]")
        raise typer.Exit(code=1)
    console.print(f"Deleted task {task_id}")


@app.command()
def version() -> None:
    """Show version information."""
    from maxian import __version__
    console.print(f"Maxian v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
