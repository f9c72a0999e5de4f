"""Command-line entry point for Knowledge Companion."""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.prompt import Prompt
from rich.table import Table

from knowledge_companion.agent import ConversationAgent, create_agent
from knowledge_companion.config import Config, set_config
from knowledge_companion.events import CHAT_STREAM
from knowledge_companion.exceptions import KnowledgeCompanionError
from knowledge_companion.knowledge_store import KnowledgeStore, create_knowledge_store
from knowledge_companion.logging import configure_logging, get_logger
from knowledge_companion.wama import MemoryScorer

log = get_logger(__name__)
console = Console()

cli = typer.Typer(help="Knowledge Companion - study guide agent with tools and long-term memory")

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def _load_config(
    config: str = "",
    model: str = "",
    provider: str = "",
    student: bool = False,
    verbose: bool = False,
) -> Config:
    """Load configuration, apply CLI overrides and install it globally."""
    if verbose:
        os.environ["KC_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            console.print(f"[yellow]Failed to load config {config}: {e}. Using defaults.[/yellow]")
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if student:
        cfg.mode.mode = "student"
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging()
    return cfg


def _knowledge_store(cfg: Config) -> KnowledgeStore | None:
    """Knowledge store when a vector database is configured."""
    if not cfg.knowledge_store.qdrant_base_url():
        return None
    return create_knowledge_store(cfg.knowledge_store, MemoryScorer(cfg.wama))


def _stream_printer(event: str, payload: Any) -> None:
    if event != CHAT_STREAM or not isinstance(payload, dict):
        return
    if payload.get("content"):
        console.print(payload["content"], end="", markup=False, highlight=False)
    for call in payload.get("tool_calls") or []:
        console.print(f"\n[dim]-> {call.get('name')}({call.get('arguments')})[/dim]")
    if payload.get("done"):
        console.print()


async def _chat_loop(agent: ConversationAgent, streaming: bool) -> None:
    console.print("[bold cyan]Knowledge Companion[/bold cyan] - type /exit to quit, /clear to reset.")
    while True:
        try:
            text = Prompt.ask("[bold green]you[/bold green]")
        except (EOFError, KeyboardInterrupt):
            console.print()
            return
        text = text.strip()
        if not text:
            continue
        if text.lower() in EXIT_COMMANDS:
            return
        if text == "/clear":
            agent.clear_history()
            console.print("[dim]History cleared.[/dim]")
            continue

        agent.add_user_message(text)
        try:
            if streaming:
                await agent.chat_stream()
            else:
                response = await agent.chat()
                console.print(Markdown(response.content or ""))
        except KnowledgeCompanionError as e:
            log.error("Chat turn failed", error=str(e))
            console.print(f"[red]{e}[/red]")


@cli.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    student: bool = typer.Option(False, "--student", help="Run in student mode"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Disable streaming"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive conversation."""
    cfg = _load_config(config, model, provider, student, verbose)
    events = None if no_stream else _stream_printer
    agent = create_agent(cfg, knowledge_store=_knowledge_store(cfg), events=events)
    try:
        asyncio.run(_chat_loop(agent, streaming=not no_stream))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)


@cli.command()
def ask(
    task: str = typer.Argument(..., help="Task for the agent to complete"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    student: bool = typer.Option(False, "--student", help="Run in student mode"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one task autonomously and print the answer."""
    cfg = _load_config(config, model, provider, student, verbose)
    agent = create_agent(cfg, knowledge_store=_knowledge_store(cfg))
    try:
        answer = asyncio.run(agent.run_autonomous_task(task))
    except KnowledgeCompanionError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(Markdown(answer))


@cli.command()
def score(
    text: str = typer.Argument(..., help="Content to score"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show the WAMA admission decision for a piece of content."""
    cfg = _load_config(config)
    verdict = MemoryScorer(cfg.wama).evaluate(text)
    table = Table(title="WAMA", show_header=False, box=None)
    table.add_row("Decision", verdict.decision.value)
    table.add_row("Score", f"{verdict.score:.2f}")
    table.add_row("Matched", ", ".join(verdict.matched) or "-")
    console.print(table)


@cli.command()
def tools(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    student: bool = typer.Option(False, "--student", help="Run in student mode"),
) -> None:
    """List the tools the model can currently call."""
    cfg = _load_config(config, student=student)
    agent = create_agent(cfg, knowledge_store=_knowledge_store(cfg))
    table = Table(title="Enabled tools", show_header=True, header_style="bold cyan")
    table.add_column("Tool")
    table.add_column("Description")
    for definition in agent.executor.definitions():
        function = definition["function"]
        table.add_row(function["name"], function["description"])
    console.print(table)


@cli.command()
def version() -> None:
    """Show version information."""
    from knowledge_companion import __version__

    console.print(f"Knowledge Companion v{__version__}")


if __name__ == "__main__":
    cli()
