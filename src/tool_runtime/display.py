# display.py
# All terminal output for the runtime demo.
#
# This module owns presentation entirely. The runtime never formats strings
# for the console; ConsoleTraceMiddleware and run.py call named functions
# here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    — run lifecycle
#   blue    — model calls and responses
#   magenta — capability calls and results
#   yellow  — context condensation
#   green   — final answers
#   red     — errors and aborted runs

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_runtime.models import CapabilityCall, CapabilityResult, FinalAnswer, ModelResponse, RunError

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


def banner(model: str, capabilities: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Tool Runtime[/bold cyan]\n"
            "[dim]Plan → call capabilities → re-plan, with middleware and context condensation[/dim]\n\n"
            f"[dim]Model        :[/dim] [white]{model}[/white]\n"
            f"[dim]Capabilities :[/dim] [white]{', '.join(capabilities) or 'none'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str, index: int | None = None, total: int | None = None) -> None:
    title = "USER PROMPT" if index is None else f"USER PROMPT {index}/{total}"
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label(title, "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def model_call(message_count: int, tokens: int, model: str | None) -> None:
    console.print()
    console.print(
        _label("MODEL", "blue"),
        f"[blue] → {message_count} message(s), ~{tokens} tokens[/blue]",
        f"[dim]{model or 'default model'}[/dim]",
    )


def model_response(response: ModelResponse) -> None:
    if response.content:
        console.print(f"  [blue]Reply[/blue]    [dim white]{_mono(response.content, 200)}[/dim white]")
    if not response.capability_calls:
        return
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    table.add_column("Call", style="dim", width=14)
    table.add_column("Capability", style="bold white", width=16)
    table.add_column("Arguments", style="dim white")
    for call in response.capability_calls:
        table.add_row(_mono(call.call_id, 12), call.capability_name, _mono(json.dumps(call.arguments), 60))
    console.print(table)


# ---------------------------------------------------------------------------
# Capability calls
# ---------------------------------------------------------------------------


def capability_call(call: CapabilityCall) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{call.capability_name}[/bold white]"
        f"  [dim]{json.dumps(call.arguments)}[/dim]"
    )


def capability_result(result: CapabilityResult) -> None:
    if result.is_error:
        console.print(f"  [red]Error[/red]    [white]{_mono(result.content, 140)}[/white]")
    else:
        console.print(f"  [magenta]Observe[/magenta]  [white]{_mono(result.content, 140)}[/white]")


# ---------------------------------------------------------------------------
# Condensation
# ---------------------------------------------------------------------------


def condensed(summary: str, message_count: int) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{_mono(summary, 400)}[/white]",
            title=_label("CONTEXT CONDENSED", "yellow"),
            subtitle=f"[dim]{message_count} message(s) now in context[/dim]",
            border_style="yellow",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


def final_result(answer: FinalAnswer) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{answer.content}[/white]",
            title=_label("RESULT", "green"),
            subtitle=f"[dim]{answer.iterations} iteration(s)[/dim]",
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def run_error(error: RunError) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{error.message}[/bold white]\n"
            f"[dim]{error.kind.value} after {error.iterations} iteration(s); "
            f"{len(error.transcript)} message(s) preserved[/dim]",
            title=_label(f"HALT: {error.status.value.upper()}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
