"""
Rich rendering of session events for the terminal.
"""

from __future__ import annotations

from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gakuon.keyboard import CONTROLS
from gakuon.session import EventKind, SessionEvent

EASE_LABELS = {1: "Again", 2: "Hard", 3: "Good", 4: "Easy"}


def controls_table() -> Table:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Key", style="bold cyan")
    table.add_column("Action", style="dim")
    for keys, description in CONTROLS:
        table.add_row(keys, description)
    return table


def card_panel(event: SessionEvent) -> Panel:
    """Card i/N with every response field in declaration order."""
    body = Text()
    content = event.result.content if event.result else {}
    for position, (name, spec) in enumerate(event.deck.response_fields.items(), start=1):
        value = content.get(name)
        body.append(f"{position}. {spec.description}: ", style="bold")
        if value:
            body.append(f"{value}\n")
        else:
            body.append("[Missing Content]\n", style="red")

    parts: list = [body]
    if event.result and not event.result.is_new_content:
        parts.append(Text("(Using cached content. Press G to regenerate)", style="dim italic"))
    parts.append(controls_table())

    return Panel(
        Group(*parts),
        title=f"[bold cyan]Card {event.index + 1}/{event.total}[/bold cyan]",
        subtitle=f"[dim]{event.item.deck_name}[/dim]",
        border_style="cyan",
        box=box.HEAVY,
        padding=(1, 2),
    )


class SessionRenderer:
    """Event listener that prints session progress to a rich console."""

    def __init__(self, console: Console | None = None, clear: bool = True) -> None:
        self.console = console or Console()
        self.clear = clear

    def __call__(self, event: SessionEvent) -> None:
        kind = event.kind

        if kind is EventKind.SESSION_STARTED:
            self.console.print(f"[bold]Reviewing {event.total} due cards[/bold]")
        elif kind is EventKind.CARD_LOADING:
            self.console.print(f"[dim]Loading card {event.index + 1}/{event.total}...[/dim]")
        elif kind is EventKind.CARD_PRESENTED:
            if self.clear:
                self.console.clear()
            self.console.print(card_panel(event))
        elif kind is EventKind.PLAYING:
            spec = event.deck.response_fields.get(event.audio_field) if event.deck else None
            label = spec.description if spec else event.audio_field
            self.console.print(f"[dim]Playing {label}...[/dim]")
        elif kind is EventKind.REGENERATING:
            self.console.print(f"[yellow]{event.message}[/yellow]")
        elif kind is EventKind.CARD_RATED:
            self.console.print(f"[green]Rated {EASE_LABELS.get(event.ease, event.ease)}[/green]")
        elif kind is EventKind.RATING_FAILED:
            self.console.print(f"[red]Rating failed:[/red] {event.message}")
        elif kind is EventKind.GENERATION_FAILED:
            self.console.print(f"[red]Error:[/red] {event.message}")
            self.console.print("[dim]Press G to retry, N to skip, Q to quit[/dim]")
        elif kind is EventKind.CARD_SKIPPED:
            self.console.print(f"[yellow]Skipped:[/yellow] {event.message}")
        elif kind is EventKind.NOTICE:
            self.console.print(f"[yellow]{event.message}[/yellow]")
        elif kind is EventKind.SESSION_FINISHED:
            if event.message == "completed":
                self.console.print("\n[bold green]All cards reviewed![/bold green]")
            else:
                self.console.print("\n[dim]Session ended[/dim]")
