"""
Typer CLI for gakuon.

Commands:
    gakuon learn            - Review due cards with generated audio
    gakuon test             - Generate content for random cards without storing it
    gakuon decks            - List decks with due counts
    gakuon init             - Draft a deck config from sample cards
    gakuon serve            - Run the REST API server

Usage:
    gakuon learn --deck "Japanese::Vocabulary"
    gakuon test --deck "Japanese::Vocabulary" --samples 3
    gakuon init --deck "Japanese::Vocabulary" --write
    gakuon serve --port 3000
"""

from __future__ import annotations

import asyncio
import os
import random
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import openai
import typer
from loguru import logger
from rich import box
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.prompt import IntPrompt
from rich.syntax import Syntax
from rich.table import Table

from gakuon.anki import AnkiClient
from gakuon.config import DeckConfig, Settings, append_deck_config, config_path, get_settings
from gakuon.display import SessionRenderer
from gakuon.errors import (
    AnkiConnectError,
    AnkiUnavailableError,
    ConfigurationError,
    ContentGenerationError,
)
from gakuon.keyboard import KeyboardListener
from gakuon.log import configure_logging
from gakuon.services import AudioPlayer, ContentManager, OpenAIService
from gakuon.services.deck_init import DEFAULT_SAMPLE_SIZE, draft_deck_config
from gakuon.session import SessionOutcome, start_session

app = typer.Typer(
    help="gakuon: review Anki cards with AI-generated sentences and audio",
    no_args_is_help=True,
)

console = Console()

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Config file (default: ~/.gakuon/config.toml)",
    dir_okay=False,
)
DEBUG_OPTION = typer.Option(False, "--debug", help="Show debug logging")


# ========================================
# Shared helpers
# ========================================


def _load_settings(config: Path | None, debug: bool) -> Settings:
    """Load settings (optionally from a custom file) and configure logging."""
    if config is not None:
        os.environ["GAKUON_CONFIG_FILE"] = str(config)
        get_settings.cache_clear()

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        rprint(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    configure_logging(settings.log_level, settings.log_file, debug=debug)
    logger.debug("Loaded settings from {}", config_path())
    return settings


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a command coroutine; unreachable Anki and bad config exit with code 1."""
    try:
        return asyncio.run(coro)
    except (AnkiUnavailableError, ConfigurationError) as exc:
        rprint(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


async def _connect(settings: Settings) -> AnkiClient:
    anki = AnkiClient(settings.anki_host, timeout=settings.anki_timeout)
    if not await anki.check_connection():
        await anki.close()
        raise AnkiUnavailableError(
            f"Cannot reach AnkiConnect at {settings.anki_host}. "
            "Start Anki and make sure the AnkiConnect add-on is installed."
        )
    return anki


def _content_manager(settings: Settings, anki: AnkiClient) -> ContentManager:
    if not settings.has_openai_configured():
        raise ConfigurationError(
            "OpenAI API key not set. Add openai_api_key to the config file "
            "or set OPENAI_API_KEY."
        )
    return ContentManager(
        anki,
        OpenAIService.from_settings(settings),
        tts_voice=settings.tts_voice,
        max_attempts=settings.max_generation_attempts,
    )


async def _sync(anki: AnkiClient) -> None:
    """Sync with AnkiWeb; failures are reported but never fail the command."""
    try:
        await anki.sync()
    except AnkiConnectError as exc:
        logger.warning("AnkiWeb sync failed: {}", exc)
        rprint(f"[yellow]AnkiWeb sync failed:[/yellow] {exc}")


async def _choose_deck(anki: AnkiClient) -> str:
    names = sorted(await anki.get_deck_names())
    if not names:
        raise ConfigurationError("No decks found in Anki")

    table = Table(title="Decks", box=box.SIMPLE)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Deck")
    for position, name in enumerate(names, start=1):
        table.add_row(str(position), name)
    console.print(table)

    choice = IntPrompt.ask(
        "Select a deck",
        choices=[str(position) for position in range(1, len(names) + 1)],
        show_choices=False,
    )
    return names[choice - 1]


# ========================================
# Commands
# ========================================


@app.command()
def learn(
    deck: str | None = typer.Option(None, "--deck", "-d", help="Deck to review (default: from config)"),
    config: Path | None = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """
    Start an interactive review session.

    Content for upcoming cards is generated in the background while you
    review. Press Q to quit at any time.
    """
    settings = _load_settings(config, debug)
    outcome = _run(_learn(settings, deck, debug))
    logger.debug("Session outcome: {}", outcome)


async def _learn(settings: Settings, deck_name: str | None, debug: bool) -> SessionOutcome:
    anki = await _connect(settings)
    player = AudioPlayer(anki, settings.player_command)
    try:
        deck_name = deck_name or settings.default_deck or await _choose_deck(anki)
        content_manager = _content_manager(settings, anki)

        session = await start_session(
            deck_name,
            anki=anki,
            content_manager=content_manager,
            player=player,
            decks=settings.decks,
            card_order=settings.card_order,
            window=settings.prefetch_window,
            on_event=SessionRenderer(console, clear=not debug),
        )
        if not session.total:
            rprint(f"[green]No cards due in '{deck_name}'[/green]")
            return SessionOutcome.COMPLETED

        listener = KeyboardListener(session.submit, asyncio.get_running_loop())
        listener.start()
        try:
            outcome = await session.run()
        finally:
            listener.stop()

        if settings.sync_after_review:
            await _sync(anki)
        return outcome
    finally:
        player.cleanup()
        await anki.close()


@app.command("test")
def test_deck(
    deck: str | None = typer.Option(None, "--deck", "-d", help="Deck to sample (default: from config)"),
    samples: int = typer.Option(3, "--samples", "-n", min=1, help="Number of random cards"),
    config: Path | None = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """
    Generate content for random cards of a deck without storing anything.

    Use this to tune a deck's prompt and response fields.
    """
    settings = _load_settings(config, debug)
    _run(_test_deck(settings, deck, samples))


async def _test_deck(
    settings: Settings,
    deck_name: str | None,
    samples: int,
    rng: random.Random | None = None,
) -> int:
    """Returns the number of cards that produced content."""
    rng = rng or random.Random()
    async with await _connect(settings) as anki:
        deck_name = deck_name or settings.default_deck or await _choose_deck(anki)
        content_manager = _content_manager(settings, anki)

        card_ids = await anki.find_cards(deck_name, due_only=False)
        if not card_ids:
            rprint(f"[yellow]No cards found in '{deck_name}'[/yellow]")
            return 0

        chosen = rng.sample(card_ids, min(samples, len(card_ids)))
        generated = 0
        for item in await anki.get_cards_info(chosen):
            deck = settings.find_deck_config(item.deck_name)
            if deck is None:
                rprint(f"[yellow]No configuration found for deck: {item.deck_name}[/yellow]")
                continue

            try:
                content = await content_manager.generate_content(item, deck)
            except (ConfigurationError, ContentGenerationError) as exc:
                rprint(f"[red]Card {item.id}:[/red] {exc}")
                continue

            table = Table(box=box.SIMPLE, show_header=False)
            table.add_column("Field", style="bold cyan")
            table.add_column("Content")
            for name, spec in deck.response_fields.items():
                table.add_row(spec.description, content.get(name) or "[red][Missing Content][/red]")
            console.print(Panel(table, title=f"Card {item.id} ({deck.name})", border_style="cyan"))
            generated += 1

        return generated


@app.command()
def decks(
    config: Path | None = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """List Anki decks with their due card counts."""
    settings = _load_settings(config, debug)
    rows = _run(_deck_counts(settings))

    table = Table(title="Anki Decks")
    table.add_column("Deck", style="cyan")
    table.add_column("Due", justify="right")
    table.add_column("Config", style="dim")
    for name, due in rows:
        deck = settings.find_deck_config(name)
        if deck is None:
            label = "-"
        elif deck.configuration_error() is not None:
            label = f"[red]{deck.name} (invalid)[/red]"
        else:
            label = deck.name
        table.add_row(name, str(due), label)
    console.print(table)


async def _deck_counts(settings: Settings) -> list[tuple[str, int]]:
    async with await _connect(settings) as anki:
        rows = []
        for name in sorted(await anki.get_deck_names()):
            rows.append((name, len(await anki.find_cards(name))))
        return rows


@app.command()
def init(
    deck: str | None = typer.Option(None, "--deck", "-d", help="Deck to configure (default: choose interactively)"),
    samples: int = typer.Option(DEFAULT_SAMPLE_SIZE, "--samples", "-n", min=1, help="Sample cards shown to the model"),
    write: bool = typer.Option(False, "--write", "-W", help="Append the generated config to the config file"),
    config: Path | None = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """
    Draft a deck configuration from sample cards with the chat model.

    The draft is printed; with --write it is appended to the config file
    after the current file is backed up.
    """
    settings = _load_settings(config, debug)
    try:
        _run(_init_deck(settings, deck, samples, write))
    except openai.OpenAIError as exc:
        rprint(f"[red]Error:[/red] Deck config generation failed: {exc}")
        raise typer.Exit(code=1) from exc


async def _init_deck(settings: Settings, deck_name: str | None, samples: int, write: bool) -> DeckConfig:
    if not settings.has_openai_configured():
        raise ConfigurationError(
            "OpenAI API key not set. Add openai_api_key to the config file "
            "or set OPENAI_API_KEY."
        )
    async with await _connect(settings) as anki:
        deck_name = deck_name or await _choose_deck(anki)
        rprint("\nAnalyzing deck structure and generating configuration...")
        text, deck = await draft_deck_config(
            anki,
            OpenAIService.from_settings(settings),
            deck_name,
            model=settings.init_model,
            sample_size=samples,
        )

    console.print(Panel(Syntax(text, "toml"), title=f"Deck config: {deck.name}", border_style="cyan"))
    if write:
        path = config_path()
        backup = append_deck_config(path, text)
        if backup is not None:
            rprint(f"[dim]Previous config saved as {backup}[/dim]")
        rprint(f"[green]Configuration saved to {path}[/green]")
    else:
        rprint("\nRun again with --write to save it, or add it to the config file by hand.")
    return deck


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default: from config)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port (default: 3000)"),
    config: Path | None = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Run the REST API server."""
    import uvicorn

    from gakuon.api import create_app

    settings = _load_settings(config, debug)
    host = host or settings.api_host
    port = port or settings.api_port

    rprint(f"[green]Serving gakuon API on http://{host}:{port}[/green]")
    uvicorn.run(
        create_app(settings),
        host=host,
        port=port,
        log_level="debug" if debug else "info",
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
