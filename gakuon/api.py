"""
FastAPI application for gakuon.

Provides a REST API over the same primitives the CLI session uses:
- Deck listing with due counts
- Ordered due cards for a deck
- Cached content, answering and regeneration per card
- Stored audio files
"""

from __future__ import annotations

import mimetypes
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from gakuon import __version__
from gakuon.anki import AnkiClient
from gakuon.config import Settings, get_settings
from gakuon.errors import (
    AnkiUnavailableError,
    ConfigurationError,
    ContentGenerationError,
)
from gakuon.models import Item
from gakuon.services import ContentManager, OpenAIService

router = APIRouter(prefix="/api")


# ========================================
# Request/Response Models
# ========================================


class DeckResponse(BaseModel):
    name: str
    due_count: int = Field(serialization_alias="dueCount")


class CardSummary(BaseModel):
    """Scheduling attributes of a due card."""

    id: int
    deck_name: str = Field(serialization_alias="deckName")
    queue: str
    due: int
    interval: int
    factor: float
    reps: int
    lapses: int
    fields: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Item) -> CardSummary:
        return cls(
            id=item.id,
            deck_name=item.deck_name,
            queue=item.queue.value,
            due=item.due,
            interval=item.interval_days,
            factor=item.ease_factor,
            reps=item.reps,
            lapses=item.lapses,
            fields=dict(item.fields),
        )


class CardResponse(CardSummary):
    """A card with its cached generated content."""

    content: dict[str, str] = Field(default_factory=dict)
    audio_urls: list[str] = Field(default_factory=list, serialization_alias="audioUrls")


class AnswerRequest(BaseModel):
    ease: int


class AnswerResponse(BaseModel):
    success: bool


class RegenerateResponse(BaseModel):
    content: dict[str, str]
    audio_urls: list[str] = Field(default_factory=list, serialization_alias="audioUrls")


# ========================================
# Dependencies
# ========================================


def get_anki(request: Request) -> AnkiClient:
    return request.app.state.anki


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_content_manager(request: Request) -> ContentManager:
    manager = request.app.state.content_manager
    if manager is None:
        raise HTTPException(status_code=503, detail="OpenAI API key not configured")
    return manager


async def _get_item(anki: AnkiClient, card_id: int) -> Item:
    items = await anki.get_cards_info([card_id])
    if not items:
        raise HTTPException(status_code=404, detail="Card not found")
    return items[0]


# ========================================
# Deck Endpoints
# ========================================


@router.get("/decks", response_model=list[DeckResponse], tags=["Decks"])
async def list_decks(anki: AnkiClient = Depends(get_anki)) -> list[DeckResponse]:
    """All decks with the number of cards due now."""
    decks = []
    for name in await anki.get_deck_names():
        decks.append(DeckResponse(name=name, due_count=len(await anki.find_cards(name))))
    return decks


@router.get("/decks/{name}/cards", response_model=list[CardSummary], tags=["Decks"])
async def list_due_cards(
    name: str,
    anki: AnkiClient = Depends(get_anki),
    settings: Settings = Depends(get_app_settings),
) -> list[CardSummary]:
    """Due cards of a deck in review order."""
    order = settings.card_order
    items = await anki.get_due_items(
        name, order.queue_order, order.review_order, order.new_card_order
    )
    return [CardSummary.from_item(item) for item in items]


# ========================================
# Card Endpoints
# ========================================


@router.get("/cards/{card_id}", response_model=CardResponse, tags=["Cards"])
async def get_card(card_id: int, anki: AnkiClient = Depends(get_anki)) -> CardResponse:
    """A card with whatever content has been generated for it."""
    item = await _get_item(anki, card_id)
    metadata = await anki.get_card_metadata(item)
    summary = CardSummary.from_item(item)
    return CardResponse(
        **summary.model_dump(),
        content=dict(metadata.content) if metadata else {},
        audio_urls=list(metadata.audio.values()) if metadata else [],
    )


@router.post("/cards/{card_id}/answer", response_model=AnswerResponse, tags=["Cards"])
async def answer_card(
    card_id: int,
    body: AnswerRequest,
    anki: AnkiClient = Depends(get_anki),
) -> AnswerResponse:
    """Answer a card with an ease from 1 (Again) to 4 (Easy)."""
    if body.ease not in (1, 2, 3, 4):
        raise HTTPException(status_code=400, detail="Invalid ease value")

    if not await anki.answer_card(card_id, body.ease):
        raise HTTPException(status_code=404, detail="Card not found")
    return AnswerResponse(success=True)


@router.post("/cards/{card_id}/regenerate", response_model=RegenerateResponse, tags=["Cards"])
async def regenerate_card(
    card_id: int,
    anki: AnkiClient = Depends(get_anki),
    settings: Settings = Depends(get_app_settings),
    content_manager: ContentManager = Depends(get_content_manager),
) -> RegenerateResponse:
    """Generate fresh content and audio for a card, replacing the cached copy."""
    item = await _get_item(anki, card_id)
    deck = settings.find_deck_config(item.deck_name)
    if deck is None:
        raise HTTPException(status_code=404, detail="Deck configuration not found")

    result = await content_manager.get_or_generate(item, deck, force_regenerate=True)
    return RegenerateResponse(content=result.content, audio_urls=list(result.audio_refs.values()))


# ========================================
# Media Endpoints
# ========================================


@router.get("/audio/{filename}", tags=["Media"])
async def get_audio(filename: str, anki: AnkiClient = Depends(get_anki)) -> Response:
    """Raw bytes of a stored media file."""
    data = await anki.retrieve_media_file(filename)
    if data is None:
        raise HTTPException(status_code=404, detail="Audio file not found")
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# ========================================
# Application
# ========================================


async def _generation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Content generation failed for {}: {}", request.url.path, exc)
    details: dict[str, Any] = getattr(exc, "details", {})
    return JSONResponse(
        status_code=422,
        content={"error": "Content generation failed", "message": str(exc), "details": details},
    )


async def _anki_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("AnkiConnect unavailable: {}", exc)
    return JSONResponse(status_code=503, content={"error": str(exc)})


def create_app(
    settings: Settings | None = None,
    anki: AnkiClient | None = None,
    content_manager: ContentManager | None = None,
) -> FastAPI:
    """
    Build the API application.

    Clients passed in are used as-is and not closed on shutdown.
    """
    settings = settings or get_settings()
    owns_anki = anki is None
    anki = anki or AnkiClient(settings.anki_host, timeout=settings.anki_timeout)
    if content_manager is None and settings.has_openai_configured():
        content_manager = ContentManager(
            anki,
            OpenAIService.from_settings(settings),
            tts_voice=settings.tts_voice,
            max_attempts=settings.max_generation_attempts,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting gakuon API (AnkiConnect at {})", settings.anki_host)
        yield
        if owns_anki:
            await anki.close()
        logger.info("Shut down gakuon API")

    app = FastAPI(
        title="gakuon",
        description="Review Anki cards with AI-generated sentences and audio.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ConfigurationError, _generation_error_handler)
    app.add_exception_handler(ContentGenerationError, _generation_error_handler)
    app.add_exception_handler(AnkiUnavailableError, _anki_unavailable_handler)

    app.state.settings = settings
    app.state.anki = anki
    app.state.content_manager = content_manager
    app.include_router(router)
    return app
