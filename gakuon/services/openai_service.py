"""
OpenAI connector for card text and speech.

Two narrow calls: structured JSON text for a filled prompt, and speech
bytes for a piece of text. Errors from the SDK propagate unchanged; the
content manager decides what is retried.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from openai import AsyncOpenAI

from gakuon.config import ResponseField, Settings

DEFAULT_CHAT_MODEL = "gpt-4o"
DEFAULT_TTS_MODEL = "tts-1"


def build_response_format(response_fields: dict[str, ResponseField]) -> str:
    """Instruction block telling the model which JSON keys to return."""
    lines = [
        f"- {name}: {spec.description} ({'required' if spec.required else 'optional'})"
        for name, spec in response_fields.items()
    ]
    return "Format the response as a JSON object with the following properties:\n" + "\n".join(lines)


class OpenAIService:
    """Text and speech generation through an OpenAI-compatible API."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        chat_model: str = DEFAULT_CHAT_MODEL,
        tts_model: str = DEFAULT_TTS_MODEL,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.chat_model = chat_model
        self.tts_model = tts_model
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIService:
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            chat_model=settings.chat_model,
            tts_model=settings.tts_model,
        )

    async def generate_text(
        self,
        prompt: str,
        response_fields: dict[str, ResponseField],
    ) -> dict[str, str]:
        """
        Ask the chat model for one JSON object of response fields.

        Null values are dropped and non-string values are stringified,
        so the caller only ever sees field -> text.

        Raises:
            openai.OpenAIError: On transport or API failure
            ValueError: If the reply is not a JSON object
        """
        full_prompt = f"{prompt}\n\n{build_response_format(response_fields)}"
        logger.debug("Chat prompt ({}):\n{}", self.chat_model, full_prompt)

        completion = await self.client.chat.completions.create(
            model=self.chat_model,
            messages=[{"role": "user", "content": full_prompt}],
            response_format={"type": "json_object"},
        )
        raw = completion.choices[0].message.content or ""
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        return {
            str(key): value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
            for key, value in data.items()
            if value is not None
        }

    async def synthesize_audio(self, text: str, voice: str) -> bytes:
        """Speech for text as encoded audio bytes (mp3)."""
        logger.debug("Synthesizing {} chars with voice {}", len(text), voice)
        response = await self.client.audio.speech.create(
            model=self.tts_model,
            voice=voice,
            input=text,
        )
        return response.content

    async def complete(self, prompt: str, model: str | None = None) -> str:
        """Plain chat completion text, used for drafting deck configs."""
        model = model or self.chat_model
        logger.debug("Completion prompt ({}):\n{}", model, prompt)
        completion = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
        )
        return completion.choices[0].message.content or ""
