"""Responder stage - one chat completion per transcript, never raises"""
from __future__ import annotations
import asyncio
import logging
from typing import Any
from openai import AsyncOpenAI
from .config import Settings
from .errors import CompletionServiceError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a warm, human-sounding voice assistant on a live call.
Keep replies short, friendly and easy to follow when spoken aloud.
Sound like a real person: calm, supportive, never robotic.
Use simple words unless the caller uses technical terms.
If the request is unclear, ask one short clarifying question.
Your reply will be read out by text-to-speech, so avoid lists, markdown and emoji.
Never mention that you are an AI unless directly asked."""

FALLBACK_REPLY = "I'm sorry, something went wrong while generating my response."


class Responder:
    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        self.client = client
        if self.client is None and settings.openai_api_key:
            self.client = AsyncOpenAI(api_key=settings.openai_api_key)
            logger.info("OpenAI client initialized (model %s)", settings.openai_model)
        elif self.client is None:
            logger.warning("No OpenAI API key provided, every reply will be the fallback")

    async def _complete(self, transcript: str) -> str:
        if self.client is None:
            raise CompletionServiceError("completion service not configured")
        resp = await self.client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": transcript},
            ],
            max_tokens=self.settings.openai_max_tokens,
            temperature=self.settings.openai_temperature,
        )
        if not resp.choices:
            raise CompletionServiceError("completion returned no choices")
        text = (resp.choices[0].message.content or "").strip()
        if not text:
            raise CompletionServiceError("completion returned empty text")
        return text

    async def respond(self, transcript: str) -> str:
        try:
            return await asyncio.wait_for(self._complete(transcript), self.settings.llm_timeout_s)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.error("LLM call timed out after %ss", self.settings.llm_timeout_s)
        except Exception as e:
            logger.error("LLM call failed: %s", e)
        return FALLBACK_REPLY

    async def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
