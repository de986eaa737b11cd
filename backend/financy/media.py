"""Reduce voice notes and receipt photos to transaction candidates."""

from __future__ import annotations

import base64
import logging
from decimal import Decimal

from openai import AsyncOpenAI, OpenAIError

from .config import Settings, get_settings
from .domain.entities import ParsedTransaction
from .exceptions import ExtractionError
from .extraction import ModelStrategy, TransactionExtractor, validate_completion
from .prompts import SYSTEM_PROMPT, build_receipt_prompt

logger = logging.getLogger(__name__)

PLACEHOLDER_CONFIDENCE = 0.3
PLACEHOLDER_DESCRIPTION = "Receipt (needs review)"
RECEIPT_TEXT = "[receipt photo]"


class MediaProcessor:
    def __init__(
        self,
        extractor: TransactionExtractor,
        settings: Settings | None = None,
        transcription_client: AsyncOpenAI | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.extractor = extractor
        self._transcription_client = transcription_client

    def _get_transcription_client(self) -> AsyncOpenAI | None:
        if self._transcription_client is not None:
            return self._transcription_client
        if not self.settings.openai_api_key:
            return None
        self._transcription_client = AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            max_retries=0,
            timeout=self.settings.media_model_timeout,
        )
        return self._transcription_client

    async def aclose(self) -> None:
        if self._transcription_client is not None:
            await self._transcription_client.close()
            self._transcription_client = None

    async def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str | None:
        """Return the spoken text, or ``None`` when transcription is unavailable."""
        client = self._get_transcription_client()
        if client is None:
            logger.warning("OpenAI API key not configured. Voice processing disabled.")
            return None
        try:
            result = await client.audio.transcriptions.create(
                model=self.settings.transcription_model,
                file=(filename, audio),
                timeout=self.settings.media_model_timeout,
            )
        except OpenAIError as exc:
            logger.warning("Voice transcription failed: %s", exc)
            return None
        text = (getattr(result, "text", "") or "").strip()
        if not text:
            logger.warning("Voice transcription returned no text")
            return None
        logger.info("Transcribed voice message: %s", text[:120])
        return text

    async def extract_receipt(
        self,
        image: bytes,
        default_currency: str,
        mime_type: str = "image/jpeg",
    ) -> list[ParsedTransaction]:
        """Read a receipt photo with the vision model.

        When the model is unavailable or its answer fails validation, a single
        low-confidence placeholder flagged ``needs_review`` is returned instead.
        """
        transactions = await self._vision_candidates(image, default_currency, mime_type)
        if not transactions:
            transactions = [placeholder_transaction(default_currency)]
        return await self.extractor.register(transactions, default_currency, RECEIPT_TEXT)

    async def _vision_candidates(
        self, image: bytes, default_currency: str, mime_type: str
    ) -> list[ParsedTransaction]:
        client = self.extractor.client
        if client is None:
            logger.warning("OpenRouter API key not configured. Photo processing disabled.")
            return []

        supported = self.settings.supported_currencies
        strategy = ModelStrategy(
            client,
            self.settings.vision_model,
            "vision",
            self.settings.media_model_timeout,
            supported,
        )
        encoded = base64.b64encode(image).decode("ascii")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_receipt_prompt(default_currency, supported)},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                ],
            },
        ]
        try:
            content = await strategy.complete(messages, max_tokens=400)
        except ExtractionError as exc:
            logger.warning("Receipt extraction failed: %s", exc)
            return []

        outcome = validate_completion(content, supported, source=strategy.name)
        if not outcome.ok:
            logger.warning("Receipt extraction produced no valid result: %s", outcome.reason)
            return []
        return outcome.transactions


def placeholder_transaction(currency: str) -> ParsedTransaction:
    return ParsedTransaction(
        amount=Decimal("0"),
        currency=currency,
        type="expense",
        description=PLACEHOLDER_DESCRIPTION,
        confidence=PLACEHOLDER_CONFIDENCE,
        needs_review=True,
    )
