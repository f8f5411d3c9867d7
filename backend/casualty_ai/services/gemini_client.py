"""
Shared Gemini client for evidence analysis.

One configuration-driven instance is built at startup and handed to every
component that needs the model, so credentials and generation settings live
in one place. Media is fetched over HTTP and attached inline.
"""
import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from google import genai
from google.genai import types

from casualty_ai.config import Settings, settings as default_settings
from casualty_ai.errors import UpstreamUnavailableError
from casualty_ai.services.retry_utils import retry_with_backoff

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "flac": "audio/flac",
    "pdf": "application/pdf",
}


def guess_mime_type(locator: str) -> str:
    """MIME type from the locator's file extension."""
    path = urlparse(locator).path or locator
    extension = os.path.splitext(path)[1].lstrip(".").lower()
    return MIME_TYPES.get(extension, "application/octet-stream")


def estimate_tokens(text: str) -> int:
    """Estimate token count: ~4 chars per token for English text."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass
class MediaPayload:
    data: bytes
    mime_type: str


@dataclass
class GenerationResult:
    text: str
    tokens_used: int
    model: str
    latency_ms: int


class GeminiClient:
    """Fetches evidence media and calls the Gemini model with bounded retries."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        genai_client: Optional[Any] = None,
    ):
        self.settings = config or default_settings
        self.model_name = self.settings.gemini_model
        self.client = genai_client
        self._http_client = http_client
        if self.client is None:
            self._initialize_model()

    def _log_structured(self, event: str, **kwargs):
        """Emit structured log entry."""
        entry = {"event": event, "model": self.model_name, **kwargs}
        logger.info(json.dumps(entry, default=str))

    def _initialize_model(self):
        """Initialize the Gemini client from settings."""
        try:
            if self.settings.google_api_key:
                self.client = genai.Client(api_key=self.settings.google_api_key)
                self._log_structured("model_client_initialized")
            else:
                logger.warning("GOOGLE_API_KEY not set, model client not initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Gemini client: {e}")
            self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def fetch_media(self, locator: str) -> MediaPayload:
        """Download evidence media. Raises UpstreamUnavailableError on any failure.

        The body is streamed so oversized media is rejected without buffering it.
        """
        timeout = self.settings.media_fetch_timeout_seconds
        try:
            if self._http_client is not None:
                return await self._download(self._http_client, locator, timeout)
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                return await self._download(client, locator, timeout)
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch media from {locator}: {e}")
            raise UpstreamUnavailableError(f"Failed to fetch media from URL: {locator}") from e

    async def _download(self, client: httpx.AsyncClient, locator: str, timeout: float) -> MediaPayload:
        limit = self.settings.max_media_bytes
        async with client.stream("GET", locator, timeout=timeout) as response:
            response.raise_for_status()
            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > limit:
                raise self._too_large(locator, int(declared))

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > limit:
                    raise self._too_large(locator, received)
                chunks.append(chunk)

            content_type = response.headers.get("content-type", "").split(";")[0].strip()

        if not content_type or content_type == "application/octet-stream":
            content_type = guess_mime_type(locator)
        return MediaPayload(data=b"".join(chunks), mime_type=content_type)

    def _too_large(self, locator: str, size: int) -> UpstreamUnavailableError:
        logger.warning(f"Rejected media at {locator}: {size} bytes exceeds limit")
        return UpstreamUnavailableError(
            f"Media at {locator} is over the {self.settings.max_media_bytes} byte limit "
            f"({size} bytes read or declared)"
        )

    async def generate(self, prompt: str, media: Optional[MediaPayload] = None) -> GenerationResult:
        """Call the model with a prompt and optional inline media."""
        if not self.client:
            raise UpstreamUnavailableError("Model client unavailable: GOOGLE_API_KEY not set")

        parts = [types.Part.from_text(text=prompt)]
        if media is not None:
            parts.append(types.Part.from_bytes(data=media.data, mime_type=media.mime_type))

        config = types.GenerateContentConfig(
            temperature=self.settings.gemini_temperature,
            top_p=self.settings.gemini_top_p,
            max_output_tokens=self.settings.gemini_max_output_tokens,
        )

        async def _call():
            return await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model_name,
                contents=parts,
                config=config,
            )

        start_time = time.perf_counter()
        try:
            response = await retry_with_backoff(
                _call,
                max_retries=self.settings.gemini_max_retries,
                timeout=self.settings.gemini_timeout_seconds,
            )
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise UpstreamUnavailableError(
                f"AI analysis timed out after {self.settings.gemini_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise UpstreamUnavailableError(f"AI analysis failed: {e}") from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        text = self._response_text(response)
        tokens_used = self._tokens_used(response) or estimate_tokens(prompt + text)

        self._log_structured(
            "model_call_completed",
            latency_ms=latency_ms,
            tokens_used=tokens_used,
            has_media=media is not None,
        )
        return GenerationResult(
            text=text,
            tokens_used=tokens_used,
            model=self.model_name,
            latency_ms=latency_ms,
        )

    @staticmethod
    def _response_text(response: Any) -> str:
        try:
            return getattr(response, "text", None) or ""
        except ValueError as e:
            # Blocked candidates raise instead of returning text
            logger.warning(f"Model response carried no text: {e}")
            return ""

    @staticmethod
    def _tokens_used(response: Any) -> int:
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return 0
        total = getattr(usage, "total_token_count", None)
        if total:
            return int(total)
        prompt_tokens = getattr(usage, "prompt_token_count", 0) or 0
        output_tokens = getattr(usage, "candidates_token_count", 0) or 0
        return int(prompt_tokens + output_tokens)
