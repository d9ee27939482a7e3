"""Derives the keyword/embedding fingerprint of a scan's text."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from app.clients.ai_gateway import AIGatewayError
from app.models.scan import Fingerprint
from app.services.scan.errors import InvalidRequestError, ServiceUnavailableError
from app.services.scan.parsing import parse_json_object

logger = logging.getLogger(__name__)

MIN_KEYWORDS = 3
MAX_KEYWORDS = 5

KEYWORD_SYSTEM_PROMPT = (
    "You extract search keywords from descriptions of inventions and business ideas. "
    'Respond with JSON only: {"keywords": ["term", ...]}.'
)


class TextModelClient(Protocol):
    """Subset of AI gateway behavior used for fingerprinting."""

    async def complete_json(self, *, system_prompt: str, user_prompt: str) -> str:
        ...

    async def embed(self, text: str) -> list[float]:
        ...


class FingerprintExtractor:
    """Turns raw scan text into keywords and, optionally, an embedding."""

    def __init__(self, client: TextModelClient, *, timeout_seconds: float = 20.0) -> None:
        self._client = client
        self._timeout = timeout_seconds

    async def extract(
        self,
        text: str,
        *,
        include_embedding: bool = False,
        cached_embedding: Sequence[float] | None = None,
    ) -> Fingerprint:
        """Return the fingerprint for ``text``.

        A cached embedding is reused as-is; otherwise one is computed only when
        ``include_embedding`` is set. Any failure raises ServiceUnavailableError.
        """
        if not text or not text.strip():
            raise InvalidRequestError("Scan text must be non-empty.")

        keywords = await self.extract_keywords(text)
        embedding: list[float] | None = None
        if cached_embedding:
            embedding = [float(value) for value in cached_embedding]
        elif include_embedding:
            embedding = await self.embed(text)
        return Fingerprint(keywords=keywords, embedding=embedding)

    async def extract_keywords(self, text: str) -> list[str]:
        user_prompt = (
            f"Extract {MIN_KEYWORDS} to {MAX_KEYWORDS} salient technical keywords "
            f"that best identify this idea.\n\nIdea: {text.strip()}"
        )
        raw = await self._call(
            self._client.complete_json(system_prompt=KEYWORD_SYSTEM_PROMPT, user_prompt=user_prompt),
            operation="keywords",
        )
        try:
            payload = parse_json_object(raw)
        except ValueError as exc:
            logger.error("scan.extractor.parse_error", extra={"preview": raw[:120]})
            raise ServiceUnavailableError("Keyword extraction returned malformed JSON.") from exc

        keywords = _normalize_keywords(payload.get("keywords"))
        if not keywords:
            raise ServiceUnavailableError("Keyword extraction returned no keywords.")
        if len(keywords) < MIN_KEYWORDS:
            logger.warning("scan.extractor.few_keywords", extra={"count": len(keywords)})
        return keywords

    async def embed(self, text: str) -> list[float]:
        """Embed ``text``; raises ServiceUnavailableError on failure."""
        return await self._call(self._client.embed(text), operation="embedding")

    async def _call(self, awaitable, *, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("scan.extractor.timeout", extra={"operation": operation})
            raise ServiceUnavailableError(f"Extraction {operation} request timed out.") from exc
        except AIGatewayError as exc:
            logger.error(
                "scan.extractor.unavailable",
                extra={"operation": operation, "code": exc.code},
            )
            raise ServiceUnavailableError(
                f"Extraction {operation} request failed: {exc}"
            ) from exc


def _normalize_keywords(values: object) -> list[str]:
    if not isinstance(values, list):
        return []
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        term = value.strip()
        if not term or term.lower() in seen:
            continue
        seen.add(term.lower())
        ordered.append(term)
        if len(ordered) == MAX_KEYWORDS:
            break
    return ordered
