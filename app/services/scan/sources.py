"""External corpora queried for candidate matches."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from app.clients.ai_gateway import AIGatewayError
from app.clients.patents import PatentRegistryError
from app.models.scan import Candidate, Fingerprint, SourceKind
from app.services.scan.errors import ParseFailureError, SourceDegradedError
from app.services.scan.normalizer import DEFAULT_SNIPPET_LENGTH, normalize_discovery, normalize_patent
from app.services.scan.parsing import parse_json_array

logger = logging.getLogger(__name__)

DISCOVERY_SYSTEM_PROMPT = (
    "You are an innovation research assistant. You only report real, verifiable "
    "innovations that already exist, each with a public source URL. Respond with JSON only."
)

_KIND_DESCRIPTIONS = {
    SourceKind.STARTUP: "startups and commercial products",
    SourceKind.RESEARCH: "academic research projects and publications",
    SourceKind.NEWS: "innovations reported in recent news coverage",
    SourceKind.IDESTRIM: "community-submitted inventions and prototypes",
    SourceKind.PATENT: "patented inventions",
}

_ITEM_SCHEMA = {
    "name": "string",
    "owner": "string (company, lab or inventor)",
    "country": "string",
    "legal_status": "string (e.g. active, acquired, published)",
    "snippet": "string, at most 2 sentences",
    "url": "string, absolute https URL of the source",
    "founder_name": "string or null",
    "founder_country": "string or null",
    "founder_social_media": {"linkedin": "url or null", "twitter": "url or null"},
}


class PatentSearchClient(Protocol):
    """Subset of patent registry client behavior used by the source."""

    async def search(self, *, keywords: Sequence[str], limit: int) -> list[dict[str, Any]]:
        ...


class ChatClient(Protocol):
    """Subset of AI gateway behavior used by discovery sources."""

    async def complete_json(self, *, system_prompt: str, user_prompt: str) -> str:
        ...


class CandidateSource(Protocol):
    """One external corpus queried with a fingerprint."""

    name: str

    async def fetch(self, fingerprint: Fingerprint, *, limit: int) -> list[Candidate]:
        ...


class PatentRegistrySource:
    """Structured patent registry lookup."""

    def __init__(
        self,
        client: PatentSearchClient,
        *,
        name: str = "patent_registry",
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
    ) -> None:
        self.name = name
        self._client = client
        self._snippet_length = snippet_length

    async def fetch(self, fingerprint: Fingerprint, *, limit: int) -> list[Candidate]:
        if not fingerprint.keywords:
            return []
        try:
            hits = await self._client.search(keywords=fingerprint.keywords, limit=limit)
        except PatentRegistryError as exc:
            raise SourceDegradedError(f"{self.name}: {exc}", code=exc.code) from exc
        candidates = [normalize_patent(hit, snippet_length=self._snippet_length) for hit in hits[:limit]]
        return [candidate for candidate in candidates if candidate.url]


class AIDiscoverySource:
    """AI-mediated discovery of existing innovations of one kind."""

    def __init__(
        self,
        client: ChatClient,
        *,
        kind: SourceKind,
        name: str | None = None,
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
    ) -> None:
        self.name = name or f"ai_{kind.value}"
        self.kind = kind
        self._client = client
        self._snippet_length = snippet_length

    async def fetch(self, fingerprint: Fingerprint, *, limit: int) -> list[Candidate]:
        if not fingerprint.keywords:
            return []
        try:
            raw = await self._client.complete_json(
                system_prompt=DISCOVERY_SYSTEM_PROMPT,
                user_prompt=self._render_prompt(fingerprint.keywords, limit),
            )
        except AIGatewayError as exc:
            raise SourceDegradedError(f"{self.name}: {exc}", code=exc.code) from exc

        try:
            items = parse_json_array(raw)
        except ValueError as exc:
            logger.warning(
                "scan.source.parse_failure",
                extra={"source": self.name, "preview": raw[:120]},
            )
            raise ParseFailureError(f"{self.name}: response was not a candidate array.") from exc

        candidates: list[Candidate] = []
        for item in items:
            if len(candidates) >= limit:
                break
            if not isinstance(item, dict):
                _log_skipped(self.name, "not_object")
                continue
            candidate = normalize_discovery(item, kind=self.kind, snippet_length=self._snippet_length)
            if not candidate.url:
                _log_skipped(self.name, "invalid_url")
                continue
            candidates.append(candidate)
        return candidates

    def _render_prompt(self, keywords: Sequence[str], limit: int) -> str:
        focus = _KIND_DESCRIPTIONS.get(self.kind, self.kind.value)
        return (
            f"List up to {limit} existing {focus} similar to an idea described by these keywords: "
            f"{', '.join(keywords)}.\n"
            'Return a JSON object {"candidates": [...]} where each item has this shape:\n'
            f"{json.dumps(_ITEM_SCHEMA, indent=2)}\n"
            "Omit any item you cannot attribute to a real source URL."
        )


def _log_skipped(source: str, reason: str) -> None:
    logger.debug("scan.source.item_skipped", extra={"source": source, "reason": reason})
