"""Similarity scoring strategies for candidate matches."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Mapping, Sequence
from typing import Final, Protocol

from app.models.scan import Candidate, Fingerprint, ScoredCandidate, SourceKind
from app.services.scan.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

LEXICAL_MIN_SCORE: Final = 30.0
LEXICAL_MAX_SCORE: Final = 95.0
KEYWORD_BONUS: Final = 35.0
DEFAULT_JITTER: Final = 7.5
DEFAULT_PRIOR: Final = 40.0

SOURCE_PRIORS: Final[dict[SourceKind, float]] = {
    SourceKind.PATENT: 60.0,
    SourceKind.RESEARCH: 50.0,
    SourceKind.STARTUP: 45.0,
    SourceKind.NEWS: 40.0,
    SourceKind.IDESTRIM: 40.0,
}


class SimilarityScorer(Protocol):
    """Scores candidates against a fingerprint, preserving arrival order."""

    strategy: str

    async def score(
        self, fingerprint: Fingerprint, candidates: Sequence[Candidate]
    ) -> list[ScoredCandidate]:
        ...


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


class LexicalScorer:
    """Source-trust prior plus keyword overlap, with optional bounded jitter.

    With ``jitter=0`` the score is a pure function of the fingerprint keywords
    and the candidate's title, snippet and source kind.
    """

    strategy = "lexical"

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        jitter: float = DEFAULT_JITTER,
        priors: Mapping[SourceKind, float] | None = None,
    ) -> None:
        if jitter < 0:
            raise ValueError("jitter must be >= 0")
        self._rng = rng or random.Random()
        self._jitter = jitter
        self._priors = dict(priors or SOURCE_PRIORS)

    async def score(
        self, fingerprint: Fingerprint, candidates: Sequence[Candidate]
    ) -> list[ScoredCandidate]:
        return [
            ScoredCandidate(candidate=candidate, similarity_score=self.score_one(fingerprint, candidate))
            for candidate in candidates
        ]

    def score_one(self, fingerprint: Fingerprint, candidate: Candidate) -> float:
        base = self._priors.get(candidate.source_type, DEFAULT_PRIOR)
        bonus = KEYWORD_BONUS * keyword_overlap(fingerprint.keywords, candidate.text)
        perturbation = self._rng.uniform(-self._jitter, self._jitter) if self._jitter else 0.0
        return round(_clamp(base + bonus + perturbation, LEXICAL_MIN_SCORE, LEXICAL_MAX_SCORE), 2)


class VectorScorer:
    """Cosine similarity between the scan embedding and each candidate's embedding.

    Candidate embeddings are fetched with at most ``concurrency`` requests in
    flight. A candidate whose embedding cannot be computed is dropped.
    """

    strategy = "vector"

    def __init__(self, embedder: Embedder, *, concurrency: int = 4) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._embedder = embedder
        self._concurrency = concurrency

    async def score(
        self, fingerprint: Fingerprint, candidates: Sequence[Candidate]
    ) -> list[ScoredCandidate]:
        if not fingerprint.embedding:
            raise ServiceUnavailableError("Vector scoring requires a scan embedding.")
        if not candidates:
            return []

        semaphore = asyncio.Semaphore(self._concurrency)
        outcomes = await asyncio.gather(
            *(self._with_semaphore(semaphore, candidate) for candidate in candidates),
            return_exceptions=True,
        )

        scored: list[ScoredCandidate] = []
        for candidate, outcome in zip(candidates, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "scan.scorer.embedding_dropped",
                    extra={"title": candidate.title[:80], "error": type(outcome).__name__},
                )
                continue
            try:
                similarity = cosine_similarity(fingerprint.embedding, outcome)
            except ValueError as exc:
                logger.warning(
                    "scan.scorer.embedding_dropped",
                    extra={"title": candidate.title[:80], "error": str(exc)},
                )
                continue
            scored.append(
                ScoredCandidate(candidate=candidate, similarity_score=cosine_to_score(similarity))
            )
        return scored

    async def _with_semaphore(self, semaphore: asyncio.Semaphore, candidate: Candidate) -> list[float]:
        async with semaphore:
            return await self._embedder.embed(candidate.text)


def keyword_overlap(keywords: Sequence[str], text: str) -> float:
    """Fraction of ``keywords`` that literally occur in ``text`` (case-insensitive)."""
    terms = [term.strip().lower() for term in keywords if term and term.strip()]
    if not terms:
        return 0.0
    haystack = text.lower()
    return sum(1 for term in terms if term in haystack) / len(terms)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise ValueError(f"Embedding dimensions differ ({len(left)} != {len(right)}).")
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0 or right_norm == 0:
        raise ValueError("Cannot compare a zero-length embedding.")
    dot = sum(a * b for a, b in zip(left, right))
    return dot / (left_norm * right_norm)


def cosine_to_score(similarity: float) -> float:
    """Map cosine similarity in [-1, 1] onto a 0-100 score."""
    return round(_clamp((similarity + 1.0) * 50.0, 0.0, 100.0), 2)


def rank(scored: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    """Sort by descending score; ties keep arrival order."""
    return sorted(scored, key=lambda entry: entry.similarity_score, reverse=True)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
