"""Concurrent fan-out over candidate sources with per-source failure isolation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.models.scan import Candidate, Fingerprint
from app.observability.metrics import metrics
from app.services.scan.errors import ScanPipelineError
from app.services.scan.sources import CandidateSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceOutcome:
    """What one source contributed to a run."""

    source: str
    candidates: int
    latency_ms: float
    error_code: str | None = None

    @property
    def degraded(self) -> bool:
        return self.error_code is not None


@dataclass
class AggregatedCandidates:
    """Union of candidates from every source that succeeded, in arrival order."""

    candidates: list[Candidate] = field(default_factory=list)
    outcomes: list[SourceOutcome] = field(default_factory=list)

    @property
    def degraded_sources(self) -> list[str]:
        return [outcome.source for outcome in self.outcomes if outcome.degraded]


class SourceAggregator:
    """Queries every configured source concurrently and joins on all of them."""

    def __init__(
        self,
        sources: Sequence[CandidateSource],
        *,
        per_source_limit: int = 5,
        timeout_seconds: float = 20.0,
    ) -> None:
        if per_source_limit < 1:
            raise ValueError("per_source_limit must be >= 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._sources = list(sources)
        self._limit = per_source_limit
        self._timeout = timeout_seconds

    async def gather(self, fingerprint: Fingerprint) -> AggregatedCandidates:
        if not self._sources:
            logger.info("scan.aggregator.no_sources")
            return AggregatedCandidates()

        outcomes = await asyncio.gather(
            *(self._fetch_one(source, fingerprint) for source in self._sources)
        )

        aggregated = AggregatedCandidates()
        for candidates, outcome in outcomes:
            aggregated.candidates.extend(candidates)
            aggregated.outcomes.append(outcome)
        logger.info(
            "scan.aggregator.complete",
            extra={
                "candidates": len(aggregated.candidates),
                "sources": len(self._sources),
                "degraded_sources": aggregated.degraded_sources,
            },
        )
        return aggregated

    async def _fetch_one(
        self, source: CandidateSource, fingerprint: Fingerprint
    ) -> tuple[list[Candidate], SourceOutcome]:
        start = time.perf_counter()
        error_code: str | None = None
        candidates: list[Candidate] = []
        try:
            fetched = await asyncio.wait_for(
                source.fetch(fingerprint, limit=self._limit), timeout=self._timeout
            )
            candidates = [candidate for candidate in fetched if candidate.url][: self._limit]
        except asyncio.TimeoutError:
            error_code = "SOURCE_TIMEOUT"
            logger.warning("scan.source.degraded", extra={"source": source.name, "code": error_code})
        except ScanPipelineError as exc:
            error_code = exc.code
            logger.warning(
                "scan.source.degraded",
                extra={"source": source.name, "code": error_code, "error": str(exc)},
            )
        except Exception:
            error_code = "SOURCE_UNHANDLED_ERROR"
            logger.exception("scan.source.degraded", extra={"source": source.name, "code": error_code})

        elapsed_ms = (time.perf_counter() - start) * 1000
        tags = {"source": source.name}
        metrics.timing("scan.source.latency_ms", elapsed_ms, tags=tags)
        if error_code:
            metrics.increment("scan.source.errors", tags={**tags, "code": error_code})
        else:
            metrics.increment("scan.source.candidates", len(candidates), tags=tags)
        return candidates, SourceOutcome(
            source=source.name,
            candidates=len(candidates),
            latency_ms=round(elapsed_ms, 2),
            error_code=error_code,
        )
