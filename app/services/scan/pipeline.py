"""Scan processing pipeline: fingerprint, fan out, score, rank, persist."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from app.clients.ai_gateway import AIGatewayClient
from app.clients.patents import PatentRegistryClient
from app.config import Settings, settings
from app.models.scan import (
    Scan,
    ScanReport,
    ScanResult,
    ScanStatus,
    ScoredCandidate,
    SourceKind,
    is_absolute_http_url,
)
from app.observability.metrics import metrics
from app.services.scan.aggregator import SourceAggregator
from app.services.scan.errors import (
    InvalidRequestError,
    ScanAlreadyProcessedError,
    ScanNotFoundError,
    ScanPipelineError,
)
from app.services.scan.extractor import FingerprintExtractor
from app.services.scan.normalizer import DEFAULT_SNIPPET_LENGTH, truncate
from app.services.scan.repositories import ScanRepository, build_scan_repository
from app.services.scan.scorer import LexicalScorer, SimilarityScorer, VectorScorer, rank
from app.services.scan.sources import AIDiscoverySource, CandidateSource, PatentRegistrySource

logger = logging.getLogger(__name__)

SCORING_STRATEGIES = ("lexical", "vector")
# Another worker already finished the scan; its outcome must stand.
CONFLICT_CODES = frozenset({"409_SCAN_ALREADY_PROCESSED", "409_RESULTS_ALREADY_PERSISTED"})


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime knobs for one pipeline instance."""

    scoring_strategy: str = "lexical"
    source_timeout_seconds: float = 20.0
    per_source_limit: int = 5
    snippet_max_length: int = DEFAULT_SNIPPET_LENGTH
    score_jitter: float = 7.5
    score_seed: int | None = None
    embedding_concurrency: int = 4
    discovery_kinds: tuple[SourceKind, ...] = (SourceKind.STARTUP, SourceKind.RESEARCH)

    def __post_init__(self) -> None:
        if self.scoring_strategy not in SCORING_STRATEGIES:
            raise ValueError(f"Unsupported scoring strategy: {self.scoring_strategy}")
        if not 0 < self.snippet_max_length <= DEFAULT_SNIPPET_LENGTH:
            raise ValueError(f"snippet_max_length must be within 1..{DEFAULT_SNIPPET_LENGTH}")

    @property
    def uses_embeddings(self) -> bool:
        return self.scoring_strategy == "vector"

    @classmethod
    def from_settings(cls, source: Settings) -> PipelineConfig:
        return cls(
            scoring_strategy=source.scan_scoring_strategy.strip().lower(),
            source_timeout_seconds=source.scan_source_timeout_seconds,
            per_source_limit=source.scan_source_result_limit,
            snippet_max_length=source.scan_snippet_max_length,
            score_jitter=source.scan_score_jitter,
            score_seed=source.scan_score_seed,
            embedding_concurrency=source.scan_embedding_concurrency,
            discovery_kinds=tuple(
                SourceKind(kind.strip().lower()) for kind in source.scan_discovery_kinds
            ),
        )


class ScanPipeline:
    """Processes exactly one scan per invocation."""

    def __init__(
        self,
        *,
        repository: ScanRepository,
        extractor: FingerprintExtractor,
        aggregator: SourceAggregator,
        scorer: SimilarityScorer,
        config: PipelineConfig | None = None,
        clients: Sequence[Any] = (),
    ) -> None:
        self._repository = repository
        self._extractor = extractor
        self._aggregator = aggregator
        self._scorer = scorer
        self._config = config or PipelineConfig()
        self._clients = list(clients)
        self._in_flight: set[UUID] = set()

    @property
    def repository(self) -> ScanRepository:
        return self._repository

    async def aclose(self) -> None:
        """Close owned external clients and dispose the repository engine, if any."""
        for client in self._clients:
            await client.close()
        dispose = getattr(self._repository, "dispose", None)
        if dispose is not None:
            await asyncio.to_thread(dispose)

    async def process(self, scan_id: UUID | str | None) -> ScanReport:
        """Run the pipeline for ``scan_id`` and return the completion report."""
        resolved_id = _parse_scan_id(scan_id)
        scan = await asyncio.to_thread(self._repository.get_scan, resolved_id)
        if scan is None:
            raise ScanNotFoundError(f"Scan {resolved_id} not found.")
        if scan.status.is_terminal or resolved_id in self._in_flight:
            raise ScanAlreadyProcessedError(f"Scan {resolved_id} has already been processed.")
        if not scan.text_input or not scan.text_input.strip():
            raise InvalidRequestError("Scan text must be non-empty.")

        self._in_flight.add(resolved_id)
        tags = {"strategy": self._scorer.strategy}
        logger.info("scan.pipeline.started", extra={"scan_id": str(resolved_id), **tags})
        try:
            with metrics.timer("scan.pipeline.latency_ms", tags=tags):
                report = await self._run(scan)
        except Exception as exc:
            code = getattr(exc, "code", "500_INTERNAL")
            metrics.increment("scan.pipeline.errors", tags={**tags, "code": code})
            logger.error(
                "scan.pipeline.failed",
                extra={"scan_id": str(resolved_id), "code": code, "error": str(exc)},
            )
            if code not in CONFLICT_CODES:
                await self._mark_failed(resolved_id)
            raise
        finally:
            self._in_flight.discard(resolved_id)

        logger.info(
            "scan.pipeline.completed",
            extra={"scan_id": str(resolved_id), "results": report.results_count, **tags},
        )
        return report

    async def _run(self, scan: Scan) -> ScanReport:
        fingerprint = await self._extractor.extract(
            scan.text_input,
            include_embedding=self._config.uses_embeddings,
            cached_embedding=scan.text_embedding,
        )
        if fingerprint.embedding and not scan.text_embedding:
            await self._cache_embedding(scan.id, fingerprint.embedding)

        aggregated = await self._aggregator.gather(fingerprint)
        scored = await self._scorer.score(fingerprint, aggregated.candidates)
        results = self._build_results(scan.id, rank(scored))

        count = await asyncio.to_thread(self._repository.complete_scan, scan.id, results)
        return ScanReport(
            success=True, scan_id=scan.id, status=ScanStatus.COMPLETED, results_count=count
        )

    def _build_results(self, scan_id: UUID, ranked: Sequence[ScoredCandidate]) -> list[ScanResult]:
        results: list[ScanResult] = []
        for entry in ranked:
            candidate = entry.candidate
            if not is_absolute_http_url(candidate.url):
                logger.debug("scan.pipeline.result_dropped", extra={"title": candidate.title[:80]})
                continue
            results.append(
                ScanResult(
                    scan_id=scan_id,
                    rank=len(results),
                    title=candidate.title,
                    owner=candidate.owner,
                    country=candidate.country,
                    similarity_score=entry.similarity_score,
                    source_type=candidate.source_type,
                    legal_status=candidate.legal_status,
                    snippet=truncate(candidate.snippet, self._config.snippet_max_length) or None,
                    url=candidate.url,
                    founder_name=candidate.founder_name,
                    founder_country=candidate.founder_country,
                    founder_social_media=candidate.founder_social_media,
                )
            )
        return results

    async def _cache_embedding(self, scan_id: UUID, embedding: Sequence[float]) -> None:
        try:
            await asyncio.to_thread(self._repository.update_embedding, scan_id, embedding)
        except ScanPipelineError as exc:
            logger.warning(
                "scan.pipeline.embedding_cache_failed",
                extra={"scan_id": str(scan_id), "code": exc.code},
            )

    async def _mark_failed(self, scan_id: UUID) -> None:
        try:
            await asyncio.to_thread(self._repository.update_status, scan_id, ScanStatus.FAILED)
        except Exception:
            logger.exception("scan.status.update_failed", extra={"scan_id": str(scan_id)})


def _parse_scan_id(scan_id: UUID | str | None) -> UUID:
    if isinstance(scan_id, UUID):
        return scan_id
    if not scan_id or not str(scan_id).strip():
        raise InvalidRequestError("scan_id is required.")
    try:
        return UUID(str(scan_id).strip())
    except ValueError as exc:
        raise InvalidRequestError("scan_id must be a valid UUID.") from exc


def build_sources(
    config: PipelineConfig,
    source: Settings = settings,
    *,
    ai_client: AIGatewayClient | None = None,
    patent_client: PatentRegistryClient | None = None,
) -> list[CandidateSource]:
    """Instantiate the configured candidate sources."""
    sources: list[CandidateSource] = []
    if patent_client is None and source.patent_registry_api_key:
        patent_client = PatentRegistryClient.from_settings(source)
    if patent_client is not None:
        sources.append(PatentRegistrySource(patent_client, snippet_length=config.snippet_max_length))
    else:
        logger.warning("scan.sources.patent_registry_disabled")

    if config.discovery_kinds:
        ai_client = ai_client or AIGatewayClient.from_settings(source)
        sources.extend(
            AIDiscoverySource(ai_client, kind=kind, snippet_length=config.snippet_max_length)
            for kind in config.discovery_kinds
        )
    return sources


def build_scan_pipeline(
    source: Settings = settings, *, repository: ScanRepository | None = None
) -> ScanPipeline:
    """Wire a pipeline from application settings."""
    config = PipelineConfig.from_settings(source)
    ai_client = AIGatewayClient.from_settings(source)
    clients: list[Any] = [ai_client]
    patent_client = None
    if source.patent_registry_api_key:
        patent_client = PatentRegistryClient.from_settings(source)
        clients.append(patent_client)

    extractor = FingerprintExtractor(ai_client, timeout_seconds=config.source_timeout_seconds)
    scorer: SimilarityScorer
    if config.uses_embeddings:
        scorer = VectorScorer(extractor, concurrency=config.embedding_concurrency)
    else:
        scorer = LexicalScorer(rng=random.Random(config.score_seed), jitter=config.score_jitter)
    return ScanPipeline(
        repository=repository or build_scan_repository(source.database_url),
        extractor=extractor,
        aggregator=SourceAggregator(
            build_sources(config, source, ai_client=ai_client, patent_client=patent_client),
            per_source_limit=config.per_source_limit,
            timeout_seconds=config.source_timeout_seconds,
        ),
        scorer=scorer,
        config=config,
        clients=clients,
    )


_PIPELINE_INSTANCE: ScanPipeline | None = None
_REPOSITORY_INSTANCE: ScanRepository | None = None


def get_scan_repository() -> ScanRepository:
    """Repository singleton, built independently of the AI and patent clients."""
    global _REPOSITORY_INSTANCE  # noqa: PLW0603
    if _REPOSITORY_INSTANCE is None:
        _REPOSITORY_INSTANCE = build_scan_repository(settings.database_url)
    return _REPOSITORY_INSTANCE


def get_scan_pipeline() -> ScanPipeline:
    """Singleton accessor used by API routes."""
    global _PIPELINE_INSTANCE  # noqa: PLW0603
    if _PIPELINE_INSTANCE is None:
        _PIPELINE_INSTANCE = build_scan_pipeline(repository=get_scan_repository())
    return _PIPELINE_INSTANCE


async def shutdown_scan_pipeline() -> None:
    """Release the singletons' clients and engine; a later request rebuilds them."""
    global _PIPELINE_INSTANCE, _REPOSITORY_INSTANCE  # noqa: PLW0603
    pipeline, _PIPELINE_INSTANCE = _PIPELINE_INSTANCE, None
    repository, _REPOSITORY_INSTANCE = _REPOSITORY_INSTANCE, None
    if pipeline is not None:
        await pipeline.aclose()
    elif repository is not None and hasattr(repository, "dispose"):
        await asyncio.to_thread(repository.dispose)
