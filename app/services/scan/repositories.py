"""Persistence backends for scans and their ranked results."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from threading import Lock
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import event, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.scan import Scan, ScanResult, ScanStatus
from app.models.scan_record import ScanRecord, ScanResultRecord
from app.observability.metrics import metrics
from app.services.scan.errors import PersistenceFailureError, ScanAlreadyProcessedError

logger = logging.getLogger(__name__)


class ScanRepository(Protocol):
    """Persistence contract for scans and results."""

    def create_scan(self, scan: Scan) -> Scan:
        ...

    def get_scan(self, scan_id: UUID) -> Scan | None:
        ...

    def update_status(self, scan_id: UUID, status: ScanStatus) -> bool:
        """Move a ``processing`` scan to ``status``; False when it was already terminal."""
        ...

    def update_embedding(self, scan_id: UUID, embedding: Sequence[float]) -> None:
        ...

    def save_results(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        ...

    def complete_scan(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        """Persist ``results`` and mark the scan ``completed`` in one transaction."""
        ...

    def list_results(self, scan_id: UUID) -> list[ScanResult]:
        ...

    def ping(self) -> bool:
        ...


class InMemoryScanRepository(ScanRepository):
    """Thread-safe repository used for local development and tests."""

    def __init__(self) -> None:
        self._scans: dict[UUID, Scan] = {}
        self._results: dict[UUID, list[ScanResult]] = {}
        self._lock = Lock()

    def create_scan(self, scan: Scan) -> Scan:
        with self._lock:
            self._scans[scan.id] = scan
        logger.info("scan.persistence.created", extra={"scan_id": str(scan.id), "backend": "memory"})
        return scan

    def get_scan(self, scan_id: UUID) -> Scan | None:
        with self._lock:
            return self._scans.get(scan_id)

    def update_status(self, scan_id: UUID, status: ScanStatus) -> bool:
        with self._lock:
            return self._transition(scan_id, status)

    def update_embedding(self, scan_id: UUID, embedding: Sequence[float]) -> None:
        with self._lock:
            scan = self._scans.get(scan_id)
            if scan is None:
                raise PersistenceFailureError(f"Scan {scan_id} does not exist.")
            self._scans[scan_id] = scan.model_copy(update={"text_embedding": list(embedding)})

    def save_results(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        with self._lock:
            self._require_scan(scan_id)
            self._check_results_absent(scan_id)
            self._results[scan_id] = list(results)
        metrics.increment("scan.results.persisted", len(results), tags={"repository": "memory"})
        return len(results)

    def complete_scan(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        with self._lock:
            scan = self._require_scan(scan_id)
            self._check_results_absent(scan_id)
            if scan.status is not ScanStatus.PROCESSING:
                raise ScanAlreadyProcessedError(f"Scan {scan_id} is already {scan.status.value}.")
            self._results[scan_id] = list(results)
            self._scans[scan_id] = scan.model_copy(update={"status": ScanStatus.COMPLETED})
        metrics.increment("scan.results.persisted", len(results), tags={"repository": "memory"})
        return len(results)

    def list_results(self, scan_id: UUID) -> list[ScanResult]:
        with self._lock:
            return sorted(self._results.get(scan_id, []), key=lambda result: result.rank)

    def ping(self) -> bool:
        return True

    # Helpers below expect the caller to hold ``self._lock``.
    def _require_scan(self, scan_id: UUID) -> Scan:
        scan = self._scans.get(scan_id)
        if scan is None:
            raise PersistenceFailureError(f"Scan {scan_id} does not exist.")
        return scan

    def _check_results_absent(self, scan_id: UUID) -> None:
        if scan_id in self._results:
            raise PersistenceFailureError(
                f"Results already persisted for scan {scan_id}.",
                code="409_RESULTS_ALREADY_PERSISTED",
            )

    def _transition(self, scan_id: UUID, status: ScanStatus) -> bool:
        scan = self._require_scan(scan_id)
        if scan.status is not ScanStatus.PROCESSING:
            logger.warning(
                "scan.persistence.transition_skipped",
                extra={"scan_id": str(scan_id), "current": scan.status.value, "requested": status.value},
            )
            return False
        self._scans[scan_id] = scan.model_copy(update={"status": status})
        return True


class SqlScanRepository(ScanRepository):
    """SQLModel-backed repository that persists scans to Postgres/Supabase."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlScanRepository.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": settings.debug and not is_sqlite,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if is_sqlite:
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._metrics_tags = {"repository": _resolve_metrics_tag(parsed_url, drivername)}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def create_scan(self, scan: Scan) -> Scan:
        record = ScanRecord.from_scan(scan)
        with self._guard("create_scan", scan.id):
            with self._session() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                return record.to_scan()

    def get_scan(self, scan_id: UUID) -> Scan | None:
        with self._guard("get_scan", scan_id):
            with self._session() as session:
                record = session.get(ScanRecord, scan_id)
                return record.to_scan() if record else None

    def update_status(self, scan_id: UUID, status: ScanStatus) -> bool:
        with self._guard("update_status", scan_id):
            with self._session() as session:
                self._require_scan(session, scan_id)
                applied = self._transition(session, scan_id, status)
                session.commit()
        if not applied:
            logger.warning(
                "scan.persistence.transition_skipped",
                extra={"scan_id": str(scan_id), "requested": status.value},
            )
        return applied

    def update_embedding(self, scan_id: UUID, embedding: Sequence[float]) -> None:
        with self._guard("update_embedding", scan_id):
            with self._session() as session:
                record = self._require_scan(session, scan_id)
                record.text_embedding = [float(value) for value in embedding]
                session.add(record)
                session.commit()

    def save_results(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        with self._guard("save_results", scan_id):
            with self._session() as session:
                self._require_scan(session, scan_id)
                self._add_results(session, scan_id, results)
                session.commit()
        return self._record_saved(scan_id, results)

    def complete_scan(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        with self._guard("complete_scan", scan_id):
            with self._session() as session:
                self._require_scan(session, scan_id)
                self._add_results(session, scan_id, results)
                if not self._transition(session, scan_id, ScanStatus.COMPLETED):
                    session.rollback()
                    raise ScanAlreadyProcessedError(f"Scan {scan_id} is no longer processing.")
                session.commit()
        return self._record_saved(scan_id, results)

    def _record_saved(self, scan_id: UUID, results: Sequence[ScanResult]) -> int:
        metrics.increment("scan.results.persisted", len(results), tags=self._metrics_tags)
        logger.info(
            "scan.persistence.results_saved",
            extra={
                "scan_id": str(scan_id),
                "count": len(results),
                "backend": self._metrics_tags["repository"],
            },
        )
        return len(results)

    def list_results(self, scan_id: UUID) -> list[ScanResult]:
        with self._guard("list_results", scan_id):
            with self._session() as session:
                statement = (
                    select(ScanResultRecord)
                    .where(ScanResultRecord.scan_id == scan_id)
                    .order_by(ScanResultRecord.rank.asc())
                )
                return [record.to_result() for record in session.exec(statement).all()]

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception(
                "scan.persistence.ping_failed",
                extra={"backend": self._metrics_tags["repository"]},
            )
            return False

    @staticmethod
    def _require_scan(session: Session, scan_id: UUID) -> ScanRecord:
        record = session.get(ScanRecord, scan_id)
        if record is None:
            raise PersistenceFailureError(f"Scan {scan_id} does not exist.")
        return record

    @staticmethod
    def _add_results(session: Session, scan_id: UUID, results: Sequence[ScanResult]) -> None:
        existing = session.exec(
            select(ScanResultRecord.id).where(ScanResultRecord.scan_id == scan_id).limit(1)
        ).first()
        if existing is not None:
            raise PersistenceFailureError(
                f"Results already persisted for scan {scan_id}.",
                code="409_RESULTS_ALREADY_PERSISTED",
            )
        session.add_all([ScanResultRecord.from_result(result) for result in results])

    @staticmethod
    def _transition(session: Session, scan_id: UUID, status: ScanStatus) -> bool:
        # Conditional on the row still being ``processing`` so a terminal scan is never reopened.
        outcome = session.execute(
            update(ScanRecord)
            .where(ScanRecord.id == scan_id, ScanRecord.status == ScanStatus.PROCESSING.value)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        return outcome.rowcount == 1

    @contextmanager
    def _guard(self, operation: str, scan_id: UUID) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.exception(
                "scan.persistence.error",
                extra={
                    "operation": operation,
                    "scan_id": str(scan_id),
                    "backend": self._metrics_tags["repository"],
                },
            )
            raise PersistenceFailureError(f"Failed to {operation.replace('_', ' ')}.") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql") and "sslmode" not in query:
        if removed_ssl or "supabase.co" in host:
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _resolve_metrics_tag(url: URL, drivername: str) -> str:
    host = (url.host or "").lower()
    if "supabase.co" in host:
        return "supabase"
    if drivername.startswith("sqlite"):
        return "sqlite"
    return "postgres"


def build_scan_repository(database_url: str | None = None) -> ScanRepository:
    """Instantiate a ScanRepository using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("scan.repository.initialized", extra={"backend": "memory"})
        return InMemoryScanRepository()
    try:
        repository = SqlScanRepository(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
        logger.info("scan.repository.initialized", extra={"backend": "database"})
        return repository
    except Exception:
        logger.exception("scan.repository.init_failed", extra={"backend": "database"})
        raise
