"""SQLModel mappings for stored scans and scan results."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.scan import Scan, ScanResult, ScanStatus, SourceKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class ScanRecord(SQLModel, table=True):
    """ORM model for rows in ``scans``."""

    __tablename__ = "scans"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed')", name="ck_scans_status"
        ),
        sa.Index("ix_scans_user_id", "user_id"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    user_id: UUID | None = Field(
        default=None,
        sa_column=Column(Uuid(as_uuid=True), nullable=True),
    )
    text_input: str = Field(sa_column=Column(Text, nullable=False))
    image_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    text_embedding: list[float] | None = Field(
        default=None,
        sa_column=Column(JSON_BACKING_TYPE, nullable=True),
    )
    status: str = Field(
        default=ScanStatus.PROCESSING.value,
        sa_column=Column(String(length=32), nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )

    @classmethod
    def from_scan(cls, scan: Scan) -> ScanRecord:
        return cls(
            id=scan.id,
            user_id=scan.user_id,
            text_input=scan.text_input,
            image_url=scan.image_url,
            text_embedding=scan.text_embedding,
            status=scan.status.value,
            created_at=scan.created_at,
        )

    def to_scan(self) -> Scan:
        return Scan(
            id=self.id,
            user_id=self.user_id,
            text_input=self.text_input,
            image_url=self.image_url,
            text_embedding=self.text_embedding,
            status=ScanStatus(self.status),
            created_at=self.created_at,
        )


class ScanResultRecord(SQLModel, table=True):
    """ORM model for rows in ``scan_results``."""

    __tablename__ = "scan_results"
    __table_args__ = (
        sa.CheckConstraint(
            "similarity_score >= 0 AND similarity_score <= 100",
            name="ck_scan_results_score_range",
        ),
        sa.Index("ix_scan_results_scan_id", "scan_id"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    scan_id: UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            ForeignKey("scans.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    rank: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    title: str = Field(sa_column=Column(Text, nullable=False))
    owner: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    country: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    similarity_score: Decimal = Field(sa_column=Column(Numeric(5, 2), nullable=False))
    source_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    legal_status: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    snippet: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    url: str = Field(sa_column=Column(Text, nullable=False))
    founder_name: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    founder_country: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    founder_social_media: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )

    @classmethod
    def from_result(cls, result: ScanResult) -> ScanResultRecord:
        return cls(
            id=result.id,
            scan_id=result.scan_id,
            rank=result.rank,
            title=result.title,
            owner=result.owner,
            country=result.country,
            similarity_score=Decimal(str(round(result.similarity_score, 2))),
            source_type=result.source_type.value,
            legal_status=result.legal_status,
            snippet=result.snippet,
            url=result.url,
            founder_name=result.founder_name,
            founder_country=result.founder_country,
            founder_social_media=dict(result.founder_social_media),
            created_at=result.created_at,
        )

    def to_result(self) -> ScanResult:
        return ScanResult(
            id=self.id,
            scan_id=self.scan_id,
            rank=self.rank,
            title=self.title,
            owner=self.owner,
            country=self.country,
            similarity_score=float(self.similarity_score),
            source_type=SourceKind(self.source_type),
            legal_status=self.legal_status,
            snippet=self.snippet,
            url=self.url,
            founder_name=self.founder_name,
            founder_country=self.founder_country,
            founder_social_media=dict(self.founder_social_media or {}),
            created_at=self.created_at,
        )
