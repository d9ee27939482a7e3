"""Domain models for idea scans and their ranked matches."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, confloat, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanStatus(str, Enum):
    """Lifecycle states of a scan."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.PROCESSING


class SourceKind(str, Enum):
    """Kind of corpus a candidate was discovered in."""

    PATENT = "patent"
    STARTUP = "startup"
    RESEARCH = "research"
    NEWS = "news"
    IDESTRIM = "idestrim"


def is_absolute_http_url(value: Any) -> bool:
    """True when ``value`` is an absolute http(s) URL with a host."""
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc)


class Scan(BaseModel):
    """One user submission and its lifecycle status."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID | None = None
    text_input: str
    image_url: str | None = None
    text_embedding: list[float] | None = None
    status: ScanStatus = ScanStatus.PROCESSING
    created_at: datetime = Field(default_factory=_utcnow)


class Fingerprint(BaseModel):
    """Compact semantic representation of a scan's text."""

    keywords: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None


class Candidate(BaseModel):
    """Unscored tentative match gathered from one source during one run."""

    title: str
    owner: str = "Unknown"
    country: str = "Unknown"
    source_type: SourceKind
    legal_status: str | None = None
    snippet: str = ""
    url: str | None = None
    founder_name: str | None = None
    founder_country: str | None = None
    founder_social_media: dict[str, str] = Field(default_factory=dict)
    raw: dict[str, Any] | None = Field(default=None, exclude=True)

    @property
    def text(self) -> str:
        """Title and snippet joined for matching."""
        return f"{self.title} {self.snippet}".strip()


class ScoredCandidate(BaseModel):
    """Candidate annotated with its similarity score."""

    candidate: Candidate
    similarity_score: confloat(ge=0, le=100)  # type: ignore[valid-type]


class ScanResult(BaseModel):
    """Persisted, scored candidate attached to a scan."""

    id: UUID = Field(default_factory=uuid4)
    scan_id: UUID
    rank: int = 0
    title: str
    owner: str | None = None
    country: str | None = None
    similarity_score: confloat(ge=0, le=100)  # type: ignore[valid-type]
    source_type: SourceKind
    legal_status: str | None = None
    snippet: str | None = Field(default=None, max_length=500)
    url: str
    founder_name: str | None = None
    founder_country: str | None = None
    founder_social_media: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        if not is_absolute_http_url(value):
            raise ValueError("url must be an absolute http(s) URL.")
        return value.strip()


class ScanReport(BaseModel):
    """Completion report returned by one pipeline run."""

    success: bool = True
    scan_id: UUID
    status: ScanStatus
    results_count: int = 0
