"""Client for a PatentsView-style structured patent registry search API."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx

from app.config import Settings, settings

PATENT_FIELDS = (
    "patent_id",
    "patent_title",
    "patent_abstract",
    "patent_date",
    "patent_type",
    "assignees.assignee_organization",
    "assignees.assignee_country",
    "inventors.inventor_name_first",
    "inventors.inventor_name_last",
    "inventors.inventor_country",
)


class PatentRegistryError(RuntimeError):
    """Base error for patent registry client failures."""

    def __init__(self, message: str, code: str = "PATENTS_ERROR") -> None:
        super().__init__(message)
        self.code = code


class PatentRegistryRateLimitError(PatentRegistryError):
    """Raised when the registry responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by patent registry") -> None:
        super().__init__(message, code="PATENTS_429")


class PatentRegistryTimeoutError(PatentRegistryError):
    """Raised when a registry request times out."""

    def __init__(self, message: str = "Patent registry request timed out") -> None:
        super().__init__(message, code="PATENTS_TIMEOUT")


class PatentRegistrySchemaError(PatentRegistryError):
    """Raised when the registry response schema is not as expected."""

    def __init__(self, message: str = "Unexpected patent registry response schema") -> None:
        super().__init__(message, code="PATENTS_SCHEMA_ERR")


class PatentRegistryClient:
    """Minimal async patent registry client."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://search.patentsview.org/api/v1",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("PATENT_REGISTRY_API_KEY is required to create a PatentRegistryClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "PatentRegistryClient":
        """Instantiate the client from application settings."""
        source = source or settings
        return cls(
            source.patent_registry_api_key or "",
            base_url=source.patent_registry_base_url,
            timeout=source.scan_source_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            await self._http.aclose()

    async def search(self, *, keywords: Sequence[str], limit: int) -> list[dict[str, Any]]:
        """Full-text search of patent titles and abstracts for any of ``keywords``."""
        if limit <= 0:
            raise ValueError("limit must be a positive integer.")
        terms = " ".join(term.strip() for term in keywords if term and term.strip())
        if not terms:
            raise ValueError("At least one keyword is required.")

        payload = {
            "q": {
                "_or": [
                    {"_text_any": {"patent_title": terms}},
                    {"_text_any": {"patent_abstract": terms}},
                ]
            },
            "f": list(PATENT_FIELDS),
            "o": {"size": limit},
        }
        headers = {"X-Api-Key": self._api_key}

        try:
            response = await self._http.post("/patent/", json=payload, headers=headers)
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise PatentRegistryTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise PatentRegistryError(f"HTTP error calling patent registry: {exc}") from exc

        if response.status_code == 429:
            raise PatentRegistryRateLimitError()
        if response.status_code in (408, 504):
            raise PatentRegistryTimeoutError()
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                detail_json = response.json()
                detail = detail_json.get("detail") or detail_json.get("message") or detail
            except Exception:  # pragma: no cover - best effort decoding
                pass
            raise PatentRegistryError(
                f"Patent registry request failed: {response.status_code} - {detail}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise PatentRegistrySchemaError("Failed to decode patent registry response JSON.") from exc

        patents = data.get("patents") if isinstance(data, dict) else None
        if patents is None and isinstance(data, dict) and data.get("count") == 0:
            return []
        if not isinstance(patents, list):
            raise PatentRegistrySchemaError("`patents` missing from patent registry response.")
        if not all(isinstance(entry, dict) for entry in patents):
            raise PatentRegistrySchemaError("Entries in `patents` must be JSON objects.")
        return patents[:limit]

    async def __aenter__(self) -> "PatentRegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
