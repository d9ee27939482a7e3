"""Maps source-specific raw hits onto the canonical Candidate shape."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from app.models.scan import Candidate, SourceKind, is_absolute_http_url

DEFAULT_SNIPPET_LENGTH = 500
UNKNOWN = "Unknown"
PATENT_URL_TEMPLATE = "https://patents.google.com/patent/US{patent_id}"

_TITLE_KEYS = ("title", "name", "innovation", "product")
_OWNER_KEYS = ("owner", "company", "organization", "assignee", "institution")
_SNIPPET_KEYS = ("snippet", "description", "summary", "abstract")
_URL_KEYS = ("url", "source_url", "link", "website")
_STATUS_KEYS = ("legal_status", "status", "stage")


def truncate(text: str | None, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Collapse whitespace and cut ``text`` to at most ``max_length`` characters."""
    if not text:
        return ""
    collapsed = " ".join(str(text).split())
    if len(collapsed) <= max_length:
        return collapsed
    if max_length <= 3:
        return collapsed[:max_length]
    return collapsed[: max_length - 3].rstrip() + "..."


def normalize_patent(
    hit: Mapping[str, Any], *, snippet_length: int = DEFAULT_SNIPPET_LENGTH
) -> Candidate:
    """Normalize a patent registry hit."""
    assignee = _first_mapping(hit.get("assignees"))
    inventor = _first_mapping(hit.get("inventors"))
    name_parts = (inventor.get("inventor_name_first"), inventor.get("inventor_name_last"))
    inventor_name = " ".join(part for part in map(_text, name_parts) if part)

    owner = _text(assignee.get("assignee_organization")) or inventor_name or UNKNOWN
    country = (
        _text(assignee.get("assignee_country")) or _text(inventor.get("inventor_country")) or UNKNOWN
    )
    patent_id = _text(hit.get("patent_id"))
    url = _text(hit.get("url"))
    if not url and patent_id:
        url = PATENT_URL_TEMPLATE.format(patent_id=patent_id)
    granted = _text(hit.get("patent_date"))

    return Candidate(
        title=_text(hit.get("patent_title")) or f"Patent {patent_id or 'untitled'}",
        owner=owner,
        country=country,
        source_type=SourceKind.PATENT,
        legal_status=f"Granted {granted}" if granted else "Granted",
        snippet=truncate(_text(hit.get("patent_abstract")), snippet_length),
        url=url if is_absolute_http_url(url) else None,
        founder_name=inventor_name or None,
        founder_country=_text(inventor.get("inventor_country")) or None,
        raw=dict(hit),
    )


def normalize_discovery(
    item: Mapping[str, Any],
    *,
    kind: SourceKind,
    snippet_length: int = DEFAULT_SNIPPET_LENGTH,
) -> Candidate:
    """Normalize one item parsed from an AI discovery response."""
    url = _pick(item, _URL_KEYS)
    title = _pick(item, _TITLE_KEYS) or "Untitled"
    return Candidate(
        title=title,
        owner=_pick(item, _OWNER_KEYS) or UNKNOWN,
        country=_text(item.get("country")) or UNKNOWN,
        source_type=kind,
        legal_status=_pick(item, _STATUS_KEYS),
        snippet=truncate(_pick(item, _SNIPPET_KEYS), snippet_length),
        url=url if is_absolute_http_url(url) else None,
        founder_name=_text(item.get("founder_name")) or None,
        founder_country=_text(item.get("founder_country")) or None,
        founder_social_media=_social_links(item.get("founder_social_media")),
        raw=dict(item),
    )


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _pick(item: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = _text(item.get(key))
        if value:
            return value
    return None


def _first_mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, Mapping):
                return entry
    if isinstance(value, Mapping):
        return value
    return {}


def _social_links(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {
        str(network): link.strip()
        for network, link in value.items()
        if isinstance(link, str) and is_absolute_http_url(link)
    }
