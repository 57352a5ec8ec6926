"""CrossRef citation metadata client."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from config import settings
from services.errors import (
    InvalidDoi,
    MetadataNotFound,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

SEARCH_FIELDS = "DOI,title,author,published,container-title,publisher,subject,abstract"
_DOI_PREFIX_RE = re.compile(r"^(https?://)?(dx\.)?doi\.org/", re.IGNORECASE)

# First match wins; evaluated against the first subject only.
SUBJECT_CATEGORY_RULES = (
    (("medicine", "health", "clinical"), "Medicina"),
    (("engineering",), "Ingeniería"),
    (("law", "legal"), "Derecho"),
    (("economics", "business", "finance"), "Economía"),
    (("psychology",), "Psicología"),
    (("biology", "life science"), "Biología"),
    (("chemistry",), "Química"),
    (("physics",), "Física"),
    (("mathematics", "statistics"), "Matemáticas"),
    (("social", "sociology", "political"), "Ciencias Sociales"),
    (("humanities", "history", "philosophy", "literature"), "Humanidades"),
    (("computer", "technology", "information"), "Tecnología"),
)


def normalize_doi(value: Optional[str], *, required: bool = True) -> Optional[str]:
    """Strip whitespace and any ``doi.org/`` prefix; reject non ``10.`` DOIs."""
    cleaned = str(value or "").strip()
    if cleaned.lower().startswith("doi:"):
        cleaned = cleaned[4:].strip()
    cleaned = _DOI_PREFIX_RE.sub("", cleaned)
    if "doi.org/" in cleaned:
        cleaned = cleaned.split("doi.org/", 1)[1]
    if not cleaned:
        if required:
            raise InvalidDoi("A DOI is required.")
        return None
    if not cleaned.startswith("10."):
        raise InvalidDoi()
    return cleaned


def suggest_category(subjects: Optional[List[str]]) -> Optional[str]:
    if not subjects:
        return None
    subject = str(subjects[0]).lower()
    for keywords, category in SUBJECT_CATEGORY_RULES:
        if any(keyword in subject for keyword in keywords):
            return category
    return "Otro"


def format_authors(authors: Optional[List[Dict[str, Any]]]) -> str:
    if not authors:
        return ""
    names = []
    for author in authors[:3]:
        name = f"{author.get('given') or ''} {author.get('family') or ''}".strip()
        if name:
            names.append(name)
    joined = ", ".join(names)
    if len(authors) > 3:
        return f"{joined} et al."
    return joined


@dataclass
class CitationRecord:
    title: str
    authors: str = ""
    year: Optional[str] = None
    doi: Optional[str] = None
    journal: Optional[str] = None
    publisher: Optional[str] = None
    subjects: List[str] = field(default_factory=list)
    abstract: Optional[str] = None
    suggested_category: Optional[str] = None

    @classmethod
    def from_work(cls, work: Dict[str, Any]) -> "CitationRecord":
        titles = work.get("title") or []
        containers = work.get("container-title") or []
        date_parts = (work.get("published") or {}).get("date-parts") or [[]]
        first_part = date_parts[0] if date_parts else []
        subjects = [str(item) for item in (work.get("subject") or [])]
        return cls(
            title=titles[0] if titles else "Sin título",
            authors=format_authors(work.get("author")),
            year=str(first_part[0]) if first_part and first_part[0] is not None else None,
            doi=work.get("DOI") or None,
            journal=containers[0] if containers else None,
            publisher=work.get("publisher") or None,
            subjects=subjects,
            abstract=work.get("abstract") or None,
            suggested_category=suggest_category(subjects),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CrossRefClient:
    """One outbound call per lookup. No retries, no caching."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        contact_email: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.CROSSREF_API_URL).rstrip("/")
        self.contact_email = contact_email or settings.METADATA_CONTACT_EMAIL
        self.timeout_seconds = float(timeout_seconds or settings.METADATA_TIMEOUT_SECONDS)
        self._transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": f"Korima/1.0 (mailto:{self.contact_email})",
            "Accept": "application/json",
        }

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers=self.headers,
            ) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("crossref timeout url=%s", url)
            raise UpstreamTimeout() from exc
        except httpx.HTTPError as exc:
            logger.warning("crossref transport error url=%s: %s", url, exc)
            raise UpstreamUnavailable() from exc

        if response.status_code == 404:
            raise MetadataNotFound("DOI not found.")
        if response.status_code >= 400:
            logger.warning("crossref returned status=%s url=%s", response.status_code, url)
            raise UpstreamUnavailable(f"CrossRef returned HTTP {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("CrossRef returned an unreadable payload.") from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("CrossRef returned an unreadable payload.")
        return payload

    async def search_by_title(self, query: str, rows: int = 10) -> List[CitationRecord]:
        text = str(query or "").strip()
        if not text:
            raise ValidationFailed("A title is required.")
        payload = await self._get_json(
            f"{self.base_url}/works",
            params={"query.title": text, "rows": max(1, min(int(rows), 50)), "select": SEARCH_FIELDS},
        )
        items = (payload.get("message") or {}).get("items") or []
        if not items:
            raise MetadataNotFound("No results found.")
        return [CitationRecord.from_work(item) for item in items]

    async def lookup_doi(self, doi: str) -> CitationRecord:
        clean_doi = normalize_doi(doi)
        payload = await self._get_json(f"{self.base_url}/works/{quote(clean_doi, safe='')}")
        message = payload.get("message")
        if not isinstance(message, dict) or not message:
            raise MetadataNotFound("No record found for this DOI.")
        return CitationRecord.from_work(message)
