"""Unpaywall open-access availability client."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import settings
from services.crossref import normalize_doi
from services.errors import MetadataNotFound, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class OpenAccessInfo:
    is_open_access: bool
    pdf_url: Optional[str] = None
    version: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


CLOSED = OpenAccessInfo(is_open_access=False)


class OpenAccessClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        contact_email: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.UNPAYWALL_API_URL).rstrip("/")
        self.contact_email = contact_email or settings.METADATA_CONTACT_EMAIL
        self.timeout_seconds = float(timeout_seconds or settings.METADATA_TIMEOUT_SECONDS)
        self._transport = transport

    async def check(self, doi: str) -> OpenAccessInfo:
        """Return availability for ``doi``.

        A record that exists but is not open access is a normal result, not an
        error. Unknown DOIs raise ``MetadataNotFound``.
        """
        clean_doi = normalize_doi(doi)
        url = f"{self.base_url}/{quote(clean_doi, safe='')}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.get(url, params={"email": self.contact_email})
        except httpx.TimeoutException as exc:
            logger.warning("unpaywall timeout doi=%s", clean_doi)
            raise UpstreamTimeout() from exc
        except httpx.HTTPError as exc:
            logger.warning("unpaywall transport error doi=%s: %s", clean_doi, exc)
            raise UpstreamUnavailable() from exc

        if response.status_code == 404:
            raise MetadataNotFound("DOI not found in the open-access index.")
        if response.status_code >= 400:
            logger.warning("unpaywall returned status=%s doi=%s", response.status_code, clean_doi)
            raise UpstreamUnavailable(f"Unpaywall returned HTTP {response.status_code}.")
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("Unpaywall returned an unreadable payload.") from exc

        if not isinstance(data, dict):
            raise UpstreamUnavailable("Unpaywall returned an unreadable payload.")
        location = data.get("best_oa_location")
        if not data.get("is_oa") or not isinstance(location, dict):
            return CLOSED
        return OpenAccessInfo(
            is_open_access=True,
            pdf_url=location.get("url_for_pdf") or location.get("url"),
            version=location.get("version") or "publishedVersion",
            source=location.get("host_type") or "publisher",
        )
