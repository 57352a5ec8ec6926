"""
Citation metadata lookups used to prefill a request.

Lookup failures never break the request form: they come back as HTTP 200
with empty results and an ``error`` code. Malformed input is still a 422.
"""

import logging

from fastapi import APIRouter, Depends, Query

from routers.auth_scope import AuthContext, get_auth_context
from routers.dependencies import get_crossref_client, get_open_access_client
from routers.rate_limit import rate_limit
from services.crossref import CrossRefClient
from services.errors import MetadataNotFound, UpstreamUnavailable
from services.open_access import CLOSED, OpenAccessClient

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit("metadata", limit=30, window_seconds=60))])


@router.get("/search")
async def search_citations(
    title: str = Query(..., min_length=1, max_length=300),
    rows: int = Query(default=10, ge=1, le=50),
    _auth: AuthContext = Depends(get_auth_context),
    crossref: CrossRefClient = Depends(get_crossref_client),
):
    try:
        records = await crossref.search_by_title(title, rows=rows)
    except (MetadataNotFound, UpstreamUnavailable) as exc:
        logger.info("citation search degraded code=%s", exc.code)
        return {"items": [], "error": exc.code}
    return {"items": [record.to_dict() for record in records], "error": None}


@router.get("/doi/{doi:path}")
async def lookup_citation(
    doi: str,
    _auth: AuthContext = Depends(get_auth_context),
    crossref: CrossRefClient = Depends(get_crossref_client),
):
    try:
        record = await crossref.lookup_doi(doi)
    except (MetadataNotFound, UpstreamUnavailable) as exc:
        logger.info("doi lookup degraded code=%s", exc.code)
        return {"item": None, "error": exc.code}
    return {"item": record.to_dict(), "error": None}


@router.get("/open-access")
async def open_access_status(
    doi: str = Query(..., min_length=1),
    _auth: AuthContext = Depends(get_auth_context),
    open_access: OpenAccessClient = Depends(get_open_access_client),
):
    try:
        info = await open_access.check(doi)
    except (MetadataNotFound, UpstreamUnavailable) as exc:
        logger.info("open-access check degraded code=%s", exc.code)
        return {**CLOSED.to_dict(), "error": exc.code}
    return {**info.to_dict(), "error": None}
