"""
Response payload access: short-lived signed URLs and the file download they point to.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.dependencies import get_storage
from services.storage import LocalBlobStorage
from services.submissions import open_signed_file, resolve_response_payload

router = APIRouter()


@router.get("/{response_id}/payload")
async def response_payload(
    response_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_storage),
):
    """
    Resolve the payload for the request owner or the contributor.
    Returns 410 once the retention window has closed.
    """
    return await resolve_response_payload(auth.user_id, response_id, db, storage)


@router.get("/{response_id}/file")
async def response_file(
    response_id: str,
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_storage),
):
    """Serve the PDF named by a signed token. The token is the only credential."""
    path, file_name = await open_signed_file(token, db, storage, expected_response_id=response_id)
    return FileResponse(path, media_type="application/pdf", filename=file_name)
