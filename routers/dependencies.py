"""Dependencies exposing process-wide collaborators held on ``app.state``."""

from fastapi.requests import HTTPConnection

from services.crossref import CrossRefClient
from services.notifications import NotificationHub
from services.open_access import OpenAccessClient
from services.profile_cache import ProfileCache
from services.storage import LocalBlobStorage


def get_profile_cache(request: HTTPConnection) -> ProfileCache:
    return request.app.state.profile_cache


def get_notification_hub(request: HTTPConnection) -> NotificationHub:
    return request.app.state.notification_hub


def get_storage(request: HTTPConnection) -> LocalBlobStorage:
    return request.app.state.storage


def get_crossref_client(request: HTTPConnection) -> CrossRefClient:
    return request.app.state.crossref


def get_open_access_client(request: HTTPConnection) -> OpenAccessClient:
    return request.app.state.open_access
