"""Routers package."""

from . import (
    health,
    auth,
    requests,
    responses,
    points,
    profiles,
    notifications,
    metadata,
    admin,
)
