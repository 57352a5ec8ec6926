"""In-process cache of public profile projections."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.points import level_for_points

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileSummary:
    id: str
    full_name: Optional[str]
    avatar_url: Optional[str]
    level: str
    institution: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "ProfileSummary":
        return cls(
            id=user.id,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            level=level_for_points(user.points),
            institution=user.institution,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProfileCache:
    """Memoizes profile summaries for the lifetime of the process.

    Entries are only replaced by ``prime`` (after the user edits their own
    profile) or dropped wholesale by ``reset``. Level changes caused by points
    movements are not pushed here, so a cached level can lag behind.
    """

    def __init__(self):
        self._entries: Dict[str, ProfileSummary] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: str) -> Optional[ProfileSummary]:
        return self._entries.get(user_id)

    async def get_many(self, ids: Iterable[str], db: AsyncSession) -> Dict[str, ProfileSummary]:
        wanted = {str(user_id) for user_id in ids if user_id}
        found = {user_id: self._entries[user_id] for user_id in wanted if user_id in self._entries}
        missing = wanted - found.keys()
        if not missing:
            return found

        try:
            result = await db.execute(select(User).where(User.id.in_(sorted(missing))))
            users = result.scalars().all()
        except SQLAlchemyError as exc:
            logger.warning("profile cache fetch failed for %s ids: %s", len(missing), exc)
            return found

        for user in users:
            summary = ProfileSummary.from_user(user)
            self._entries[user.id] = summary
            found[user.id] = summary
        return found

    def prime(self, summary: ProfileSummary) -> None:
        self._entries[summary.id] = summary

    def reset(self) -> None:
        self._entries.clear()
