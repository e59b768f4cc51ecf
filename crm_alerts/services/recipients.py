"""Role and office lookups shared by the monitor, checker and escalation engine."""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AppRole, Profile, UserRole

GLOBAL_DIRECTOR_ROLES = (AppRole.COMMERCIAL_DIRECTOR, AppRole.SUPERADMIN)
DIRECTOR_ROLES = (AppRole.OFFICE_DIRECTOR, AppRole.COMMERCIAL_MANAGER, *GLOBAL_DIRECTOR_ROLES)


def unique_ids(*groups: Iterable[UUID | None]) -> list[UUID]:
    """Flatten recipient groups keeping first-seen order and dropping blanks."""
    seen: dict[UUID, None] = {}
    for group in groups:
        for user_id in group:
            if user_id is not None:
                seen.setdefault(user_id, None)
    return list(seen)


class RecipientResolver:
    """Resolves who should hear about a goal or alert."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def users_with_roles(
        self,
        roles: Iterable[AppRole],
        office: str | None = None,
    ) -> list[UUID]:
        """Profiles holding any of `roles`, optionally restricted to one office."""
        query = (
            select(Profile.id)
            .join(UserRole, UserRole.user_id == Profile.id)
            .where(UserRole.role.in_(list(roles)))
            .order_by(Profile.id)
        )
        if office is not None:
            query = query.where(Profile.office == office)

        result = await self._session.execute(query)
        return unique_ids(result.scalars().all())

    async def office_directors(self, office: str | None) -> list[UUID]:
        if not office:
            return []
        return await self.users_with_roles([AppRole.OFFICE_DIRECTOR], office=office)

    async def commercial_managers(self) -> list[UUID]:
        return await self.users_with_roles([AppRole.COMMERCIAL_MANAGER])

    async def global_directors(self) -> list[UUID]:
        """Commercial directors and superadmins: they see everything."""
        return await self.users_with_roles(GLOBAL_DIRECTOR_ROLES)

    async def all_directors(self) -> list[UUID]:
        return await self.users_with_roles(DIRECTOR_ROLES)

    async def office_members(self, office: str) -> list[UUID]:
        result = await self._session.execute(
            select(Profile.id).where(Profile.office == office).order_by(Profile.id)
        )
        return list(result.scalars().all())

    async def office_of(self, user_id: UUID | None) -> str | None:
        if user_id is None:
            return None
        profile = await self._session.get(Profile, user_id)
        return profile.office if profile else None
