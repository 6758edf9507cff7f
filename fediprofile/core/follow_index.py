"""
Domain-wide following index: which local profiles follow a remote actor.

Lives in the domain store so that shared-inbox fan-out is a single query
no matter how many tenants the domain hosts.
"""

import logging
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from fediprofile.core.database import DomainStore, normalize_slug
from fediprofile.models.tables import FollowingEntry

logger = logging.getLogger(__name__)


def _normalize_actor(actor_url: str) -> str:
    return actor_url.strip().rstrip("/")


class FollowIndex:
    def __init__(self, domain_store: DomainStore):
        self.domain_store = domain_store

    async def add(self, slug: str, actor_url: str) -> None:
        """Insert-or-ignore"""
        stmt = sqlite_insert(FollowingEntry.__table__).values(
            user_slug=normalize_slug(slug), actor_url=_normalize_actor(actor_url)
        ).on_conflict_do_nothing(index_elements=["user_slug", "actor_url"])
        async with self.domain_store.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def remove(self, slug: str, actor_url: str) -> bool:
        async with self.domain_store.session() as session:
            result = await session.execute(
                delete(FollowingEntry).where(
                    FollowingEntry.user_slug == normalize_slug(slug),
                    FollowingEntry.actor_url == _normalize_actor(actor_url),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def followers_of_actor(self, actor_url: str) -> List[str]:
        """Slugs of local profiles following ``actor_url``"""
        async with self.domain_store.session() as session:
            result = await session.execute(
                select(FollowingEntry.user_slug)
                .where(FollowingEntry.actor_url == _normalize_actor(actor_url))
                .order_by(FollowingEntry.user_slug)
            )
            return list(result.scalars().all())

    async def following_of(self, slug: str) -> List[str]:
        async with self.domain_store.session() as session:
            result = await session.execute(
                select(FollowingEntry.actor_url)
                .where(FollowingEntry.user_slug == normalize_slug(slug))
                .order_by(FollowingEntry.created_utc)
            )
            return list(result.scalars().all())
