"""
Multi-tenant SQLite storage.

Every domain owns a registry store (``{domain}.db``) and every registered
profile slug owns an isolated tenant store (``{domain}_{slug}.db``).
``TenantResolver`` memoizes store handles process-wide and decides, per
request, whether a slug resolves to its own store or falls back to the
domain store (see ``TenantResolution.has_user_scope``).
"""

import asyncio
import logging
import os
import re
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional, Union
from urllib.parse import urlsplit

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fediprofile.core.config import settings
from fediprofile.core.exceptions import (
    DuplicateIdentityError, ReservedSlugError, TenantValidationError,
)
from fediprofile.core.keyring import generate_key_pair
from fediprofile.models.tables import (
    ActorKeys, BadgeIssuer, DomainBase, Follower, InboxMessage, Link, ProfileSettings,
    ReceivedBadge, TenantBase, User,
)

logger = logging.getLogger(__name__)

RESERVED_SLUGS = frozenset({
    "register", "admin", "login", "logout", "denied", "well-known", "api", "assets",
    "static", "inbox", "outbox", "followers", "following", "likes", "shares",
    "notifications", "featured", "search", "profile", "about", "settings", "help",
    "sharedinbox",
})

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def normalize_domain(domain: Optional[str]) -> str:
    """lower-case, trim, drop scheme / path / port"""
    value = (domain or "").strip().lower()
    if "://" not in value:
        value = "//" + value
    try:
        host = urlsplit(value).hostname
    except ValueError as e:
        raise TenantValidationError(f"Invalid domain: {domain}") from e
    if not host:
        raise TenantValidationError("Domain is required.")
    return host


def normalize_slug(slug: Optional[str]) -> str:
    return (slug or "").strip().strip("/").strip().lower()


def normalize_server(server: Optional[str]) -> Optional[str]:
    if not server or not server.strip():
        return None
    return normalize_domain(server)


def normalize_account(user: Optional[str]) -> Optional[str]:
    if not user or not user.strip():
        return None
    return user.strip().lstrip("@").lower()


class _SqliteStore:
    """One SQLite file; schema is created lazily on first physical access"""
    metadata = None

    def __init__(self, path: str):
        self.path = path
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    @property
    def exists(self) -> bool:
        return os.path.exists(self.path)

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            async with self.engine.begin() as conn:
                await conn.run_sync(self.metadata.create_all)
            self._schema_ready = True
            logger.debug("Schema ready for %s", self.path)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.ensure_schema()
        async with self.session_factory() as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


class DomainStore(_SqliteStore):
    """Domain-level registry: users and the following index"""
    metadata = DomainBase.metadata
    has_user_scope = False

    def __init__(self, path: str, domain: str):
        super().__init__(path)
        self.domain = domain

    async def get_user(self, slug: str) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.slug == normalize_slug(slug), User.deleted_utc.is_(None))
            )
            return result.scalar_one_or_none()

    async def find_user_by_account(self, user: str, server: str) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(
                    func.lower(User.mastodon_user) == user.lower(),
                    func.lower(User.mastodon_server) == server.lower(),
                    User.deleted_utc.is_(None),
                )
            )
            return result.scalars().first()

    async def list_users(self) -> List[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.deleted_utc.is_(None)).order_by(User.slug)
            )
            return list(result.scalars().all())

    async def count_users(self) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count()).select_from(User).where(User.deleted_utc.is_(None))
            )
            return result.scalar_one()

    async def register_user(
        self,
        slug: str,
        display_name: Optional[str] = None,
        mastodon_user: Optional[str] = None,
        mastodon_server: Optional[str] = None,
    ) -> User:
        """Create-or-get a slug in the registry.

        Raises ``ReservedSlugError`` for reserved words and
        ``DuplicateIdentityError`` when the external account is already bound
        to a different slug. Nothing is written in either case.
        """
        slug = normalize_slug(slug)
        if slug in RESERVED_SLUGS:
            raise ReservedSlugError(slug)
        if not SLUG_PATTERN.match(slug):
            raise TenantValidationError(f"'{slug}' is not a valid profile slug.")
        mastodon_user = normalize_account(mastodon_user)
        mastodon_server = normalize_server(mastodon_server)

        existing = await self.get_user(slug)
        if existing is not None:
            return existing

        if mastodon_user and mastodon_server:
            bound = await self.find_user_by_account(mastodon_user, mastodon_server)
            if bound is not None and bound.slug != slug:
                raise DuplicateIdentityError(mastodon_user, mastodon_server, bound.slug)

        user = User(
            slug=slug,
            display_name=display_name or slug,
            mastodon_user=mastodon_user,
            mastodon_server=mastodon_server,
        )
        try:
            async with self.session() as session:
                session.add(user)
                await session.commit()
        except IntegrityError:
            # 同時註冊同一個 slug：以先寫入者為準
            existing = await self.get_user(slug)
            if existing is None:
                raise
            return existing
        logger.info("Registered profile '%s' on %s", slug, self.domain)
        return user

    async def delete_user(self, slug: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(User)
                .where(User.slug == normalize_slug(slug), User.deleted_utc.is_(None))
                .values(deleted_utc=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount > 0


class TenantStore(_SqliteStore):
    """Per-profile store: keys, links, followers, badges, inbox log, settings"""
    metadata = TenantBase.metadata
    has_user_scope = True

    def __init__(self, path: str, domain: str, slug: str, domain_store: DomainStore):
        super().__init__(path)
        self.domain = domain
        self.slug = slug
        self.domain_store = domain_store

    # ---- keys ----

    async def get_actor_keys(self) -> Optional[ActorKeys]:
        async with self.session() as session:
            return await session.get(ActorKeys, 1)

    async def save_actor_keys(self, public_key_pem: str, private_key_pem: str) -> bool:
        """Insert-or-ignore; an existing keypair is never replaced"""
        stmt = sqlite_insert(ActorKeys.__table__).values(
            id=1, public_key_pem=public_key_pem, private_key_pem=private_key_pem
        ).on_conflict_do_nothing(index_elements=["id"])
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    # ---- settings ----

    async def get_settings(self) -> Optional[ProfileSettings]:
        async with self.session() as session:
            return await session.get(ProfileSettings, 1)

    async def ensure_settings(self) -> None:
        stmt = sqlite_insert(ProfileSettings.__table__).values(
            id=1, actor_username=settings.DEFAULT_ACTOR_NAME, ui_theme="theme-classic.css"
        ).on_conflict_do_nothing(index_elements=["id"])
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    # ---- links ----

    async def get_links(self, include_hidden: bool = True) -> List[Link]:
        query = select(Link).order_by(Link.id)
        if not include_hidden:
            query = query.where(Link.hidden.is_(False))
        async with self.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_auto_boost_links(self) -> List[Link]:
        async with self.session() as session:
            result = await session.execute(select(Link).where(Link.auto_boost.is_(True)))
            return list(result.scalars().all())

    async def save_link(self, name: str, url: str, **values: Any) -> int:
        """Upsert a link by url, returns its id"""
        stmt = sqlite_insert(Link.__table__).values(name=name, url=url, **values)
        updates = {"name": stmt.excluded.name}
        updates.update({key: stmt.excluded[key] for key in values})
        stmt = stmt.on_conflict_do_update(index_elements=["url"], set_=updates)
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(select(Link.id).where(Link.url == url))
            return result.scalar_one()

    async def set_link_following(self, actor_url: str, following: bool) -> int:
        """Mark every link pointing at ``actor_url`` (trailing slash ignored)"""
        target = actor_url.rstrip("/")
        async with self.session() as session:
            result = await session.execute(
                update(Link)
                .where(func.rtrim(Link.url, "/") == target)
                .values(following=following)
            )
            await session.commit()
            return result.rowcount

    # ---- followers ----

    async def upsert_follower(
        self,
        follower_uri: str,
        domain: Optional[str],
        avatar_uri: Optional[str] = None,
        display_name: Optional[str] = None,
        inbox: Optional[str] = None,
        status: str = "Accepted",
    ) -> None:
        stmt = sqlite_insert(Follower.__table__).values(
            follower_uri=follower_uri,
            domain=domain,
            avatar_uri=avatar_uri,
            display_name=display_name,
            inbox=inbox,
            status=status,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["follower_uri"],
            set_={
                "domain": stmt.excluded.domain,
                "avatar_uri": stmt.excluded.avatar_uri,
                "display_name": stmt.excluded.display_name,
                "inbox": stmt.excluded.inbox,
                "status": stmt.excluded.status,
            },
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def remove_follower(self, follower_uri: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                delete(Follower).where(Follower.follower_uri == follower_uri)
            )
            await session.commit()
            return result.rowcount > 0

    async def get_follower(self, follower_uri: str) -> Optional[Follower]:
        async with self.session() as session:
            return await session.get(Follower, follower_uri)

    async def get_followers(self) -> List[Follower]:
        async with self.session() as session:
            result = await session.execute(select(Follower).order_by(Follower.created_utc))
            return list(result.scalars().all())

    # ---- badges ----

    async def upsert_badge_issuer(
        self,
        actor_url: str,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> int:
        issuers = BadgeIssuer.__table__
        stmt = sqlite_insert(issuers).values(actor_url=actor_url, name=name, avatar=avatar, bio=bio)
        stmt = stmt.on_conflict_do_update(
            index_elements=["actor_url"],
            set_={
                "name": func.coalesce(stmt.excluded.name, issuers.c.name),
                "avatar": func.coalesce(stmt.excluded.avatar, issuers.c.avatar),
                "bio": func.coalesce(stmt.excluded.bio, issuers.c.bio),
            },
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(
                select(BadgeIssuer.id).where(BadgeIssuer.actor_url == actor_url)
            )
            return result.scalar_one()

    async def get_badge_issuers(self) -> List[BadgeIssuer]:
        async with self.session() as session:
            result = await session.execute(select(BadgeIssuer).order_by(BadgeIssuer.name))
            return list(result.scalars().all())

    async def upsert_received_badge(
        self,
        note_id: str,
        issuer_id: Optional[int],
        title: str,
        image: Optional[str] = None,
        description: Optional[str] = None,
        issued_on: Optional[str] = None,
    ) -> None:
        stmt = sqlite_insert(ReceivedBadge.__table__).values(
            note_id=note_id,
            issuer_id=issuer_id,
            title=title,
            image=image,
            description=description,
            issued_on=issued_on,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["note_id"],
            set_={
                "issuer_id": stmt.excluded.issuer_id,
                "title": stmt.excluded.title,
                "image": stmt.excluded.image,
                "description": stmt.excluded.description,
                "issued_on": stmt.excluded.issued_on,
            },
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_received_badges(self) -> List[ReceivedBadge]:
        async with self.session() as session:
            result = await session.execute(
                select(ReceivedBadge).order_by(ReceivedBadge.received_utc.desc())
            )
            return list(result.scalars().all())

    # ---- inbox log ----

    async def record_inbox_message(
        self,
        activity_id: str,
        activity_type: Optional[str],
        actor_uri: Optional[str],
        content: str,
    ) -> bool:
        stmt = sqlite_insert(InboxMessage.__table__).values(
            activity_id=activity_id,
            activity_type=activity_type,
            actor_uri=actor_uri,
            content=content,
        ).on_conflict_do_nothing(index_elements=["activity_id"])
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def mark_inbox_message_processed(self, activity_id: str) -> None:
        async with self.session() as session:
            await session.execute(
                update(InboxMessage)
                .where(InboxMessage.activity_id == activity_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc))
            )
            await session.commit()

    async def get_inbox_messages(self) -> List[InboxMessage]:
        async with self.session() as session:
            result = await session.execute(select(InboxMessage).order_by(InboxMessage.id))
            return list(result.scalars().all())


class TenantResolution(NamedTuple):
    """Result of ``TenantResolver.resolve``.

    ``store`` is the tenant store only when ``has_user_scope`` is true;
    otherwise it is the domain store and tenant-only operations must not be
    attempted on it.
    """
    store: Union[TenantStore, DomainStore]
    has_user_scope: bool
    domain: str
    slug: Optional[str]


class TenantResolver:
    """Process-wide store cache keyed by normalized (domain, slug)"""

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir or settings.DB_DATA
        self._stores: Dict[str, _SqliteStore] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, key: str, factory) -> Any:
        with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = factory()
                self._stores[key] = store
            return store

    def domain_store(self, domain: str) -> DomainStore:
        domain = normalize_domain(domain)
        return self._get_or_create(
            domain,
            lambda: DomainStore(os.path.join(self.data_dir, f"{domain}.db"), domain),
        )

    def tenant_store(self, domain: str, slug: str) -> TenantStore:
        """Handle for the slug's own store, whether or not it is registered"""
        domain = normalize_domain(domain)
        slug = normalize_slug(slug)
        if not slug:
            raise TenantValidationError("Profile slug is required.")
        domain_store = self.domain_store(domain)
        return self._get_or_create(
            f"{domain}_{slug}",
            lambda: TenantStore(
                os.path.join(self.data_dir, f"{domain}_{slug}.db"), domain, slug, domain_store
            ),
        )

    async def resolve(
        self, domain: str, slug: Optional[str] = None, auto_create: bool = True
    ) -> TenantResolution:
        domain_store = self.domain_store(domain)
        slug = normalize_slug(slug)
        fallback = TenantResolution(domain_store, False, domain_store.domain, slug or None)
        if not slug:
            return fallback

        user = await domain_store.get_user(slug)
        if user is None:
            logger.debug("Slug '%s' not registered on %s, using domain store", slug, domain_store.domain)
            return fallback

        store = self.tenant_store(domain_store.domain, slug)
        if not store.exists and not auto_create:
            logger.debug("Store for '%s' on %s not materialized", slug, domain_store.domain)
            return fallback
        await store.ensure_schema()
        return TenantResolution(store, True, domain_store.domain, slug)

    async def dispose(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.dispose()


async def initialize_tenant(
    resolver: TenantResolver,
    domain: str,
    slug: str,
    display_name: Optional[str] = None,
    mastodon_user: Optional[str] = None,
    mastodon_server: Optional[str] = None,
) -> TenantStore:
    """Register the slug, materialize its store, generate keys if missing.

    Not transactional. Calling it again for a partially initialized tenant
    completes the missing steps.
    """
    domain_store = resolver.domain_store(domain)
    user = await domain_store.register_user(slug, display_name, mastodon_user, mastodon_server)

    store = resolver.tenant_store(domain_store.domain, user.slug)
    await store.ensure_schema()
    await store.ensure_settings()

    if await store.get_actor_keys() is None:
        public_pem, private_pem = generate_key_pair()
        if await store.save_actor_keys(public_pem, private_pem):
            logger.info("Generated keypair for '%s' on %s", user.slug, domain_store.domain)
    return store


async def bootstrap_domains(resolver: TenantResolver, domains: List[str]) -> None:
    """Make sure every configured domain has its admin profile"""
    admin_user = normalize_account(settings.ADMIN_MASTODON_USER)
    admin_server = normalize_server(settings.ADMIN_MASTODON_DOMAIN)
    if admin_user and admin_server:
        display_name = f"Admin ({admin_user}@{admin_server})"
    else:
        display_name = "Administrator"

    for domain in domains:
        try:
            await initialize_tenant(resolver, domain, "root", display_name, admin_user, admin_server)
        except Exception:
            logger.exception("Failed to initialize domain %s", domain)
