"""SQLite tables for the domain registry and per-tenant stores.

Two independent metadata trees: ``DomainBase`` backs ``{domain}.db`` and
``TenantBase`` backs ``{domain}_{slug}.db``.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, PrimaryKeyConstraint, String, Text,
)
from sqlalchemy.orm import declarative_base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DomainBase = declarative_base()
TenantBase = declarative_base()


# ---- domain store ----

class User(DomainBase):
    """已註冊的 profile slug"""
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(64, collation="NOCASE"), unique=True, nullable=False)
    display_name = Column(String(255))
    mastodon_user = Column(String(255))
    mastodon_server = Column(String(255))
    created_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_utc = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_utc = Column(DateTime(timezone=True))


class FollowingEntry(DomainBase):
    """local user slug -> remote actor url（shared inbox 反查用）"""
    __tablename__ = "following"
    __table_args__ = (
        PrimaryKeyConstraint("user_slug", "actor_url"),
        Index("ix_following_actor_url", "actor_url"),
    )
    
    user_slug = Column(String(64, collation="NOCASE"), nullable=False)
    actor_url = Column(String(500), nullable=False)
    created_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---- tenant store ----

class Link(TenantBase):
    __tablename__ = "links"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    icon = Column(String(500))
    url = Column(String(500), unique=True, nullable=False)
    description = Column(Text)
    auto_boost = Column(Boolean, default=False, nullable=False)
    is_activitypub = Column(Boolean, default=False, nullable=False)
    category = Column(String(100))
    type = Column(String(50))
    following = Column(Boolean, default=False, nullable=False)
    hidden = Column(Boolean, default=False, nullable=False)
    actor_ap_uri = Column(String(500))
    created_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ActorKeys(TenantBase):
    """每個 tenant 恰好一組 RSA 金鑰（Id 固定為 1）"""
    __tablename__ = "actor_keys"
    
    id = Column(Integer, primary_key=True)
    public_key_pem = Column(Text, nullable=False)
    private_key_pem = Column(Text, nullable=False)


class BadgeIssuer(TenantBase):
    __tablename__ = "badge_issuers"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255))
    actor_url = Column(String(500), unique=True, nullable=False)
    avatar = Column(String(500))
    bio = Column(Text)
    following = Column(Boolean, default=False, nullable=False)


class ReceivedBadge(TenantBase):
    __tablename__ = "received_badges"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(String(500), unique=True, nullable=False)
    issuer_id = Column(Integer, ForeignKey("badge_issuers.id"))
    title = Column(String(255), nullable=False)
    image = Column(String(500))
    description = Column(Text)
    issued_on = Column(String(64))
    accepted_on = Column(DateTime(timezone=True))
    received_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Follower(TenantBase):
    """遠端追蹤者；inbox 在遠端 actor 取得失敗時為 NULL"""
    __tablename__ = "followers"
    
    follower_uri = Column(String(500), primary_key=True)
    domain = Column(String(255))
    avatar_uri = Column(String(500))
    display_name = Column(String(255))
    inbox = Column(String(500), nullable=True)
    status = Column(String(32), default="Accepted", nullable=False)
    created_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class InboxMessage(TenantBase):
    __tablename__ = "inbox_messages"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    activity_id = Column(String(500), unique=True, nullable=False)
    activity_type = Column(String(64))
    actor_uri = Column(String(500))
    content = Column(Text)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True))
    received_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ProfileSettings(TenantBase):
    __tablename__ = "settings"
    
    id = Column(Integer, primary_key=True)
    actor_username = Column(String(255), default="profile")
    actor_bio = Column(Text)
    actor_avatar_url = Column(String(500))
    ui_theme = Column(String(100), default="theme-classic.css")
