"""
Tenant provisioning and following management (bearer ADMIN_API_TOKEN)
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from typing import List, Optional
from pydantic import BaseModel
import secrets

from fediprofile.core.activitypub.follow import MISSING_KEY
from fediprofile.core.activitypub.processor import ActivityDispatcher
from fediprofile.core.activitypub.utils import generate_actor_id
from fediprofile.core.config import settings
from fediprofile.core.database import TenantResolver, TenantStore, initialize_tenant
from fediprofile.core.dependencies import get_dispatcher, get_resolver, request_origin
from fediprofile.core.exceptions import TenantValidationError
from fediprofile.models.tables import User


def require_admin_token(authorization: Optional[str] = Header(default=None)) -> None:
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=403, detail="Tenant API is disabled")
    expected = f"Bearer {settings.ADMIN_API_TOKEN}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid token")


router = APIRouter(dependencies=[Depends(require_admin_token)])

class TenantCreate(BaseModel):
    domain: str
    slug: str
    display_name: Optional[str] = None
    mastodon_user: Optional[str] = None
    mastodon_server: Optional[str] = None

class TenantResponse(BaseModel):
    slug: str
    domain: str
    display_name: Optional[str] = None
    mastodon_user: Optional[str] = None
    mastodon_server: Optional[str] = None
    actor_id: str
    has_keys: bool

class FollowCreate(BaseModel):
    actor_url: str

class FollowResult(BaseModel):
    ok: bool
    error: Optional[str] = None


async def tenant_response(user: User, store: TenantStore, scheme: str) -> TenantResponse:
    return TenantResponse(
        slug=user.slug,
        domain=store.domain,
        display_name=user.display_name,
        mastodon_user=user.mastodon_user,
        mastodon_server=user.mastodon_server,
        actor_id=generate_actor_id(scheme, store.domain, user.slug),
        has_keys=await store.get_actor_keys() is not None,
    )


async def registered_store(resolver: TenantResolver, domain: str, slug: str) -> TenantStore:
    try:
        resolution = await resolver.resolve(domain, slug, auto_create=False)
    except TenantValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not resolution.has_user_scope:
        raise HTTPException(status_code=404, detail="Profile not found")
    return resolution.store


@router.post("/", response_model=TenantResponse)
async def create_tenant(data: TenantCreate, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    """建立（或補完）profile：註冊 slug、建立儲存、產生金鑰"""
    try:
        store = await initialize_tenant(
            resolver,
            data.domain,
            data.slug,
            data.display_name,
            data.mastodon_user,
            data.mastodon_server,
        )
    except TenantValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    user = await store.domain_store.get_user(store.slug)
    scheme, _ = request_origin(request)
    return await tenant_response(user, store, scheme)


@router.get("/", response_model=List[TenantResponse])
async def list_tenants(domain: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    """列出網域上的 profile"""
    scheme, _ = request_origin(request)
    try:
        domain_store = resolver.domain_store(domain)
    except TenantValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    tenants = []
    for user in await domain_store.list_users():
        store = resolver.tenant_store(domain_store.domain, user.slug)
        tenants.append(await tenant_response(user, store, scheme))
    return tenants


@router.post("/{slug}/following", response_model=FollowResult)
async def follow_actor(
    slug: str,
    domain: str,
    data: FollowCreate,
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
    dispatcher: ActivityDispatcher = Depends(get_dispatcher),
):
    """送出 Follow 並記錄到 following index"""
    store = await registered_store(resolver, domain, slug)
    scheme, _ = request_origin(request)
    local_actor_uri = generate_actor_id(scheme, store.domain, store.slug)
    ok, error = await dispatcher.follow.follow_actor(store, local_actor_uri, data.actor_url)
    if not ok:
        raise HTTPException(status_code=409 if error == MISSING_KEY else 502, detail=error)
    return FollowResult(ok=True)


@router.delete("/{slug}/following", response_model=FollowResult)
async def unfollow_actor(
    slug: str,
    domain: str,
    actor_url: str,
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
    dispatcher: ActivityDispatcher = Depends(get_dispatcher),
):
    """送出 Undo(Follow)；本地紀錄無論送達與否都會移除"""
    store = await registered_store(resolver, domain, slug)
    scheme, _ = request_origin(request)
    local_actor_uri = generate_actor_id(scheme, store.domain, store.slug)
    ok, error = await dispatcher.follow.unfollow_actor(store, local_actor_uri, actor_url)
    return FollowResult(ok=ok, error=error)
