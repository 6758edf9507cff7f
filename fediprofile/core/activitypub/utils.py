import html
import uuid
from typing import Any, Dict, List, Optional

from fediprofile.core.config import settings
from fediprofile.core.database import TenantStore
from fediprofile.models.tables import Link, ProfileSettings

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
ACTOR_CONTEXT = [
    AS_CONTEXT,
    "https://w3id.org/security/v1",
    {
        "schema": "http://schema.org#",
        "PropertyValue": "schema:PropertyValue",
        "value": "schema:value",
        "discoverable": "http://joinmastodon.org/ns#discoverable",
        "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
    },
]


def generate_actor_id(scheme: str, host: str, slug: str) -> str:
    """生成 Actor ID：{scheme}://{host}/{slug}"""
    return f"{scheme}://{host}/{slug}"


def generate_key_id(actor_id: str) -> str:
    return f"{actor_id}#main-key"


def generate_activity_id(actor_id: str, path: str) -> str:
    """生成 Activity ID（每次呼叫都是新的 uuid）"""
    return f"{actor_id}/{path}/{uuid.uuid4()}"


def absolute_url(base_url: str, value: str) -> str:
    if value.startswith("http://") or value.startswith("https://"):
        return value
    return f"{base_url}/{value.lstrip('/')}"


def link_attachment(link: Link) -> Dict[str, Any]:
    """PropertyValue for one profile link"""
    label = link.url.split("://", 1)[-1].rstrip("/")
    value = (
        f'<a href="{html.escape(link.url, quote=True)}" target="_blank" '
        f'rel="nofollow noopener noreferrer me">{html.escape(label)}</a>'
    )
    return {
        "type": "PropertyValue",
        "name": link.name,
        "value": value,
        "href": link.url,
        "icon": link.icon,
        "category": link.category,
        "description": link.description,
        "autoBoost": bool(link.auto_boost),
    }


def create_actor_object(
    scheme: str,
    host: str,
    slug: str,
    public_key_pem: Optional[str],
    profile: Optional[ProfileSettings] = None,
    links: Optional[List[Link]] = None,
) -> Dict[str, Any]:
    """建立 Actor 物件（純函式，不讀取任何儲存）"""
    base_url = f"{scheme}://{host}"
    actor_id = generate_actor_id(scheme, host, slug)

    name = (profile.actor_username if profile else None) or settings.DEFAULT_ACTOR_NAME
    summary = (profile.actor_bio if profile else None) or settings.DEFAULT_ACTOR_BIO
    avatar = absolute_url(
        base_url, (profile.actor_avatar_url if profile else None) or settings.DEFAULT_AVATAR_PATH
    )

    return {
        "@context": ACTOR_CONTEXT,
        "id": actor_id,
        "type": "Person",
        "preferredUsername": slug,
        "name": name,
        "summary": summary,
        "url": actor_id,
        "inbox": f"{actor_id}/inbox",
        "outbox": f"{actor_id}/outbox",
        "followers": f"{actor_id}/followers",
        "following": f"{actor_id}/following",
        "endpoints": {
            "sharedInbox": f"{base_url}/sharedInbox",
        },
        "discoverable": True,
        "manuallyApprovesFollowers": False,
        "icon": {
            "type": "Image",
            "mediaType": "image/png",
            "url": avatar,
        },
        "image": {
            "type": "Image",
            "mediaType": "image/png",
            "url": avatar,
        },
        "publicKey": {
            "id": generate_key_id(actor_id),
            "owner": actor_id,
            "publicKeyPem": public_key_pem or "",
        },
        "attachment": [link_attachment(link) for link in (links or []) if not link.hidden],
    }


async def build_actor(store: TenantStore, host: str, slug: str, scheme: str = "https") -> Dict[str, Any]:
    """Load profile data from the tenant store and build its Actor document"""
    keys = await store.get_actor_keys()
    profile = await store.get_settings()
    links = await store.get_links(include_hidden=False)
    return create_actor_object(
        scheme,
        host,
        slug,
        keys.public_key_pem if keys else None,
        profile,
        links,
    )
