from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import ORJSONResponse
from typing import Any, Dict, Tuple
from urllib.parse import urlparse
import re

from fediprofile.core.activitypub.signatures import ACTIVITY_JSON
from fediprofile.core.activitypub.utils import generate_actor_id
from fediprofile.core.database import TenantResolver, normalize_domain
from fediprofile.core.dependencies import get_resolver, request_origin

webfinger_router = APIRouter()

ACCT_PATTERN = re.compile(r'^(?:acct:)?@?([^@/]+)@([^@/]+)$')


def parse_resource(resource: str) -> Tuple[str, str]:
    """acct:slug@host 或 actor URL -> (slug, host)"""
    resource = resource.strip()
    match = ACCT_PATTERN.match(resource)
    if match:
        return match.group(1), match.group(2)
    parts = urlparse(resource)
    segments = [segment for segment in parts.path.split("/") if segment]
    if parts.scheme in ("http", "https") and parts.hostname and len(segments) == 1:
        return segments[0], parts.hostname
    raise HTTPException(status_code=400, detail="Invalid resource format")


@webfinger_router.get("/webfinger")
async def handle_webfinger(
    resource: str,
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
):
    """處理 WebFinger 請求"""
    slug, domain = parse_resource(resource)
    scheme, host = request_origin(request)

    # 只回答本站網域
    if normalize_domain(domain) != normalize_domain(host):
        raise HTTPException(status_code=404, detail="Domain not found")

    resolution = await resolver.resolve(host, slug, auto_create=False)
    if not resolution.has_user_scope:
        raise HTTPException(status_code=404, detail="Actor not found")

    actor_id = generate_actor_id(scheme, host, resolution.slug)
    data: Dict[str, Any] = {
        "subject": f"acct:{resolution.slug}@{normalize_domain(host)}",
        "aliases": [actor_id],
        "links": [
            {
                "rel": "self",
                "type": ACTIVITY_JSON,
                "href": actor_id,
            },
            {
                "rel": "http://webfinger.net/rel/profile-page",
                "type": "text/html",
                "href": actor_id,
            },
        ],
    }
    return ORJSONResponse(
        data,
        media_type="application/jrd+json",
        headers={"Cache-Control": "public, max-age=300"},
    )
