from fastapi import APIRouter, Depends
from fastapi.responses import ORJSONResponse

from fediprofile.core.config import settings
from fediprofile.core.database import TenantResolver
from fediprofile.core.dependencies import get_resolver

router = APIRouter()

@router.get("/")
async def health_check(resolver: TenantResolver = Depends(get_resolver)):
    """Health check endpoint"""
    storage_status = "healthy"
    try:
        for domain in settings.DOMAINS:
            await resolver.domain_store(domain).count_users()
    except Exception as e:
        storage_status = f"unhealthy: {str(e)}"

    # 直接回傳 ORJSONResponse 並加快取極短 TTL
    return ORJSONResponse({
        "status": "ok",
        "storage": storage_status,
        "service": settings.PROJECT_NAME
    }, headers={"Cache-Control": "public, max-age=5"})
