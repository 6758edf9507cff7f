from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse
from typing import Optional
import logging
import httpx
import uvicorn

from fediprofile.core.config import settings
from fediprofile.api.v1.api import api_router
from fediprofile.core.activitypub import users_router, well_known_router
from fediprofile.core.activitypub.processor import ActivityDispatcher
from fediprofile.core.activitypub.signatures import SignedClient, default_timeout
from fediprofile.core.database import TenantResolver, bootstrap_domains
from fediprofile.core.oauth import AppRegistrationCache, MastodonRegistrationService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="FediProfile",
    description="Link-in-bio profiles that federate over ActivityPub",
    version="1.0.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    default_response_class=ORJSONResponse,
)

# CORS settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Enable gzip compression for large responses
app.add_middleware(GZipMiddleware, minimum_size=500)

# Include API routes
app.include_router(api_router, prefix=settings.API_V1_STR)

# Include ActivityPub routes
# /.well-known 只提供發現端點
app.include_router(well_known_router, prefix="/.well-known", tags=["activitypub"])
# 其餘 ActivityPub 端點掛在根目錄
app.include_router(users_router, tags=["activitypub"])


async def init_app_state(
    target: FastAPI,
    client: Optional[httpx.AsyncClient] = None,
    data_dir: Optional[str] = None,
    bootstrap: bool = True,
) -> None:
    """Create the process-wide objects the routers depend on"""
    if client is None:
        # 建立共享 httpx AsyncClient（HTTP/2、連線池、逾時）
        client = httpx.AsyncClient(
            http2=True,
            timeout=default_timeout(),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=100),
            headers={"User-Agent": settings.USER_AGENT},
        )
    SignedClient.set_shared_client(client)
    target.state.http_client = client

    target.state.resolver = TenantResolver(data_dir or settings.DB_DATA)
    target.state.dispatcher = ActivityDispatcher.create(client)
    redirect_uris = [f"https://{domain}{settings.OAUTH_REDIRECT_PATH}" for domain in settings.DOMAINS]
    target.state.app_registrations = AppRegistrationCache(
        MastodonRegistrationService(client), redirect_uris
    )

    if bootstrap:
        await bootstrap_domains(target.state.resolver, settings.DOMAINS)


async def close_app_state(target: FastAPI) -> None:
    client = getattr(target.state, "http_client", None)
    if client is not None:
        await client.aclose()
    SignedClient.set_shared_client(None)
    resolver = getattr(target.state, "resolver", None)
    if resolver is not None:
        await resolver.dispose()


@app.on_event("startup")
async def startup_event():
    """Initialize resources on application startup"""
    await init_app_state(app)
    logger.info("FediProfile started for %s", ", ".join(settings.DOMAINS))

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown"""
    await close_app_state(app)

@app.get("/")
async def root():
    """Root path"""
    return {"message": "FediProfile ActivityPub Server"}


if __name__ == "__main__":
    uvicorn.run(
        "fediprofile.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
