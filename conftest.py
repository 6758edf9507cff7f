import httpx
import pytest

from fediprofile.core.config import settings
from fediprofile.core.database import TenantResolver, initialize_tenant
from fediprofile.core.keyring import generate_key_pair
from fediprofile.main import app, close_app_state, init_app_state

DOMAIN = "example.com"
LOCAL_ACTOR = "https://example.com/alice"
BOB = "https://remote.example/users/bob"
BOB_INBOX = "https://remote.example/users/bob/inbox"


@pytest.fixture(scope="session")
def keypair():
    """
    Testing-only keypair for a remote actor
    """
    public_key, private_key = generate_key_pair()
    return {
        "private_key": private_key,
        "public_key": public_key,
        "public_key_id": f"{BOB}#main-key",
    }


@pytest.fixture
def remote_actor():
    """Factory for remote actor documents"""

    def make(actor_id: str = BOB, inbox: str = None, public_key: str = None, name: str = "Bob"):
        document = {
            "@context": ["https://www.w3.org/ns/activitystreams"],
            "id": actor_id,
            "type": "Person",
            "preferredUsername": actor_id.rstrip("/").rsplit("/", 1)[-1],
            "name": name,
            "inbox": inbox or f"{actor_id}/inbox",
            "icon": {"type": "Image", "url": "https://remote.example/avatar.png"},
        }
        if public_key:
            document["publicKey"] = {
                "id": f"{actor_id}#main-key",
                "owner": actor_id,
                "publicKeyPem": public_key,
            }
        return document

    return make


@pytest.fixture
async def resolver(tmp_path):
    resolver = TenantResolver(str(tmp_path))
    yield resolver
    await resolver.dispose()


@pytest.fixture
async def http():
    """Outbound client; requests are intercepted when a test uses httpx_mock"""
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
async def alice(resolver):
    """Fully initialized profile with a keypair"""
    return await initialize_tenant(resolver, DOMAIN, "alice")


@pytest.fixture
async def keyless_alice(resolver):
    """Registered profile whose store exists but has no keypair"""
    await resolver.domain_store(DOMAIN).register_user("alice")
    store = resolver.tenant_store(DOMAIN, "alice")
    await store.ensure_schema()
    return store


@pytest.fixture
async def app_state(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DOMAINS", [DOMAIN])
    client = httpx.AsyncClient()
    await init_app_state(app, client=client, data_dir=str(tmp_path), bootstrap=False)
    yield app.state
    await close_app_state(app)


@pytest.fixture
async def client(app_state):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://example.com") as client:
        yield client
