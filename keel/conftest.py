import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from credential_store import CredentialStore, make_password_context
from file_ops import FileOperations
from panel_config import AppConfig
from panel_server import create_app
from path_resolver import PathResolver
from worker_pool import WorkerConfig, WorkerPool

# Minimum bcrypt cost keeps the suite fast
FAST_ROUNDS = 4

ADMIN_IDENTIFIER = "admin@example.com"
ADMIN_PASSWORD = "AdminPass!23"


@pytest.fixture
def pwd_context():
    return make_password_context(FAST_ROUNDS)


@pytest.fixture
def credentials(pwd_context):
    return CredentialStore(pwd_context)


@pytest.fixture
def root_dir(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def resolver(root_dir):
    return PathResolver(str(root_dir))


@pytest_asyncio.fixture
async def pool():
    worker_pool = WorkerPool(WorkerConfig(max_workers=4))
    await worker_pool.start()
    yield worker_pool
    await worker_pool.shutdown()


@pytest.fixture
def files(resolver, pool):
    return FileOperations(resolver, pool, max_upload_bytes=1024, blocked_extensions=[".exe"])


@pytest.fixture
def app_config(root_dir):
    config = AppConfig()
    config.server.workers = 4
    config.storage.root_dir = str(root_dir)
    config.storage.max_upload_bytes = 1024
    config.storage.chunk_size = 256
    config.security.admin_identifier = ADMIN_IDENTIFIER
    config.security.admin_password = ADMIN_PASSWORD
    config.security.bcrypt_rounds = FAST_ROUNDS
    return config


@pytest.fixture
def app(app_config):
    return create_app(app_config)


@pytest_asyncio.fixture
async def client(app):
    """
    HTTPX AsyncClient bound to the app. The lifespan does not run under
    ASGITransport; the worker pool starts on first use instead.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client
    await app.state.pool.shutdown()


@pytest_asyncio.fixture
async def admin_headers(client):
    response = await client.post(
        "/api/auth/login",
        json={"identifier": ADMIN_IDENTIFIER, "password": ADMIN_PASSWORD},
    )
    assert response.status_code == 200, response.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['session_token']}"}
