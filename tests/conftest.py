import os
import tempfile

# Settings are read at import time, so the environment has to be ready first.
_TMP_DIR = tempfile.mkdtemp(prefix="threely-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["MESHY_API_KEY"] = "test-meshy-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_EMAILS"] = '["boss@threely.com"]'
os.environ["FRONTEND_DIR"] = os.path.join(_TMP_DIR, "frontend")

import httpx  # noqa: E402
import pytest  # noqa: E402

from threely.auth import create_access_token, get_password_hash  # noqa: E402
from threely.db import Base, async_session_maker, engine  # noqa: E402
from threely.models import Asset, User  # noqa: E402
from threely.server import app  # noqa: E402

GLB_URL = "https://res.cloudinary.com/demo/raw/upload/dalma-ai/models/rex.glb"


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    app.state.pending_generations = {}
    yield
    await engine.dispose()


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
async def session():
    async with async_session_maker() as s:
        yield s


@pytest.fixture
def make_user():
    async def _make_user(username="alice", email=None, tokens=1, is_admin=False, password="secret123"):
        async with async_session_maker() as s:
            user = User(
                username=username,
                email=email or f"{username}@example.com",
                hashed_password=get_password_hash(password),
                tokens=tokens,
                is_admin=is_admin,
                role="admin" if is_admin else "user",
                liked_assets=[],
                generated_models=[],
            )
            s.add(user)
            await s.commit()
            return user

    return _make_user


@pytest.fixture
def make_asset():
    async def _make_asset(**overrides):
        fields = {
            "name": "Rex",
            "model_files": {
                "glb": {"filename": "rex.glb", "url": GLB_URL, "publicId": "dalma-ai/models/rex.glb", "size": 1024, "isProxy": False},
            },
            "available_formats": ["glb"],
        }
        fields.update(overrides)
        async with async_session_maker() as s:
            asset = Asset(**fields)
            s.add(asset)
            await s.commit()
            return asset

    return _make_asset


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def headers_for():
    return auth_headers
