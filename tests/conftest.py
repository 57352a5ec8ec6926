import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.notifications import NotificationHub
from services.profile_cache import ProfileCache
from services.session_token import create_session_token
from services.storage import LocalBlobStorage


OWNER_ID = "owner-user"
CONTRIBUTOR_ID = "contributor-user"
OTHER_ID = "other-user"
ADMIN_ID = "admin-user"

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, email: str = None):
        token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(str(tmp_path / "blobs"), settings.STORAGE_BUCKET)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "korima.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add_all(
            [
                User(id=OWNER_ID, email="owner@example.com", full_name="Ana Owner", points=100, role="user"),
                User(id=CONTRIBUTOR_ID, email="contributor@example.com", full_name="Carlos Contrib", points=0, role="user"),
                User(id=OTHER_ID, email="other@example.com", full_name="Olga Other", points=100, role="user"),
                User(id=ADMIN_ID, email="admin@example.com", full_name="Adela Admin", points=0, role="admin"),
            ]
        )
        await session.commit()

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker, storage):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    previous_state = {
        "storage": app.state.storage,
        "profile_cache": app.state.profile_cache,
        "notification_hub": app.state.notification_hub,
    }
    app.state.storage = storage
    app.state.profile_cache = ProfileCache()
    app.state.notification_hub = NotificationHub()
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    for key, value in previous_state.items():
        setattr(app.state, key, value)
