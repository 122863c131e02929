"""Shared pytest fixtures for statsync tests."""
import os
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Generator, List, Optional, Tuple

# Settings and the default engine are built at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTIFIER_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"
os.environ["SYNC_PAGE_DELAY_MS"] = "0"

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from statsync.models import Base, Game  # noqa: E402
from statsync.services.core.provider_client import ProviderClient  # noqa: E402
from statsync.services.sync.engine import SyncEngine  # noqa: E402

PROVIDER_URL = "https://provider.test/nfl/v1"

PageSpec = Tuple[List[Dict[str, Any]], Optional[str]]


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def sqlite_engine() -> Generator[Engine, None, None]:
    """Isolated in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(sqlite_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=sqlite_engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# FAKE PROVIDER
# =============================================================================

class FakeProvider:
    """
    Cursor-paginated provider served through httpx.MockTransport.

    ``streams`` maps a resource path (``teams``, ``advanced_stats/rushing``)
    to ``{cursor: (items, next_cursor)}``; the first page is under ``None``.
    ``failures`` maps a path to status codes returned (in order) before the
    stream is served.
    """

    def __init__(self):
        self.streams: Dict[str, Dict[Optional[str], PageSpec]] = {}
        self.failures: Dict[str, List[int]] = {}
        self.requests: List[httpx.Request] = []
        self.handlers: Dict[str, Any] = {}

    def serve(self, path: str, *pages: List[Dict[str, Any]]) -> None:
        """Chain ``pages`` with cursors c1, c2, ...; the last page ends the stream."""
        stream: Dict[Optional[str], PageSpec] = {}
        cursor: Optional[str] = None
        for index, items in enumerate(pages):
            next_cursor = f"c{index + 1}" if index < len(pages) - 1 else None
            stream[cursor] = (items, next_cursor)
            cursor = next_cursor
        self.streams[path] = stream

    def serve_raw(self, path: str, stream: Dict[Optional[str], PageSpec]) -> None:
        self.streams[path] = stream

    def fail(self, path: str, *status_codes: int) -> None:
        self.failures[path] = list(status_codes)

    def requests_for(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if _path_of(r) == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = _path_of(request)

        if path in self.handlers:
            return self.handlers[path](request)

        pending = self.failures.get(path)
        if pending:
            return httpx.Response(pending.pop(0), json={"error": "failure"})

        stream = self.streams.get(path)
        if stream is None:
            return httpx.Response(200, json={"data": [], "meta": {}})
        cursor = request.url.params.get("cursor")
        items, next_cursor = stream.get(cursor, ([], None))
        return httpx.Response(200, json={"data": items, "meta": {"next_cursor": next_cursor}})

    def client(self, **kwargs) -> ProviderClient:
        options = {"max_retries": 3, "retry_wait_min": 0, "retry_wait_max": 0}
        options.update(kwargs)
        return ProviderClient(
            api_key="test-key",
            base_url=PROVIDER_URL,
            transport=httpx.MockTransport(self.handler),
            **options,
        )


def _path_of(request: httpx.Request) -> str:
    return request.url.path.split("/nfl/v1/", 1)[-1]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def provider_client(provider: FakeProvider) -> AsyncGenerator[ProviderClient, None]:
    client = provider.client()
    yield client
    await client.close()


@pytest.fixture
def sync_engine(session_factory: sessionmaker, provider_client: ProviderClient) -> SyncEngine:
    return SyncEngine(session_factory, provider_client, batch_size=2, page_delay=0)


# =============================================================================
# SAMPLE DATA
# =============================================================================

def create_game(**kwargs) -> Game:
    """Helper to create a Game row with all required fields.

    Usage:
        game = create_game(provider_id=10, home_team_id=1, visitor_team_id=2)
    """
    defaults = {
        "provider_id": 1,
        "season": 2024,
        "week": 1,
        "postseason": False,
        "status": "Final",
        "home_team_id": 1,
        "visitor_team_id": 2,
        "home_score": None,
        "visitor_score": None,
        "raw": {},
        "updated_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    defaults.setdefault("natural_key", str(defaults["provider_id"]))
    return Game(**defaults)


@pytest.fixture
def sample_games(db_session: Session) -> List[Game]:
    """Three completed regular-season games (one tie), a playoff game and an unplayed one."""
    games = [
        create_game(provider_id=101, week=1, home_team_id=1, visitor_team_id=2, home_score=24, visitor_score=17),
        create_game(provider_id=102, week=2, home_team_id=2, visitor_team_id=3, home_score=10, visitor_score=10),
        create_game(provider_id=103, week=3, home_team_id=3, visitor_team_id=1, home_score=30, visitor_score=20),
        create_game(provider_id=104, week=19, postseason=True, home_team_id=1, visitor_team_id=3,
                    home_score=40, visitor_score=0),
        create_game(provider_id=105, week=4, status="Scheduled", home_team_id=1, visitor_team_id=2),
    ]
    db_session.add_all(games)
    db_session.commit()
    return games


# =============================================================================
# FASTAPI CLIENT FIXTURE
# =============================================================================

@pytest.fixture(scope="function")
async def api_client(
    session_factory: sessionmaker,
    sqlite_engine: Engine,
    provider: FakeProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client over a freshly built app.

    ASGITransport does not run the lifespan, so it is entered explicitly.
    Usage:
        async def test_endpoint(api_client):
            response = await api_client.get("/health")
    """
    from statsync.main import create_app
    from statsync.core.database import get_db

    app = create_app(
        session_factory=session_factory,
        bind=sqlite_engine,
        provider_client=provider.client(),
        enable_notifier=False,
        enable_scheduler=False,
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()
