from collections.abc import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from financy import crud, models  # noqa: F401
from financy.config import Settings
from financy.db import Base
from financy.repository import Repository


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        TELEGRAM_BOT_TOKEN="test-token",
        TELEGRAM_WEBHOOK_SECRET=None,
        FRONTEND_URL="https://financy.test",
        OPENROUTER_API_KEY=None,
        OPENAI_API_KEY=None,
        EXCHANGE_RATE_API_KEY=None,
        default_currency="USD",
        supported_currencies=["USD", "EUR", "GBP", "BRL", "CAD"],
    )


@pytest.fixture
def ai_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"openrouter_api_key": "test-key", "openai_api_key": "test-key"})


@pytest.fixture
def session_factory() -> Iterator[sessionmaker[Session]]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory: sessionmaker[Session]) -> Repository:
    return Repository(session_factory)


@pytest.fixture
def user(session_factory: sessionmaker[Session]) -> models.UserModel:
    with session_factory() as db:
        return crud.create_user(db, name="Ana", telegram_user_id="42", default_currency="BRL")
