"""Shared test fixtures.

Every test gets its own SQLite database file with the full schema, so the
suite runs without PostgreSQL or Redis. Journal tables (trades, privacy
settings) are filled through the factory fixtures below.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ttg.db.base import Base
from ttg.db.models import GamificationPrivacy, RevengeTradingEvent, Trade
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.privacy.service import SqlPrivacySettingsProvider
from ttg.trades.provider import SqlTradeHistoryProvider


class FakeRedis:
    """Records published messages instead of sending them."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    async def ping(self) -> bool:
        return True

    def event_types(self) -> list[str]:
        return [payload["type"] for _, payload in self.published]


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh database file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ttg_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def dispatcher(fake_redis: FakeRedis) -> NotificationDispatcher:
    return NotificationDispatcher(fake_redis, "notifications:user")


@pytest.fixture
def trades(db_session: AsyncSession) -> SqlTradeHistoryProvider:
    return SqlTradeHistoryProvider(db_session)


@pytest.fixture
def privacy(db_session: AsyncSession) -> SqlPrivacySettingsProvider:
    return SqlPrivacySettingsProvider(db_session)


@pytest.fixture
def make_trade(db_session: AsyncSession):
    """Insert one journal trade. Closed trades derive exit_price from pnl."""

    async def _make(
        user_id: uuid.UUID,
        entry_time: datetime,
        pnl: float | None = 10.0,
        hold: timedelta = timedelta(hours=1),
        quantity: float = 10,
        entry_price: float = 100.0,
        exit_price: float | None = None,
        symbol: str = "AAPL",
        side: str = "long",
        strategy: str | None = None,
        notes: str | None = None,
        closed: bool = True,
    ) -> Trade:
        if closed and exit_price is None and pnl is not None:
            exit_price = entry_price + pnl / quantity
        trade = Trade(
            user_id=user_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            exit_price=exit_price if closed else None,
            entry_time=entry_time,
            exit_time=entry_time + hold if closed else None,
            pnl=pnl if closed else None,
            strategy=strategy,
            notes=notes,
        )
        db_session.add(trade)
        await db_session.commit()
        return trade

    return _make


@pytest.fixture
def set_privacy(db_session: AsyncSession):
    """Store privacy flags for a user (unset flags keep their defaults)."""

    async def _set(user_id: uuid.UUID, **flags) -> GamificationPrivacy:
        row = GamificationPrivacy(user_id=user_id, **flags)
        db_session.add(row)
        await db_session.commit()
        return row

    return _set


@pytest.fixture
def add_revenge_event(db_session: AsyncSession):
    async def _add(user_id: uuid.UUID, created_at: datetime) -> None:
        db_session.add(RevengeTradingEvent(user_id=user_id, created_at=created_at))
        await db_session.commit()

    return _add


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, dispatcher: NotificationDispatcher) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database and fake Redis."""
    from ttg.dependencies import get_db, get_dispatcher
    from ttg.main import create_app

    app = create_app()

    async def _test_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = _test_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers_for():
    """Gateway identity headers for a user."""

    def _headers(user_id: uuid.UUID, admin: bool = False) -> dict[str, str]:
        headers = {"X-User-Id": str(user_id)}
        if admin:
            headers["X-User-Role"] = "admin"
        return headers

    return _headers
