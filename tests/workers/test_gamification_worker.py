"""Gamification worker job tests."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from ttg.gamification.seed import seed_peer_groups
from ttg.workers import gamification_worker


@pytest.fixture
def worker_sessions(monkeypatch, session_factory):
    """Point the worker at the test database."""
    monkeypatch.setattr(gamification_worker, "get_session_factory", lambda: session_factory)


class TestMaintainPeerGroups:
    async def _active_trader(self, make_trade):
        user_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        for day in range(1, 21):
            await make_trade(user_id, now - timedelta(days=day), pnl=10, hold=timedelta(minutes=20))
        return user_id

    @pytest.mark.asyncio
    async def test_assigns_active_traders(self, db_session, make_trade, worker_sessions):
        await seed_peer_groups(db_session)
        await self._active_trader(make_trade)

        counts = await gamification_worker.maintain_peer_groups({})

        assert counts == {"removed": 0, "moved": 0, "assigned": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_failed_cleanup_does_not_stop_assignment(self, db_session, make_trade, worker_sessions, monkeypatch):
        async def broken_cleanup(*args, **kwargs):
            raise RuntimeError("cleanup exploded")

        monkeypatch.setattr(gamification_worker, "cleanup_inactive_members", broken_cleanup)
        await seed_peer_groups(db_session)
        await self._active_trader(make_trade)

        counts = await gamification_worker.maintain_peer_groups({})

        assert counts["failed"] == 1
        assert counts["assigned"] == 1

    @pytest.mark.asyncio
    async def test_failed_rebalance_does_not_stop_assignment(self, db_session, make_trade, worker_sessions, monkeypatch):
        async def broken_rebalance(*args, **kwargs):
            raise RuntimeError("rebalance exploded")

        monkeypatch.setattr(gamification_worker, "rebalance_peer_groups", broken_rebalance)
        await seed_peer_groups(db_session)
        await self._active_trader(make_trade)

        counts = await gamification_worker.maintain_peer_groups({})

        assert counts == {"removed": 0, "moved": 0, "assigned": 1, "failed": 1}
