"""HTTP API tests: identity headers, admin gates and the main flows."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from ttg.db.models import AchievementDefinition
from ttg.gamification.seed import seed_peer_groups

API = "/api/v1/gamification"


def _now():
    return datetime.now(timezone.utc)


class TestIdentity:
    @pytest.mark.asyncio
    async def test_missing_user_header(self, client: AsyncClient):
        response = await client.get(f"{API}/achievements")
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    @pytest.mark.asyncio
    async def test_malformed_user_header(self, client: AsyncClient):
        response = await client.get(f"{API}/stats", headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_route_needs_role(self, client: AsyncClient, headers_for):
        response = await client.post(f"{API}/leaderboards/update", headers=headers_for(uuid.uuid4()))
        assert response.status_code == 403


class TestAchievementsApi:
    @pytest.mark.asyncio
    async def test_check_awards_and_stats(self, client: AsyncClient, db_session, make_trade, headers_for, fake_redis):
        user_id = uuid.uuid4()
        db_session.add(AchievementDefinition(
            key="first_trade", name="First Trade", description="Log a trade", category="trading",
            difficulty="bronze", points=120, criteria={"type": "trade_count", "count": 1},
        ))
        await db_session.commit()
        await make_trade(user_id, _now() - timedelta(hours=3))

        response = await client.post(f"{API}/achievements/check", headers=headers_for(user_id))

        assert response.status_code == 200
        data = response.json()
        assert [a["key"] for a in data["new_achievements"]] == ["first_trade"]
        assert data["xp_gained"] == 120
        assert "level_up" in fake_redis.event_types()

        stats = (await client.get(f"{API}/stats", headers=headers_for(user_id))).json()
        assert stats["total_points"] == 120
        assert stats["level"] == 2
        assert stats["level_progress"]["xp_into_level"] == 20

        listing = (await client.get(f"{API}/achievements", headers=headers_for(user_id))).json()
        assert listing["total_available"] == 1
        assert listing["total_earned"] == 1

        earned = (await client.get(f"{API}/achievements/earned", headers=headers_for(user_id))).json()
        assert earned["total_points"] == 120

    @pytest.mark.asyncio
    async def test_immediate_trigger(self, client: AsyncClient, db_session, headers_for):
        user_id = uuid.uuid4()
        db_session.add(AchievementDefinition(
            key="welcome", name="Welcome", description="", category="onboarding",
            difficulty="bronze", points=10, criteria={"type": "registration"},
        ))
        await db_session.commit()

        first = await client.post(
            f"{API}/achievements/check", json={"trigger": "registration"}, headers=headers_for(user_id)
        )
        second = await client.post(
            f"{API}/achievements/check", json={"trigger": "registration"}, headers=headers_for(user_id)
        )

        assert first.json()["xp_gained"] == 10
        assert second.json()["new_achievements"] == []

    @pytest.mark.asyncio
    async def test_unknown_trigger_rejected(self, client: AsyncClient, headers_for):
        response = await client.post(
            f"{API}/achievements/check", json={"trigger": "logout"}, headers=headers_for(uuid.uuid4())
        )
        assert response.status_code == 422


class TestChallengesApi:
    def _body(self, **overrides):
        body = {
            "key": "clean_week",
            "name": "Clean Week",
            "criteria": {"type": "trades_without_revenge"},
            "start_date": (_now() - timedelta(days=1)).isoformat(),
            "end_date": (_now() + timedelta(days=6)).isoformat(),
            "target_value": 5,
            "reward_points": 50,
        }
        body.update(overrides)
        return body

    @pytest.mark.asyncio
    async def test_create_requires_admin(self, client: AsyncClient, headers_for):
        response = await client.post(f"{API}/challenges", json=self._body(), headers=headers_for(uuid.uuid4()))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_create_join_and_list(self, client: AsyncClient, headers_for, fake_redis):
        admin, user_id = uuid.uuid4(), uuid.uuid4()
        created = await client.post(f"{API}/challenges", json=self._body(), headers=headers_for(admin, admin=True))
        assert created.status_code == 201
        challenge_id = created.json()["id"]

        joined = await client.post(f"{API}/challenges/{challenge_id}/join", headers=headers_for(user_id))
        assert joined.status_code == 200
        assert joined.json()["joined"] is True
        assert joined.json()["participation"]["status"] == "active"

        again = await client.post(f"{API}/challenges/{challenge_id}/join", headers=headers_for(user_id))
        assert again.json()["joined"] is False
        assert fake_redis.event_types() == ["challenge_joined"]

        active = (await client.get(f"{API}/challenges/active", headers=headers_for(user_id))).json()
        assert active["challenges"][0]["participant_count"] == 1

        mine = (await client.get(f"{API}/challenges", headers=headers_for(user_id))).json()
        assert [c["challenge"]["key"] for c in mine["challenges"]] == ["clean_week"]

        board = (await client.get(f"{API}/challenges/{challenge_id}/leaderboard", headers=headers_for(user_id))).json()
        assert board["entries"][0]["is_current_user"] is True

    @pytest.mark.asyncio
    async def test_invalid_rule(self, client: AsyncClient, headers_for):
        response = await client.post(
            f"{API}/challenges",
            json=self._body(criteria={"type": "get_rich"}),
            headers=headers_for(uuid.uuid4(), admin=True),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_join_unknown(self, client: AsyncClient, headers_for):
        response = await client.post(f"{API}/challenges/999/join", headers=headers_for(uuid.uuid4()))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_join_opted_out(self, client: AsyncClient, headers_for, set_privacy):
        admin, user_id = uuid.uuid4(), uuid.uuid4()
        await set_privacy(user_id, participate_in_challenges=False)
        created = await client.post(f"{API}/challenges", json=self._body(), headers=headers_for(admin, admin=True))

        response = await client.post(f"{API}/challenges/{created.json()['id']}/join", headers=headers_for(user_id))

        assert response.status_code == 403


class TestLeaderboardsApi:
    @pytest.mark.asyncio
    async def test_create_compile_and_read(self, client: AsyncClient, make_trade, headers_for):
        admin, trader = uuid.uuid4(), uuid.uuid4()
        created = await client.post(
            f"{API}/leaderboards",
            json={"key": "all_time_pnl", "name": "All-Time P&L", "metric_key": "total_pnl", "period_type": "all_time",
                  "min_participants": 1},
            headers=headers_for(admin, admin=True),
        )
        assert created.status_code == 201
        await make_trade(trader, _now() - timedelta(days=2), pnl=75, strategy="breakout")

        compiled = await client.post(f"{API}/leaderboards/update", headers=headers_for(admin, admin=True))
        assert compiled.status_code == 200
        assert compiled.json() == {"results": {"all_time_pnl": 1}, "compiled": 1, "failed": 0}

        board = (await client.get(f"{API}/leaderboards/all_time_pnl", headers=headers_for(trader))).json()
        assert board["entries"][0]["score"] == 75
        assert board["entries"][0]["is_current_user"] is True
        assert board["min_participants_met"] is True

        listing = (await client.get(f"{API}/leaderboards", params={"strategy": "breakout"}, headers=headers_for(trader))).json()
        assert listing["filtered"] is True
        assert listing["filter_criteria"] == {"strategy": "breakout"}

        rankings = (await client.get(f"{API}/rankings", headers=headers_for(trader))).json()
        assert rankings["rankings"][0]["rank"] == 1

        options = (await client.get(f"{API}/rankings/filters", headers=headers_for(trader))).json()
        assert [s["value"] for s in options["strategies"]] == ["all", "breakout"]

    @pytest.mark.asyncio
    async def test_unknown_leaderboard(self, client: AsyncClient, headers_for):
        response = await client.get(f"{API}/leaderboards/nope", headers=headers_for(uuid.uuid4()))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_create_invalid_metric(self, client: AsyncClient, headers_for):
        response = await client.post(
            f"{API}/leaderboards",
            json={"key": "luck", "name": "Luck", "metric_key": "luck", "period_type": "daily"},
            headers=headers_for(uuid.uuid4(), admin=True),
        )
        assert response.status_code == 422


class TestPeersApi:
    @pytest.mark.asyncio
    async def test_assign_and_list(self, client: AsyncClient, db_session, make_trade, headers_for):
        await seed_peer_groups(db_session)
        user_id = uuid.uuid4()
        for i in range(20):
            await make_trade(user_id, _now() - timedelta(days=i + 1), pnl=10, hold=timedelta(minutes=20))

        assigned = await client.post(f"{API}/peer-groups/assign", headers=headers_for(user_id))

        assert assigned.status_code == 200
        data = assigned.json()
        assert data["profile"]["features"]["trading_style"] == "scalper"
        assert "Scalpers" in [g["name"] for g in data["assigned"]]

        listing = (await client.get(f"{API}/peer-groups", headers=headers_for(user_id))).json()
        assert len(listing["peer_groups"]) == len(data["assigned"])
        assert listing["peer_groups"][0]["stats"]["total_members"] == 1

    @pytest.mark.asyncio
    async def test_comparison_forbidden(self, client: AsyncClient, set_privacy, headers_for):
        user_id = uuid.uuid4()
        await set_privacy(user_id, share_with_peer_group=False)

        response = await client.get(
            f"{API}/peer-comparison", params={"metric": "achievement_points"}, headers=headers_for(user_id)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_comparison_without_group(self, client: AsyncClient, headers_for):
        response = await client.get(
            f"{API}/peer-comparison",
            params={"metric": "consistency_score", "timeframe": "weekly"},
            headers=headers_for(uuid.uuid4()),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "No peer group assigned"
