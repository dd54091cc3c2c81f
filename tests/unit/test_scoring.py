"""Leaderboard scoring and ranking tests."""

import uuid
from datetime import date, datetime, timedelta, timezone

from ttg.competition.anonymize import anonymous_name
from ttg.competition.scoring import TRADE_SCORERS, MemberScore, period_bounds, rank_scores
from ttg.trades.provider import TradeRecord

A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
B = uuid.UUID("00000000-0000-0000-0000-00000000000b")
C = uuid.UUID("00000000-0000-0000-0000-00000000000c")


def _trade(pnl, user_id=A, quantity=10.0):
    entry = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
    return TradeRecord(
        id=uuid.uuid4(),
        user_id=user_id,
        symbol="TSLA",
        side="long",
        quantity=quantity,
        entry_price=100.0,
        exit_price=100.0 + pnl / quantity,
        entry_time=entry,
        exit_time=entry + timedelta(minutes=30),
        pnl=pnl,
    )


class TestRanking:
    def test_descending_with_dense_positions(self):
        ranked = rank_scores("total_pnl", [MemberScore(A, 10), MemberScore(B, 30), MemberScore(C, 20)])
        assert [(r.user_id, r.rank) for r in ranked] == [(B, 1), (C, 2), (A, 3)]

    def test_ties_broken_by_user_id(self):
        ranked = rank_scores("total_pnl", [MemberScore(C, 5), MemberScore(A, 5), MemberScore(B, 5)])
        assert [r.user_id for r in ranked] == [A, B, C]
        assert [r.rank for r in ranked] == [1, 2, 3]

    def test_ranking_is_stable_across_input_order(self):
        scores = [MemberScore(B, 1), MemberScore(A, 1), MemberScore(C, 2)]
        first = rank_scores("best_trade", scores)
        second = rank_scores("best_trade", list(reversed(scores)))
        assert [(r.user_id, r.rank) for r in first] == [(r.user_id, r.rank) for r in second]

    def test_worst_trade_ranks_lowest_first(self):
        ranked = rank_scores("worst_trade", [MemberScore(A, -5), MemberScore(B, -50)])
        assert [r.user_id for r in ranked] == [B, A]

    def test_empty(self):
        assert rank_scores("total_pnl", []) == []


class TestPeriodBounds:
    def test_daily(self):
        start, end = period_bounds("daily", date(2026, 3, 11))
        assert start == datetime(2026, 3, 11, tzinfo=timezone.utc)
        assert end is None

    def test_weekly_starts_monday(self):
        start, _ = period_bounds("weekly", date(2026, 3, 11))  # a Wednesday
        assert start == datetime(2026, 3, 9, tzinfo=timezone.utc)

    def test_monthly(self):
        start, _ = period_bounds("monthly", date(2026, 3, 11))
        assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_all_time_unbounded(self):
        assert period_bounds("all_time", date(2026, 3, 11)) == (None, None)

    def test_custom_uses_definition_window(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert period_bounds("custom", date(2026, 3, 11), start, end) == (start, end)


class TestScorers:
    def test_pnl_metadata(self):
        score, metadata = TRADE_SCORERS["total_pnl"]([_trade(30), _trade(-10)])
        assert score == 20
        assert metadata["trade_count"] == 2
        assert metadata["win_rate"] == 50
        assert metadata["avg_trade"] == 10

    def test_best_trade_requires_a_winner(self):
        assert TRADE_SCORERS["best_trade"]([_trade(-3)]) is None
        score, metadata = TRADE_SCORERS["best_trade"]([_trade(3), _trade(9)])
        assert score == 9
        assert metadata["best_trade_symbol"] == "TSLA"

    def test_worst_trade_requires_a_loser(self):
        assert TRADE_SCORERS["worst_trade"]([_trade(3)]) is None
        score, _ = TRADE_SCORERS["worst_trade"]([_trade(-3), _trade(-9)])
        assert score == -9

    def test_consistency_respects_minimum(self):
        trades = [_trade(10 + i % 2) for i in range(4)]
        assert TRADE_SCORERS["consistency_score"](trades, min_trades=5) is None
        assert TRADE_SCORERS["consistency_score"](trades, min_trades=4) is not None

    def test_risk_adherence(self):
        score, metadata = TRADE_SCORERS["risk_adherence"]([_trade(10), _trade(50)])
        assert score == 50.0
        assert metadata["within_risk_trades"] == 1


class TestAnonymousName:
    def test_stable_for_same_salt(self):
        assert anonymous_name(A, "pepper") == anonymous_name(A, "pepper")

    def test_depends_on_salt_and_user(self):
        names = {anonymous_name(A, "one"), anonymous_name(A, "two"), anonymous_name(B, "one")}
        assert len(names) == 3

    def test_shape(self):
        adjective, animal, number = anonymous_name(C, "salt").split(" ")
        assert adjective.isalpha() and animal.isalpha()
        assert len(number) == 4 and number.isdigit()
