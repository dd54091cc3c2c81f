"""Trade aggregation tests."""

import uuid
from datetime import date, datetime, timedelta, timezone

from ttg.trades import metrics
from ttg.trades.provider import TradeRecord

USER = uuid.uuid4()
BASE = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)


def _trade(pnl=10.0, day=0, quantity=10.0, entry_price=100.0, exit_price=None, side="long", closed=True):
    entry = BASE + timedelta(days=day)
    if closed and exit_price is None:
        exit_price = entry_price + pnl / quantity
    return TradeRecord(
        id=uuid.uuid4(),
        user_id=USER,
        symbol="AAPL",
        side=side,
        quantity=quantity,
        entry_price=entry_price,
        exit_price=exit_price if closed else None,
        entry_time=entry,
        exit_time=entry + timedelta(hours=1) if closed else None,
        pnl=pnl if closed else None,
    )


class TestTradeRecord:
    def test_open_trade_is_not_closed(self):
        trade = _trade(closed=False)
        assert not trade.is_closed
        assert trade.hold_minutes is None

    def test_position_value_and_hold(self):
        trade = _trade(quantity=-5, entry_price=20)
        assert trade.position_value == 100
        assert trade.hold_minutes == 60


class TestWinRate:
    def test_no_trades(self):
        assert metrics.win_rate([]) is None

    def test_open_trades_ignored(self):
        assert metrics.win_rate([_trade(5), _trade(-5), _trade(closed=False)]) == 50

    def test_breakeven_is_not_a_win(self):
        assert metrics.win_rate([_trade(0), _trade(10)]) == 50


class TestConsistencyScore:
    def test_below_minimum_trades(self):
        assert metrics.consistency_score([_trade(10) for _ in range(9)], min_trades=10) is None

    def test_zero_when_no_variance(self):
        score, metadata = metrics.consistency_score([_trade(10) for _ in range(10)], min_trades=10)
        assert score == 0
        assert metadata["volatility"] == 0

    def test_zero_when_no_wins(self):
        trades = [_trade(-10 - i) for i in range(10)]
        score, metadata = metrics.consistency_score(trades, min_trades=10)
        assert score == 0
        assert metadata["win_rate"] == 0

    def test_positive_for_steady_winner(self):
        trades = [_trade(10 + (i % 3)) for i in range(12)]
        score, metadata = metrics.consistency_score(trades, min_trades=10)
        assert score > 0
        assert metadata["total_trades"] == 12
        assert metadata["win_rate"] == 100


class TestDiscipline:
    def test_disciplined_win_needs_move(self):
        assert metrics.is_disciplined_win(_trade(20))  # 2% move
        assert not metrics.is_disciplined_win(_trade(10))  # 1% move
        assert not metrics.is_disciplined_win(_trade(-20))

    def test_short_side_move(self):
        trade = _trade(20, side="short", exit_price=98.0)
        assert metrics.favorable_move_pct(trade) == 2.0
        assert metrics.is_disciplined_win(trade)

    def test_daily_scores(self):
        scores = metrics.daily_discipline_scores([_trade(20), _trade(5), _trade(20, day=1)])
        assert scores == {date(2026, 3, 2): 50.0, date(2026, 3, 3): 100.0}


class TestRuns:
    def test_current_profitable_run_stops_at_loss(self):
        pnl = {date(2026, 3, 1): 5, date(2026, 3, 2): -1, date(2026, 3, 3): 4, date(2026, 3, 4): 2}
        assert metrics.current_profitable_run(pnl) == 2

    def test_breakeven_day_neither_counts_nor_breaks(self):
        pnl = {date(2026, 3, 2): 5, date(2026, 3, 3): 0, date(2026, 3, 4): 2}
        assert metrics.current_profitable_run(pnl) == 2

    def test_longest_consecutive_days(self):
        days = [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 5), date(2026, 3, 2)]
        assert metrics.longest_consecutive_days(days) == 3

    def test_trailing_run_from_yesterday(self):
        days = [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3)]
        assert metrics.trailing_consecutive_days(days, date(2026, 3, 4)) == 3
        assert metrics.trailing_consecutive_days(days, date(2026, 3, 5)) == 0


class TestRiskCompliance:
    def test_within_two_percent_of_average(self):
        trades = [_trade(15), _trade(-20), _trade(25)]  # average position 1000, limit 20
        assert metrics.risk_compliant_count(trades, metrics.average_position_value(trades)) == 2

    def test_no_average(self):
        assert metrics.risk_compliant_count([_trade(1)], None) == 0
