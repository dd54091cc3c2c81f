"""Level curve tests."""

from ttg.gamification.level_thresholds import compute_level, level_from_xp, level_min_xp, xp_to_advance
from ttg.gamification.xp_service import build_xp_update


class TestLevelComputation:
    def test_level_1_at_zero_xp(self):
        assert compute_level(0)["level"] == 1

    def test_level_boundary_99_xp(self):
        """99 XP is still level 1."""
        assert compute_level(99)["level"] == 1

    def test_level_2_at_100_xp(self):
        assert compute_level(100)["level"] == 2

    def test_level_boundary_249_xp(self):
        assert compute_level(249)["level"] == 2

    def test_level_3_at_250_xp(self):
        assert compute_level(250)["level"] == 3

    def test_level_starts(self):
        assert [level_min_xp(level) for level in range(1, 8)] == [0, 100, 250, 450, 700, 1000, 1350]

    def test_advance_cost_grows_by_50(self):
        assert xp_to_advance(1) == 100
        assert xp_to_advance(2) == 150
        assert xp_to_advance(3) == 200

    def test_level_is_monotonic_in_xp(self):
        levels = [level_from_xp(xp) for xp in range(0, 5000, 7)]
        assert levels == sorted(levels)

    def test_negative_xp_is_level_1(self):
        result = compute_level(-50)
        assert result["level"] == 1
        assert result["xp_into_level"] == 0

    def test_xp_into_level_calculation(self):
        result = compute_level(150)  # 50 XP into level 2
        assert result["xp_into_level"] == 50
        assert result["xp_for_level"] == 150  # 250 - 100
        assert result["current_level_min_xp"] == 100
        assert result["next_level_min_xp"] == 250

    def test_progress_percentage(self):
        assert compute_level(175)["progress_percentage"] == 50.0


class TestXpUpdatePayload:
    def test_level_up_detected(self):
        update = build_xp_update(80, 130)
        assert update["old_level"] == 1
        assert update["new_level"] == 2
        assert update["delta_xp"] == 50
        assert update["next_level_min_xp_before"] == 100
        assert update["current_level_min_xp_after"] == 100

    def test_same_level(self):
        update = build_xp_update(100, 120)
        assert update["old_level"] == update["new_level"] == 2
