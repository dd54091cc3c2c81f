"""The initial migration creates every table the engine owns."""

import re
from pathlib import Path

from ttg.db.base import Base
import ttg.db.models  # noqa: F401  (registers the tables)

MIGRATION = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "001_gamification_tables.py"

# Journal tables belong to the trading journal and are only mirrored for reads.
JOURNAL_TABLES = {
    "trades",
    "revenge_trading_events",
    "behavioral_patterns",
    "behavioral_analytics_aggregate",
    "gamification_privacy",
}


def _owned_tables() -> set[str]:
    return set(Base.metadata.tables) - JOURNAL_TABLES


def test_every_owned_table_is_created():
    created = set(re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", MIGRATION.read_text()))
    assert _owned_tables() <= created


def test_journal_tables_are_not_created():
    created = set(re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", MIGRATION.read_text()))
    assert not created & JOURNAL_TABLES


def test_downgrade_drops_what_upgrade_creates():
    text = MIGRATION.read_text()
    created = set(re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", text))
    dropped = set(re.findall(r"DROP TABLE IF EXISTS (\w+)", text))
    assert created == dropped
