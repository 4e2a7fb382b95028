"""
Unit Tests for the Rule Store

Snapshot swap on refresh, failed refreshes, invalidation, and the JSON
file / SQL rule sources.

Run with: pytest backend/tests/test_rule_store.py -v
"""

import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from rules_engine.models import AmountExact, AmountTolerance, DateRange, RuleSet
from rules_engine.store import (
    ConfigurationUnavailable, RuleSource, RuleStore, SqlRuleSource, StaticRuleSource,
)


CONFIG_V1 = {
    "rules": [
        {"id": "r1", "name": "High risk fee", "type": "eligibility", "priority": 10,
         "conditions": [{"field": "risk_level", "operator": "equals", "value": "high"}],
         "actions": [{"type": "add_fee", "value": 500}]},
    ],
}

CONFIG_V2 = {
    "rules": CONFIG_V1["rules"] + [
        {"id": "r2", "name": "Freezone uplift", "type": "pricing", "priority": 20,
         "actions": [{"type": "multiply_price", "value": 1.1}]},
    ],
}


class FlakySource(RuleSource):
    """Serves CONFIG_V1 until told to fail."""

    def __init__(self):
        self.fail = False
        self.calls = 0

    async def fetch(self) -> RuleSet:
        self.calls += 1
        if self.fail:
            raise RuntimeError("configuration store offline")
        return RuleSet.from_config(CONFIG_V1, version=self.calls)


class TestRuleStore:

    def test_snapshot_before_load_raises(self):
        store = RuleStore(StaticRuleSource(CONFIG_V1))

        assert store.is_loaded is False
        assert store.version is None
        with pytest.raises(ConfigurationUnavailable):
            store.snapshot()

    @pytest.mark.asyncio
    async def test_load(self):
        store = RuleStore(StaticRuleSource(CONFIG_V1, version=4))
        rule_set = await store.load()

        assert store.is_loaded is True
        assert store.version == 4
        assert store.snapshot() is rule_set
        assert [r.name for r in rule_set.eligibility_rules] == ["High risk fee"]

    @pytest.mark.asyncio
    async def test_refresh_swaps_snapshot(self):
        source = StaticRuleSource(CONFIG_V1)
        store = RuleStore(source)
        await store.load()
        before = store.snapshot()

        source.update(CONFIG_V2)
        await store.refresh()
        after = store.snapshot()

        assert after is not before
        assert after.version == 2
        assert len(after.eligibility_rules) == 2
        # Readers holding the old snapshot still see the old rules
        assert len(before.eligibility_rules) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        source = FlakySource()
        store = RuleStore(source)
        await store.load()
        before = store.snapshot()

        source.fail = True
        with pytest.raises(ConfigurationUnavailable):
            await store.refresh()

        assert store.snapshot() is before
        assert "offline" in store.last_error

    @pytest.mark.asyncio
    async def test_successful_refresh_clears_last_error(self):
        source = FlakySource()
        store = RuleStore(source)
        source.fail = True
        with pytest.raises(ConfigurationUnavailable):
            await store.load()

        source.fail = False
        await store.refresh()

        assert store.last_error is None
        assert store.is_loaded is True

    @pytest.mark.asyncio
    async def test_invalidate_then_ensure_loaded_fetches_again(self):
        source = FlakySource()
        store = RuleStore(source)
        await store.load()

        store.invalidate()
        assert store.is_loaded is False
        with pytest.raises(ConfigurationUnavailable):
            store.snapshot()

        await store.ensure_loaded()
        assert store.is_loaded is True
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_ensure_loaded_uses_cache(self):
        source = FlakySource()
        store = RuleStore(source)
        await store.load()
        await store.ensure_loaded()

        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_serialized(self):
        source = FlakySource()
        store = RuleStore(source)

        results = await asyncio.gather(store.refresh(), store.refresh(), store.refresh())

        assert sorted(r.version for r in results) == [1, 2, 3]
        assert store.version == 3

    @pytest.mark.asyncio
    async def test_status(self):
        store = RuleStore(StaticRuleSource(CONFIG_V2, version=9))
        assert store.status() == {"loaded": False, "last_error": None}

        await store.load()
        status = store.status()
        assert status["loaded"] is True
        assert status["version"] == 9
        assert status["eligibility_rules"] == 2


class TestStaticRuleSource:

    @pytest.mark.asyncio
    async def test_reads_json_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({**CONFIG_V2, "version_number": 7}))

        rule_set = await StaticRuleSource(path=str(path)).fetch()

        assert rule_set.version == 7
        assert [r.id for r in rule_set.eligibility_rules] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_unreadable_file_is_unavailable(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationUnavailable):
            await StaticRuleSource(path=str(path)).fetch()

    @pytest.mark.asyncio
    async def test_no_config_is_empty_rule_set(self):
        rule_set = await StaticRuleSource().fetch()

        assert rule_set.eligibility_rules == ()
        assert rule_set.matching_rules == ()

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self):
        config = {"rules": [
            "not a rule",
            {"id": "bad", "type": "no_such_type"},
            CONFIG_V1["rules"][0],
        ]}

        rule_set = await StaticRuleSource(config).fetch()
        assert [r.id for r in rule_set.eligibility_rules] == ["r1"]

    @pytest.mark.asyncio
    async def test_rules_sorted_by_priority_and_filtered(self):
        config = {"rules": [
            {"id": "late", "type": "eligibility", "priority": 30},
            {"id": "off", "type": "eligibility", "priority": 1, "is_active": False},
            {"id": "early", "type": "eligibility", "priority": 5},
            {"id": "tie", "type": "eligibility", "priority": 30},
        ]}

        rule_set = await StaticRuleSource(config).fetch()
        assert [r.id for r in rule_set.eligibility_rules] == ["early", "late", "tie"]

    @pytest.mark.asyncio
    async def test_matching_rule_with_non_object_params_keeps_the_set(self):
        store = RuleStore(StaticRuleSource({"matching_rules": [
            {"id": "m1", "rule_name": "Exact amount", "condition_type": "amount_exact", "priority": 10},
            {"id": "m2", "rule_name": "Tolerance", "condition_type": "amount_tolerance",
             "params": ["x"], "priority": 20},
        ]}))

        rule_set = await store.load()

        assert [r.id for r in rule_set.matching_rules] == ["m1", "m2"]
        assert rule_set.matching_rules[1].criterion == AmountTolerance(tolerance_percent=None)


def session_factory_for(db):
    @asynccontextmanager
    async def factory():
        yield db
    return factory


class TestSqlRuleSource:

    @pytest.mark.asyncio
    async def test_reads_configuration_and_matching_rules(self):
        mock_db = AsyncMock()

        config_result = MagicMock()
        config_result.fetchone.return_value = MagicMock(
            version_number=3,
            config_data=json.dumps(CONFIG_V1),
        )
        rules_result = MagicMock()
        rules_result.fetchall.return_value = [
            MagicMock(
                id="m1", rule_name="Exact amount", condition_type="amount_exact",
                params={}, priority=10, is_active=True, jurisdiction="ALL",
            ),
        ]
        mock_db.execute = AsyncMock(side_effect=[config_result, rules_result])

        rule_set = await SqlRuleSource(session_factory_for(mock_db)).fetch()

        assert rule_set.version == 3
        assert [r.id for r in rule_set.eligibility_rules] == ["r1"]
        assert len(rule_set.matching_rules) == 1
        assert isinstance(rule_set.matching_rules[0].criterion, AmountExact)
        assert rule_set.matching_rules[0].weight == 90

    @pytest.mark.asyncio
    async def test_no_active_configuration(self):
        mock_db = AsyncMock()
        config_result = MagicMock()
        config_result.fetchone.return_value = None
        rules_result = MagicMock()
        rules_result.fetchall.return_value = []
        mock_db.execute = AsyncMock(side_effect=[config_result, rules_result])

        rule_set = await SqlRuleSource(session_factory_for(mock_db)).fetch()

        assert rule_set.version is None
        assert rule_set.eligibility_rules == ()

    @pytest.mark.asyncio
    async def test_database_error_is_unavailable(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=SQLAlchemyError("connection refused"))

        with pytest.raises(ConfigurationUnavailable):
            await SqlRuleSource(session_factory_for(mock_db)).fetch()

    @pytest.mark.asyncio
    async def test_bad_params_column_reads_as_defaults(self):
        mock_db = AsyncMock()
        config_result = MagicMock()
        config_result.fetchone.return_value = None
        rules_result = MagicMock()
        rules_result.fetchall.return_value = [
            MagicMock(
                id="m1", rule_name="Tolerance", condition_type="amount_tolerance",
                params='["x"]', priority=10, is_active=True, jurisdiction="ALL",
            ),
            MagicMock(
                id="m2", rule_name="Date window", condition_type="date_range",
                params="{not json", priority=20, is_active=True, jurisdiction="ALL",
            ),
        ]
        mock_db.execute = AsyncMock(side_effect=[config_result, rules_result])

        rule_set = await SqlRuleSource(session_factory_for(mock_db)).fetch()

        assert [r.criterion for r in rule_set.matching_rules] == [
            AmountTolerance(tolerance_percent=None),
            DateRange(days_before=7, days_after=3),
        ]

    @pytest.mark.asyncio
    async def test_undecodable_configuration_is_unavailable(self):
        mock_db = AsyncMock()
        config_result = MagicMock()
        config_result.fetchone.return_value = MagicMock(version_number=4, config_data="[1, 2]")
        rules_result = MagicMock()
        rules_result.fetchall.return_value = []
        mock_db.execute = AsyncMock(side_effect=[config_result, rules_result])

        with pytest.raises(ConfigurationUnavailable):
            await SqlRuleSource(session_factory_for(mock_db)).fetch()
