"""
Tests for deterministic test-trade generation, idempotency and scoped deletion
"""

from datetime import datetime, timezone

import pytest

from core.test_data import SeededRandom, DeletionResult, TestDataGenerator, build_test_trades, trade_id_for
from data.database import Access
from data.models import Trade, TestRun, GenerationMode
from utils.helpers import ValidationError, DuplicateIdError, ProfileNotFoundError
from tests.conftest import OWNER, OTHER_OWNER


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _build(**overrides):
    params = dict(
        profile_id="profile-1",
        test_run_id="run-1",
        count=200,
        mode=GenerationMode.EDGE,
        seed=42,
        starting_balance=10000.0,
        now=NOW,
    )
    params.update(overrides)
    return build_test_trades(**params)


class TestSeededRandom:
    def test_lcg_step(self):
        assert SeededRandom(42).random() == 206659 / 233280

    def test_same_seed_same_sequence(self):
        first, second = SeededRandom(1234), SeededRandom(1234)
        assert [first.random() for _ in range(50)] == [second.random() for _ in range(50)]

    def test_values_in_unit_interval(self):
        rng = SeededRandom(1717171717171)
        assert all(0 <= rng.random() < 1 for _ in range(1000))


class TestBuildTestTrades:
    def test_deterministic_for_same_inputs(self):
        assert _build() == _build()

    def test_seed_changes_output(self):
        assert _build(seed=1) != _build(seed=2)

    def test_ids_unique_and_stable(self):
        trades = _build()
        ids = [trade['id'] for trade in trades]
        assert len(set(ids)) == len(ids)
        assert ids[0] == trade_id_for("profile-1", "run-1", 0)

    def test_include_open_false_closes_everything(self):
        trades = _build(mode=GenerationMode.SMOKE, include_open=False, count=50)
        assert all(trade['close_price'] is not None for trade in trades)

    def test_missing_stop_never_becomes_zero_risk(self):
        trades = _build()
        without_stop = [trade for trade in trades if trade['stop_price'] is None]

        assert without_stop
        for trade in without_stop:
            assert trade['risk_usd'] is None
            assert trade['risk_percent'] is None
            assert trade['r_multiple'] is None

    def test_edge_mode_events_are_consistent(self):
        trades = _build()
        assert any(trade['adds_history'] for trade in trades)
        assert any(trade['partial_closes'] for trade in trades)

        for trade in trades:
            if trade['close_price'] is None:
                assert trade['partial_closes'] == []
                continue
            partials_pnl = sum(p['pnl_usd'] for p in trade['partial_closes'])
            assert trade['realized_pnl_usd'] == pytest.approx(trade['pnl_usd'])
            if trade['partial_closes']:
                assert partials_pnl != 0
            for event in trade['adds_history'] + trade['partial_closes']:
                stamp = datetime.fromisoformat(event['timestamp'])
                assert trade['date_open'] <= stamp <= trade['date_close']

    def test_load_mode_spans_a_year(self):
        trades = _build(mode=GenerationMode.LOAD, count=300)
        oldest = min(trade['date_open'] for trade in trades)
        assert (NOW - oldest).days > 90


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate_inserts_and_verifies(self, database, generator, active_profile):
        result = await generator.generate(OWNER, count=25, mode="EDGE", seed=7, now=NOW)

        assert result.inserted == 25
        assert result.verified == 25
        assert result.open + result.closed == 25
        assert result.to_dict()['success'] is True

        markers = await database.filter(TestRun, {'test_run_id': result.test_run_id}, Access.for_owner(OWNER))
        assert len(markers) == 1
        assert markers[0].count == 25
        assert markers[0].seed == 7

    @pytest.mark.asyncio
    async def test_same_run_id_is_idempotent(self, database, generator, active_profile):
        first = await generator.generate(OWNER, count=12, test_run_id="fixed-run", seed=1)
        second = await generator.generate(OWNER, count=12, test_run_id="fixed-run", seed=1)

        assert first.inserted == 12
        assert second.inserted == 0
        assert second.deduplicated_count == 12
        assert await database.count(Trade, {'test_run_id': "fixed-run"}, Access.for_owner(OWNER)) == 12

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{'count': 0}, {'count': -3}, {'mode': 'CHAOS'}])
    async def test_invalid_arguments(self, generator, active_profile, kwargs):
        with pytest.raises(ValidationError):
            await generator.generate(OWNER, **kwargs)

    @pytest.mark.asyncio
    async def test_duplicate_ids_abort_insert(self, generator, active_profile):
        trades = _build(profile_id=active_profile.id, count=3)

        with pytest.raises(DuplicateIdError):
            await generator._insert_batches(trades + [trades[0]], Access.for_owner(OWNER))

    @pytest.mark.asyncio
    async def test_duplicate_across_batches(self, database, generator, active_profile):
        trades = _build(profile_id=active_profile.id, count=10)

        with pytest.raises(DuplicateIdError):
            await generator._insert_batches(trades + [dict(trades[0])], Access.for_owner(OWNER))
        # The first batch went in before the repeated id was detected
        assert await database.count(Trade, {'test_run_id': "run-1"}, Access.for_owner(OWNER)) == 10


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete_targets_active_profile_only(self, journal, profiles, generator, active_profile):
        await generator.generate(OWNER, count=20, seed=3)
        other = await profiles.create_profile(OWNER, "Other", make_active=True)
        await generator.generate(OWNER, count=15, seed=4)
        await profiles.switch(OWNER, active_profile.id)

        result = await generator.delete_trades(OWNER)

        assert result.total_found == 20
        assert result.deleted_count == 20
        assert result.remaining_count == 0
        assert (await journal.count_trades(OWNER, profile_id=other.id)).total == 15

    @pytest.mark.asyncio
    async def test_delete_explicit_foreign_profile(self, profiles, generator, active_profile):
        foreign = await profiles.create_profile(OTHER_OWNER, "Theirs", make_active=True)

        with pytest.raises(ProfileNotFoundError):
            await generator.delete_trades(OWNER, profile_id=foreign.id)

    @pytest.mark.asyncio
    async def test_delete_by_test_run(self, journal, generator, active_profile):
        keep = await generator.generate(OWNER, count=5, seed=5)
        drop = await generator.generate(OWNER, count=9, seed=6)

        result = await generator.delete_trades(OWNER, test_run_id=drop.test_run_id)

        assert result.deleted_count == 9
        assert (await journal.count_trades(OWNER)).total == 5
        assert (await journal.count_trades(OWNER, test_run_id=keep.test_run_id)).total == 5

    @pytest.mark.asyncio
    async def test_wipe_keeps_manual_trades(self, journal, generator, active_profile):
        await journal.open_trade(OWNER, {
            'coin': 'BTCUSDT', 'direction': 'Long', 'entry_price': 100.0, 'position_size': 1000.0,
        })
        await generator.generate(OWNER, count=10, seed=8)

        result = await generator.wipe_test_trades(OWNER)

        assert result.deleted_count == 10
        assert result.to_dict()['verification'] == 'PASS'
        assert (await journal.count_trades(OWNER)).total == 1

    @pytest.mark.asyncio
    async def test_unknown_scope(self, generator, active_profile):
        with pytest.raises(ValidationError):
            await generator.delete_trades(OWNER, scope="everything")

    @pytest.mark.asyncio
    async def test_unscoped_delete_refused(self, generator):
        with pytest.raises(ValidationError):
            await generator._delete_scoped(OWNER, {}, DeletionResult(profile_id="", scope="all"))

    @pytest.mark.asyncio
    async def test_capped_scan_reports_partial_progress(self, database, profiles, settings, generator, active_profile):
        await generator.generate(OWNER, count=15, seed=9)
        capped = TestDataGenerator(database, profiles, settings.model_copy(update={'MAX_SCAN_RECORDS': 10}))

        first = await capped.delete_trades(OWNER)

        assert first.truncated is True
        assert first.deleted_count == 10
        assert first.remaining_count == 5
        assert first.to_dict()['verification'] == 'PARTIAL'
        assert first.success is False

        second = await capped.delete_trades(OWNER)

        assert second.truncated is False
        assert second.deleted_count == 5
        assert second.to_dict()['verification'] == 'PASS'
