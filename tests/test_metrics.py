"""
Unit tests for trade metric formulas
"""

from datetime import datetime, timedelta, timezone

import pytest

from core import metrics
from data.models import Direction
from utils.helpers import ValidationError


class TestPnl:
    def test_long_profit(self):
        assert metrics.pnl("Long", 100, 110, 1000) == pytest.approx(100)

    def test_short_profit(self):
        assert metrics.pnl("Short", 100, 90, 1000) == pytest.approx(100)

    def test_short_loss(self):
        assert metrics.pnl(Direction.SHORT, 100, 105, 1000) == pytest.approx(-50)

    def test_zero_size_is_zero_pnl(self):
        assert metrics.pnl("Long", 100, 150, 0) == 0

    @pytest.mark.parametrize("entry,close,size", [
        (0, 110, 1000),
        (-1, 110, 1000),
        (100, -5, 1000),
        (100, 110, -1),
        (float("nan"), 110, 1000),
    ])
    def test_invalid_inputs_rejected(self, entry, close, size):
        with pytest.raises(ValidationError):
            metrics.pnl("Long", entry, close, size)

    def test_unknown_direction_rejected(self):
        with pytest.raises(ValidationError):
            metrics.pnl("Sideways", 100, 110, 1000)

    def test_pnl_percent_of_balance(self):
        assert metrics.pnl_percent_of_balance(100, 10000) == pytest.approx(1.0)
        assert metrics.pnl_percent_of_balance(100, 0) is None
        assert metrics.pnl_percent_of_balance(None, 10000) is None


class TestRisk:
    def test_risk_from_stop_distance(self):
        assert metrics.risk(100, 95, 1000) == pytest.approx(50)

    def test_no_stop_means_undefined_risk(self):
        risk_usd = metrics.risk(100, None, 1000)
        assert risk_usd is None
        assert metrics.risk_percent(risk_usd, 10000) is None

    def test_non_finite_stop_gives_none(self):
        assert metrics.risk(100, float("nan"), 1000) is None

    def test_risk_percent(self):
        assert metrics.risk_percent(50, 10000) == pytest.approx(0.5)

    def test_r_multiple(self):
        assert metrics.r_multiple(100, 50) == pytest.approx(2)
        assert metrics.r_multiple(-25, 50) == pytest.approx(-0.5)

    def test_r_multiple_undefined_without_risk(self):
        assert metrics.r_multiple(100, None) is None
        assert metrics.r_multiple(100, 0) is None

    def test_rr(self):
        assert metrics.rr(100, 110, 95) == pytest.approx(2)
        assert metrics.rr(100, None, 95) is None
        assert metrics.rr(100, 110, None) is None
        assert metrics.rr(100, 110, 100) is None


class TestDuration:
    def test_minutes_between_open_and_close(self):
        opened = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert metrics.duration_minutes(opened, opened + timedelta(minutes=90)) == 90

    def test_naive_datetimes_treated_as_utc(self):
        opened = datetime(2024, 1, 1, 12, 0)
        closed = datetime(2024, 1, 1, 14, 0, tzinfo=timezone.utc)
        assert metrics.duration_minutes(opened, closed) == 120

    def test_open_trade_has_no_duration(self):
        assert metrics.duration_minutes(datetime.now(timezone.utc), None) is None
