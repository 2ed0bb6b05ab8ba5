"""
Trade Metrics Engine
Чистые функции расчета PnL, риска, R-multiple и соотношения risk/reward
"""

import math
from typing import Optional, Union

from data.models import Direction
from utils.helpers import ValidationError, finite_or_none, ensure_utc


Number = Union[int, float]


# ============================================================================
# ВНУТРЕННИЕ ПРОВЕРКИ
# ============================================================================

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _direction_value(direction) -> str:
    value = getattr(direction, 'value', direction)
    if value not in (Direction.LONG.value, Direction.SHORT.value):
        raise ValidationError(f"Invalid direction: {direction}")
    return value


# ============================================================================
# PNL
# ============================================================================

def pnl(direction, entry: Number, close: Number, size_usd: Number) -> float:
    """
    PnL позиции в USD

    Long:  size * (close / entry - 1)
    Short: size * (1 - close / entry)
    """
    if not _is_number(entry) or entry <= 0:
        raise ValidationError(f"Entry price must be positive, got {entry}")
    if not _is_number(close) or close < 0:
        raise ValidationError(f"Close price must be non-negative, got {close}")
    if not _is_number(size_usd) or size_usd < 0:
        raise ValidationError(f"Position size must be non-negative, got {size_usd}")

    if _direction_value(direction) == Direction.LONG.value:
        result = size_usd * (close / entry - 1)
    else:
        result = size_usd * (1 - close / entry)

    return finite_or_none(result) or 0.0


def pnl_percent_of_balance(pnl_usd: Optional[Number], balance: Optional[Number]) -> Optional[float]:
    """PnL в процентах от баланса; None если баланс не положительный"""
    if pnl_usd is None or not _is_number(balance) or balance <= 0:
        return None
    return finite_or_none(pnl_usd / balance * 100)


# ============================================================================
# RISK
# ============================================================================

def risk(entry: Number, stop: Optional[Number], size_usd: Number) -> Optional[float]:
    """
    Риск позиции в USD: |entry - stop| / entry * size

    Без стопа риск не определен и никогда не превращается в 0.
    """
    if stop is None:
        return None
    if not _is_number(entry) or entry <= 0 or not _is_number(stop) or not _is_number(size_usd):
        return None
    return finite_or_none(abs(entry - stop) / entry * size_usd)


def risk_percent(risk_usd: Optional[Number], balance: Optional[Number]) -> Optional[float]:
    if risk_usd is None or not _is_number(balance) or balance <= 0:
        return None
    return finite_or_none(risk_usd / balance * 100)


def r_multiple(pnl_usd: Optional[Number], original_risk_usd: Optional[Number]) -> Optional[float]:
    """R = pnl / исходный риск; None если риск отсутствует или равен 0"""
    if pnl_usd is None or original_risk_usd is None:
        return None
    if not _is_number(original_risk_usd) or original_risk_usd == 0:
        return None
    return finite_or_none(pnl_usd / original_risk_usd)


def rr(entry: Number, take: Optional[Number], stop: Optional[Number]) -> Optional[float]:
    """Reward/Risk; None пока нет и тейка, и стопа"""
    if take is None or stop is None:
        return None
    if not (_is_number(entry) and _is_number(take) and _is_number(stop)):
        return None

    risk_distance = abs(entry - stop)
    if risk_distance <= 0:
        return None
    return finite_or_none(abs(take - entry) / risk_distance)


# ============================================================================
# DURATION
# ============================================================================

def duration_minutes(date_open, date_close) -> Optional[int]:
    """Длительность сделки в минутах (None для открытой)"""
    if date_open is None or date_close is None:
        return None
    delta = ensure_utc(date_close) - ensure_utc(date_open)
    return max(0, int(delta.total_seconds() // 60))
