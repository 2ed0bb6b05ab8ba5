"""
Position Ledger
Средняя цена входа, остаток позиции и реализованный PnL по истории доливок и частичных закрытий
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from core import metrics
from utils.helpers import ValidationError, ensure_utc, safe_float, get_current_utc_datetime


# ============================================================================
# СОБЫТИЯ ПОЗИЦИИ
# ============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        return None


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


@dataclass
class AddEntry:
    """Доливка в позицию"""
    price: float
    size_usd: float
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price,
            'size_usd': self.size_usd,
            'timestamp': _format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddEntry":
        return cls(
            price=safe_float(data.get('price')),
            size_usd=safe_float(data.get('size_usd')),
            timestamp=parse_timestamp(data.get('timestamp')),
        )


@dataclass
class PartialClose:
    """Частичное закрытие: percent - процент от ОСТАТКА позиции"""
    percent: float
    price: float
    pnl_usd: float = 0.0
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'percent': self.percent,
            'price': self.price,
            'pnl_usd': self.pnl_usd,
            'timestamp': _format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialClose":
        return cls(
            percent=safe_float(data.get('percent')),
            price=safe_float(data.get('price')),
            pnl_usd=safe_float(data.get('pnl_usd')),
            timestamp=parse_timestamp(data.get('timestamp')),
        )


# ============================================================================
# LEDGER
# ============================================================================

@dataclass
class PositionLedger:
    """
    Учет позиции как последовательности событий

    События проигрываются в хронологическом порядке: доливка увеличивает
    количество и номинал, частичное закрытие уменьшает остаток на процент
    от остатка и не меняет среднюю цену.
    """
    direction: str
    entry_price: float
    size_usd: float
    opened_at: Optional[datetime] = None
    adds: List[AddEntry] = field(default_factory=list)
    partials: List[PartialClose] = field(default_factory=list)

    def __post_init__(self):
        self.direction = getattr(self.direction, 'value', self.direction)
        if self.entry_price is None or self.entry_price <= 0:
            raise ValidationError(f"Entry price must be positive, got {self.entry_price}")
        if self.size_usd is None or self.size_usd <= 0:
            raise ValidationError(f"Position size must be positive, got {self.size_usd}")
        self.opened_at = ensure_utc(self.opened_at)

    @classmethod
    def from_trade(cls, trade) -> "PositionLedger":
        """
        Ledger по сохраненной сделке

        Базой служит исходная цена входа и исходный размер (без доливок).
        """
        adds = [AddEntry.from_dict(item) for item in (trade.adds_history or [])]
        partials = [PartialClose.from_dict(item) for item in (trade.partial_closes or [])]

        base_entry = trade.original_entry_price or trade.entry_price
        base_size = (trade.position_size or 0) - sum(add.size_usd for add in adds)
        if base_size <= 0:
            base_size = trade.position_size

        return cls(
            direction=trade.direction,
            entry_price=base_entry,
            size_usd=base_size,
            opened_at=trade.date_open,
            adds=adds,
            partials=partials,
        )

    # ------------------------------------------------------------------
    # Проигрывание событий
    # ------------------------------------------------------------------

    def _events(self) -> List[Tuple[float, int, Any]]:
        """Доливки (0) и частичные закрытия (1) в хронологическом порядке"""
        fallback = self.opened_at.timestamp() if self.opened_at else 0.0
        events = []
        for order, add in enumerate(self.adds):
            ts = add.timestamp.timestamp() if add.timestamp else fallback
            events.append((ts, 0, order, add))
        for order, partial in enumerate(self.partials):
            ts = partial.timestamp.timestamp() if partial.timestamp else fallback
            events.append((ts, 1, order, partial))

        events.sort(key=lambda item: item[:3])
        return [(ts, kind, event) for ts, kind, _, event in events]

    def _replay(self, until: Optional[datetime] = None) -> Tuple[float, float]:
        """(остаток количества, остаток стоимости) после событий до until включительно"""
        quantity = self.size_usd / self.entry_price
        cost = self.size_usd

        for ts, kind, event in self._events():
            if until is not None and ts > until.timestamp():
                break
            if kind == 0:
                if event.price <= 0:
                    continue
                quantity += event.size_usd / event.price
                cost += event.size_usd
            else:
                fraction = event.percent / 100
                quantity -= quantity * fraction
                cost -= cost * fraction

        return max(quantity, 0.0), max(cost, 0.0)

    # ------------------------------------------------------------------
    # Текущее состояние
    # ------------------------------------------------------------------

    @property
    def total_notional(self) -> float:
        """Суммарный номинал входа (база + доливки)"""
        return self.size_usd + sum(add.size_usd for add in self.adds)

    @property
    def avg_entry(self) -> float:
        """Средневзвешенная по количеству цена входа"""
        quantity, cost = self._replay()
        if quantity <= 0:
            total_qty = self.size_usd / self.entry_price + sum(
                a.size_usd / a.price for a in self.adds if a.price > 0
            )
            return self.total_notional / total_qty
        return cost / quantity

    @property
    def remaining_quantity(self) -> float:
        return self._replay()[0]

    @property
    def remaining_notional(self) -> float:
        """Остаток позиции по цене входа"""
        return self._replay()[1]

    @property
    def partials_pnl(self) -> float:
        return sum(partial.pnl_usd for partial in self.partials)

    # ------------------------------------------------------------------
    # Мутации
    # ------------------------------------------------------------------

    def _check_event_time(self, timestamp: datetime) -> None:
        """Новое событие не раньше открытия и не раньше записанных частичных закрытий"""
        if self.opened_at and timestamp < self.opened_at:
            raise ValidationError("Event time cannot be earlier than the position open time")
        last_partial = max((p.timestamp for p in self.partials if p.timestamp), default=None)
        if last_partial and timestamp < last_partial:
            raise ValidationError("Event time cannot be earlier than a recorded partial close")

    def add(self, price: float, size_usd: float, timestamp: Optional[datetime] = None) -> AddEntry:
        """Доливка; возвращает записанное событие"""
        if price is None or price <= 0:
            raise ValidationError(f"Add price must be positive, got {price}")
        if size_usd is None or size_usd <= 0:
            raise ValidationError(f"Add size must be positive, got {size_usd}")

        timestamp = ensure_utc(timestamp) or get_current_utc_datetime()
        self._check_event_time(timestamp)

        entry = AddEntry(price=price, size_usd=size_usd, timestamp=timestamp)
        self.adds.append(entry)
        return entry

    def partial_close(self, percent: float, price: float, timestamp: Optional[datetime] = None) -> PartialClose:
        """
        Частичное закрытие percent% от текущего остатка

        PnL считается от средней цены и остатка на момент timestamp:
        доливки, записанные позже, на него не влияют.
        """
        if percent is None or percent <= 0 or percent > 100:
            raise ValidationError(f"Partial close percent must be in (0, 100], got {percent}")
        if price is None or price <= 0:
            raise ValidationError(f"Partial close price must be positive, got {price}")

        timestamp = ensure_utc(timestamp) or get_current_utc_datetime()
        self._check_event_time(timestamp)

        quantity, remaining = self._replay(until=timestamp)
        if quantity <= 0 or remaining <= 0:
            raise ValidationError("Position has no remaining size to close")

        closed_notional = remaining * percent / 100
        partial_pnl = metrics.pnl(self.direction, remaining / quantity, price, closed_notional)

        entry = PartialClose(
            percent=percent,
            price=price,
            pnl_usd=partial_pnl,
            timestamp=timestamp,
        )
        self.partials.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Итоговый результат
    # ------------------------------------------------------------------

    def final_close_pnl(self, close_price: float) -> float:
        """PnL финального закрытия остатка"""
        remaining = self.remaining_notional
        if remaining <= 0:
            return 0.0
        return metrics.pnl(self.direction, self.avg_entry, close_price, remaining)

    def realized_pnl(self, close_price: Optional[float] = None) -> float:
        """Сумма PnL частичных закрытий плюс PnL финального закрытия (если есть)"""
        total = self.partials_pnl
        if close_price is not None:
            total += self.final_close_pnl(close_price)
        return total

    # ------------------------------------------------------------------
    # Сериализация на границе хранения
    # ------------------------------------------------------------------

    def adds_to_json(self) -> List[Dict[str, Any]]:
        return [add.to_dict() for add in self.adds]

    def partials_to_json(self) -> List[Dict[str, Any]]:
        return [partial.to_dict() for partial in self.partials]
