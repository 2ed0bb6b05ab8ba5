"""
Trade Journal
Ручное ведение сделок: открытие, доливки, частичные и полные закрытия, пересчет метрик
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from app.config.settings import Settings, get_settings
from core import metrics
from core.position_ledger import PositionLedger, parse_timestamp
from core.profile_integrity import ProfileIntegrityManager
from data.database import Database, Access
from data.models import Trade, UserProfile, Direction, ImportSource
from utils.helpers import (
    ValidationError, TradeNotFoundError, safe_float,
    ensure_utc, get_current_utc_datetime
)
from utils.logger import setup_logger, log_execution_time


# Пересчет пишет в БД только заметные изменения
RECALC_TOLERANCE = 0.01


# ============================================================================
# ПОДСЧЕТ СДЕЛОК
# ============================================================================

@dataclass
class TradeCounts:
    """Результат постраничного подсчета сделок"""
    profile_id: str
    total: int = 0
    open: int = 0
    closed: int = 0
    db_total: int = 0
    truncated: bool = False
    test_run_id: Optional[str] = None

    @property
    def consistent(self) -> bool:
        return self.open + self.closed == self.total

    @property
    def count_match(self) -> bool:
        return self.total == self.db_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'profile_id': self.profile_id,
            'test_run_id': self.test_run_id,
            'total': self.total,
            'open': self.open,
            'closed': self.closed,
            'db_total': self.db_total,
            'truncated': self.truncated,
            'consistency_check': 'PASS' if self.consistent else 'FAIL',
            'count_match': 'PASS' if self.count_match else 'FAIL',
        }


async def scan_trade_counts(
    db: Database,
    access: Access,
    criteria: Dict[str, Any],
    page_size: int,
    max_records: int
) -> TradeCounts:
    """
    Постраничный подсчет open/closed с жестким лимитом записей

    Закрытой считается сделка с close_price или date_close.
    """
    counts = TradeCounts(profile_id=criteria.get('profile_id'), test_run_id=criteria.get('test_run_id'))
    skip = 0

    while True:
        if skip >= max_records:
            counts.truncated = True
            break

        limit = min(page_size, max_records - skip)
        batch = await db.filter(
            Trade, criteria, access,
            order_by='-created_date',
            limit=limit,
            skip=skip
        )
        if not batch:
            break

        for trade in batch:
            if trade.close_price is not None or trade.date_close is not None:
                counts.closed += 1
            else:
                counts.open += 1

        counts.total += len(batch)
        skip += len(batch)
        if len(batch) < limit:
            break

    counts.db_total = await db.count(Trade, criteria, access)
    return counts


def _changed(old: Optional[float], new: Optional[float]) -> bool:
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    return abs(old - new) > RECALC_TOLERANCE


# ============================================================================
# JOURNAL
# ============================================================================

class TradeJournal:
    """
    Журнал сделок активного профиля

    Все изменения позиции проходят через PositionLedger, метрики
    пересчитываются MetricsEngine.
    """

    def __init__(
        self,
        database: Database,
        profiles: ProfileIntegrityManager,
        settings: Optional[Settings] = None
    ):
        self.db = database
        self.profiles = profiles
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.TradeJournal")

    async def _get_open_trade(self, owner: str, trade_id: str) -> Tuple[Trade, UserProfile]:
        trade, profile = await self.get_trade(owner, trade_id)
        if not trade.is_open:
            raise ValidationError(f"Trade {trade_id} is already closed")
        return trade, profile

    async def get_trade(self, owner: str, trade_id: str):
        """Сделка активного профиля (TradeNotFound для чужих и из других профилей)"""
        profile = await self.profiles.resolve_active_profile(owner)
        trade = await self.db.get(Trade, trade_id, Access.for_owner(owner))
        if trade is None or trade.profile_id != profile.id:
            raise TradeNotFoundError(f"Trade {trade_id} not found", details={'trade_id': trade_id})
        return trade, profile

    async def current_balance(self, owner: str, profile: UserProfile) -> float:
        """Стартовый баланс профиля плюс реализованный PnL закрытых сделок"""
        access = Access.for_owner(owner)
        page_size = self.settings.COUNT_PAGE_SIZE
        realized = 0.0
        skip = 0

        while skip < self.settings.MAX_SCAN_RECORDS:
            batch = await self.db.filter(
                Trade, {'profile_id': profile.id}, access,
                order_by='-created_date', limit=page_size, skip=skip
            )
            if not batch:
                break
            realized += sum(
                (trade.realized_pnl_usd or 0.0) for trade in batch if not trade.is_open
            )
            skip += len(batch)
            if len(batch) < page_size:
                break

        return (profile.starting_balance or 0.0) + realized

    # ------------------------------------------------------------------
    # Жизненный цикл позиции
    # ------------------------------------------------------------------

    async def open_trade(self, owner: str, payload: Dict[str, Any]) -> Trade:
        """Открытие сделки вручную; стоп и тейк необязательны"""
        coin = str(payload.get('coin') or '').strip().upper()
        if not coin:
            raise ValidationError("Coin is required")

        direction = str(payload.get('direction') or '').strip().capitalize()
        if direction not in (Direction.LONG.value, Direction.SHORT.value):
            raise ValidationError("Direction must be Long or Short")

        entry = safe_float(payload.get('entry_price'), None)
        size = safe_float(payload.get('position_size'), None)
        if entry is None or entry <= 0:
            raise ValidationError("Entry price must be positive")
        if size is None or size <= 0:
            raise ValidationError("Position size must be positive")

        stop = safe_float(payload.get('stop_price'), None)
        take = safe_float(payload.get('take_price'), None)
        if stop is not None and stop <= 0:
            raise ValidationError("Stop price must be positive")
        if take is not None and take <= 0:
            raise ValidationError("Take price must be positive")

        date_open = parse_timestamp(payload.get('date_open')) or get_current_utc_datetime()

        profile = await self.profiles.resolve_active_profile(owner)
        balance = await self.current_balance(owner, profile)

        risk_usd = metrics.risk(entry, stop, size)
        trade = await self.db.create(Trade, {
            'profile_id': profile.id,
            'coin': coin,
            'direction': direction,
            'entry_price': entry,
            'original_entry_price': entry,
            'position_size': size,
            'stop_price': stop,
            'original_stop_price': stop,
            'take_price': take,
            'date_open': date_open,
            'risk_usd': risk_usd,
            'original_risk_usd': risk_usd,
            'risk_percent': metrics.risk_percent(risk_usd, balance),
            'rr_ratio': metrics.rr(entry, take, stop),
            'pnl_usd': 0.0,
            'realized_pnl_usd': 0.0,
            'adds_history': [],
            'partial_closes': [],
            'account_balance_at_entry': balance,
            'import_source': ImportSource.MANUAL.value,
            'strategy_tag': payload.get('strategy_tag'),
            'timeframe': payload.get('timeframe'),
        }, Access.for_owner(owner))

        self.logger.info(f"📈 Opened {direction} {coin} @ {entry} size ${size:.2f} for profile {profile.id}")
        return trade

    def _position_fields(self, trade: Trade, ledger: PositionLedger) -> Dict[str, Any]:
        """Поля, зависящие от текущего остатка позиции"""
        avg_entry = ledger.avg_entry
        risk_usd = metrics.risk(avg_entry, trade.stop_price, ledger.remaining_notional)
        return {
            'entry_price': avg_entry,
            'position_size': ledger.total_notional,
            'risk_usd': risk_usd,
            'risk_percent': metrics.risk_percent(risk_usd, trade.account_balance_at_entry),
            'rr_ratio': metrics.rr(avg_entry, trade.take_price, trade.stop_price),
            'adds_history': ledger.adds_to_json(),
            'partial_closes': ledger.partials_to_json(),
            'realized_pnl_usd': ledger.partials_pnl,
        }

    async def add_to_position(
        self,
        owner: str,
        trade_id: str,
        price: float,
        size_usd: float,
        timestamp: Optional[datetime] = None
    ) -> Trade:
        """Доливка: пересчет средней цены и риска"""
        trade, _ = await self._get_open_trade(owner, trade_id)

        ledger = PositionLedger.from_trade(trade)
        ledger.add(safe_float(price, None), safe_float(size_usd, None), timestamp)

        updated = await self.db.update(
            Trade, trade.id, self._position_fields(trade, ledger), Access.for_owner(owner)
        )
        self.logger.info(f"➕ Added ${size_usd} @ {price} to {trade.coin}, avg entry {ledger.avg_entry:.6f}")
        return updated

    async def partial_close(
        self,
        owner: str,
        trade_id: str,
        percent: float,
        price: float,
        timestamp: Optional[datetime] = None
    ) -> Trade:
        """
        Частичное закрытие percent% остатка

        Закрытие 100% остатка закрывает сделку по этой цене.
        """
        trade, _ = await self._get_open_trade(owner, trade_id)

        ledger = PositionLedger.from_trade(trade)
        partial = ledger.partial_close(safe_float(percent, None), safe_float(price, None), timestamp)

        if ledger.remaining_notional <= 1e-9:
            trade = await self.db.update(
                Trade, trade.id, self._position_fields(trade, ledger), Access.for_owner(owner)
            )
            return await self._finalize_close(owner, trade, ledger, partial.price, partial.timestamp)

        updated = await self.db.update(
            Trade, trade.id, self._position_fields(trade, ledger), Access.for_owner(owner)
        )
        self.logger.info(
            f"✂️ Partial close {percent}% of {trade.coin} @ {price}, pnl {partial.pnl_usd:.2f}"
        )
        return updated

    async def close_trade(
        self,
        owner: str,
        trade_id: str,
        close_price: float,
        date_close: Optional[datetime] = None
    ) -> Trade:
        """Полное закрытие остатка позиции"""
        trade, _ = await self._get_open_trade(owner, trade_id)

        close_price = safe_float(close_price, None)
        if close_price is None or close_price <= 0:
            raise ValidationError("Close price must be positive")

        date_close = ensure_utc(date_close) or get_current_utc_datetime()
        if ensure_utc(trade.date_open) and date_close < ensure_utc(trade.date_open):
            raise ValidationError("Close date cannot be earlier than open date")

        ledger = PositionLedger.from_trade(trade)
        return await self._finalize_close(owner, trade, ledger, close_price, date_close)

    async def _finalize_close(
        self,
        owner: str,
        trade: Trade,
        ledger: PositionLedger,
        close_price: float,
        date_close: datetime
    ) -> Trade:
        pnl_usd = ledger.realized_pnl(close_price)

        updated = await self.db.update(Trade, trade.id, {
            'close_price': close_price,
            'date_close': date_close,
            'actual_duration_minutes': metrics.duration_minutes(trade.date_open, date_close),
            'pnl_usd': pnl_usd,
            'realized_pnl_usd': pnl_usd,
            'r_multiple': metrics.r_multiple(pnl_usd, trade.original_risk_usd),
            'pnl_percent_of_balance': metrics.pnl_percent_of_balance(pnl_usd, trade.account_balance_at_entry),
        }, Access.for_owner(owner))

        self.logger.info(f"🏁 Closed {trade.direction} {trade.coin} @ {close_price}, pnl {pnl_usd:.2f}")
        return updated

    # ------------------------------------------------------------------
    # Обслуживание
    # ------------------------------------------------------------------

    @log_execution_time(__name__)
    async def recalculate_metrics(self, owner: str) -> Dict[str, Any]:
        """
        Пересчет pnl / r / rr / pnl% для закрытых сделок активного профиля

        Сделки с биржи пропускаются: их PnL пришел от брокера с учетом комиссий.
        """
        profile = await self.profiles.resolve_active_profile(owner)
        access = Access.for_owner(owner)
        page_size = self.settings.COUNT_PAGE_SIZE

        total = 0
        recalculated = 0
        skip = 0

        while skip < self.settings.MAX_SCAN_RECORDS:
            batch = await self.db.filter(
                Trade, {'profile_id': profile.id}, access,
                order_by='-created_date', limit=page_size, skip=skip
            )
            if not batch:
                break
            total += len(batch)
            skip += len(batch)

            for trade in batch:
                if trade.is_open or trade.import_source == ImportSource.EXCHANGE.value:
                    continue

                changes = self._recalculated_fields(trade)
                if changes:
                    await self.db.update(Trade, trade.id, changes, access)
                    recalculated += 1

            if len(batch) < page_size:
                break

        self.logger.info(f"🧮 Recalculated {recalculated}/{total} trades for profile {profile.id}")
        return {
            'total_trades': total,
            'recalculated_trades': recalculated,
            'profile_id': profile.id,
            'profile_name': profile.profile_name,
        }

    def _recalculated_fields(self, trade: Trade) -> Dict[str, Any]:
        ledger = PositionLedger.from_trade(trade)
        pnl_usd = ledger.realized_pnl(trade.close_price)
        rr_ratio = metrics.rr(trade.entry_price, trade.take_price, trade.stop_price)
        pnl_pct = metrics.pnl_percent_of_balance(pnl_usd, trade.account_balance_at_entry)
        r_value = metrics.r_multiple(pnl_usd, trade.original_risk_usd or trade.risk_usd)

        if not (
            _changed(trade.pnl_usd, pnl_usd)
            or _changed(trade.rr_ratio, rr_ratio)
            or _changed(trade.pnl_percent_of_balance, pnl_pct)
            or _changed(trade.r_multiple, r_value)
        ):
            return {}

        return {
            'pnl_usd': pnl_usd,
            'realized_pnl_usd': pnl_usd,
            'r_multiple': r_value,
            'rr_ratio': rr_ratio,
            'pnl_percent_of_balance': pnl_pct,
        }

    async def clear_open_realized_pnl(self, owner: str) -> Dict[str, Any]:
        """Обнуление устаревшего realized PnL у открытых сделок без частичных закрытий"""
        profile = await self.profiles.resolve_active_profile(owner)
        access = Access.for_owner(owner)

        open_trades = await self.db.filter(
            Trade, {'profile_id': profile.id, 'close_price': None}, access,
            order_by='-date_open', limit=self.settings.MAX_SCAN_RECORDS
        )

        updated = 0
        for trade in open_trades:
            if trade.partial_closes:
                continue
            if trade.realized_pnl_usd:
                await self.db.update(Trade, trade.id, {'realized_pnl_usd': 0.0}, access)
                updated += 1

        self.logger.info(f"🧹 Cleared realized PnL on {updated} open trades")
        return {'updated_count': updated, 'profile_id': profile.id}

    async def count_trades(
        self,
        owner: str,
        profile_id: Optional[str] = None,
        test_run_id: Optional[str] = None
    ) -> TradeCounts:
        """Подсчет сделок профиля (активного или явно указанного) с проверкой согласованности"""
        profile = await self.profiles.resolve_target_profile(owner, profile_id)

        criteria: Dict[str, Any] = {'profile_id': profile.id}
        if test_run_id:
            criteria['test_run_id'] = test_run_id

        counts = await scan_trade_counts(
            self.db, Access.for_owner(owner), criteria,
            self.settings.COUNT_PAGE_SIZE, self.settings.MAX_SCAN_RECORDS
        )

        if not counts.consistent or not counts.count_match:
            self.logger.warning(
                f"⚠️ Trade count mismatch for profile {profile.id}: "
                f"{counts.open}+{counts.closed} vs {counts.total} (db: {counts.db_total})"
            )
        return counts
