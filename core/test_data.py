"""
Test Data Generator
Детерминированная генерация тестовых сделок с защитой от дублей и scoped удаление
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from app.config.settings import Settings, get_settings
from core import metrics
from core.position_ledger import PositionLedger
from core.profile_integrity import ProfileIntegrityManager
from core.trade_journal import scan_trade_counts
from data.database import Database, Access
from data.models import Trade, TestRun, Direction, ImportSource, GenerationMode
from utils.helpers import (
    ValidationError, DuplicateIdError, IntegrityViolationError,
    get_current_timestamp, get_current_utc_datetime, ensure_utc, chunk_list, Timer
)
from utils.logger import setup_logger


COINS = ['BTCUSDT', 'ETHUSDT', 'SOLUSDT', 'BNBUSDT', 'XRPUSDT', 'ADAUSDT', 'DOGEUSDT', 'MATICUSDT']
STRATEGIES = ['Breakout', 'Reversal', 'Trend Follow', 'Support/Resistance', 'Momentum']
TIMEFRAMES = ['scalp', 'day', 'swing', 'mid_term']

# Максимальная длительность сделки в часах по таймфрейму
TIMEFRAME_HOURS = {'scalp': 6, 'day': 24}
DEFAULT_TIMEFRAME_HOURS = 72

DELETE_SCOPES = ('all', 'test_only')


# ============================================================================
# PRNG
# ============================================================================

class SeededRandom:
    """
    Линейный конгруэнтный генератор: state = (state * 9301 + 49297) mod 233280

    Один и тот же seed всегда дает одну и ту же последовательность.
    """

    MULTIPLIER = 9301
    INCREMENT = 49297
    MODULUS = 233280

    def __init__(self, seed: int):
        self.seed = int(seed)
        self._state = self.seed

    def random(self) -> float:
        """Следующее число в [0, 1)"""
        self._state = (self._state * self.MULTIPLIER + self.INCREMENT) % self.MODULUS
        return self._state / self.MODULUS

    def choice(self, items: Sequence[Any]) -> Any:
        return items[int(self.random() * len(items))]


# ============================================================================
# ПОСТРОЕНИЕ СДЕЛОК
# ============================================================================

def trade_id_for(profile_id: str, test_run_id: str, index: int) -> str:
    """Детерминированный id сделки внутри прогона"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{profile_id}:{test_run_id}:{index}"))


def _base_price(coin: str, rng: SeededRandom) -> float:
    if coin == 'BTCUSDT':
        return 40000 + rng.random() * 60000
    if coin == 'ETHUSDT':
        return 2000 + rng.random() * 2000
    if coin == 'SOLUSDT':
        return 80 + rng.random() * 120
    return 0.5 + rng.random() * 10


def build_test_trades(
    profile_id: str,
    test_run_id: str,
    count: int,
    mode: GenerationMode,
    seed: int,
    starting_balance: float,
    include_open: bool = True,
    now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Построение тестовых сделок без обращения к БД

    Одинаковые (seed, параметры, now) дают одинаковый результат.
    EDGE добавляет сделки без стопов/тейков, доливки и частичные закрытия,
    LOAD растягивает даты на год.
    """
    mode = GenerationMode(mode)
    now = ensure_utc(now) or get_current_utc_datetime()
    rng = SeededRandom(seed)
    is_edge = mode == GenerationMode.EDGE

    balance = starting_balance
    trades = []

    for index in range(count):
        is_long = rng.random() > 0.5
        direction = Direction.LONG if is_long else Direction.SHORT
        coin = rng.choice(COINS)
        strategy = rng.choice(STRATEGIES)
        timeframe = rng.choice(TIMEFRAMES)

        entry = _base_price(coin, rng)
        size = max(balance, 1.0) * (0.01 + rng.random() * 0.04)

        stop = None
        if not (is_edge and rng.random() > 0.7):
            stop_pct = 0.01 + rng.random() * 0.03
            stop = entry * (1 - stop_pct) if is_long else entry * (1 + stop_pct)

        take = None
        if not (is_edge and rng.random() > 0.8):
            take_pct = 0.02 + rng.random() * 0.08
            take = entry * (1 + take_pct) if is_long else entry * (1 - take_pct)

        days_ago = int(rng.random() * (365 if mode == GenerationMode.LOAD else 90))
        date_open = now - timedelta(days=days_ago)

        # Закрытие разыгрывается всегда, чтобы последовательность не зависела от include_open
        close_roll = rng.random()
        should_close = (close_roll > (0.3 if mode == GenerationMode.SMOKE else 0.4)) or not include_open

        close_price = None
        date_close = None
        if should_close:
            if rng.random() < 0.55:
                move = 0.02 + rng.random() * 0.08
                move = move if is_long else -move
            else:
                move = 0.01 + rng.random() * 0.03
                move = -move if is_long else move
            close_price = entry * (1 + move)

            hours = 1 + int(rng.random() * TIMEFRAME_HOURS.get(timeframe, DEFAULT_TIMEFRAME_HOURS))
            date_close = date_open + timedelta(hours=hours)

        ledger = PositionLedger(direction=direction, entry_price=entry, size_usd=size, opened_at=date_open)
        span_end = date_close or now

        if is_edge and rng.random() > 0.7:
            add_count = 1 + int(rng.random() * 2)
            for j in range(add_count):
                add_price = entry * (1 + (-0.01 if is_long else 0.01) * (j + 1))
                add_size = size * (0.3 + rng.random() * 0.4)
                # Доливки в первой половине жизни сделки
                ts = date_open + (span_end - date_open) * (j + 1) / (2 * (add_count + 1))
                ledger.add(add_price, add_size, ts)

        if is_edge and should_close and rng.random() > 0.6:
            partial_count = 1 + int(rng.random() * 2)
            for j in range(partial_count):
                partial_price = entry * (1 + (0.01 if is_long else -0.01) * (j + 1))
                percent = 25 + int(rng.random() * 25)
                # Частичные закрытия во второй половине, строго до финального закрытия
                ts = date_open + (span_end - date_open) * (0.5 + (j + 1) / (2 * (partial_count + 1)))
                ledger.partial_close(percent, partial_price, ts)

        avg_entry = ledger.avg_entry
        original_risk = metrics.risk(entry, stop, size)
        risk_usd = metrics.risk(avg_entry, stop, ledger.remaining_notional)
        balance_at_entry = balance

        pnl_usd = ledger.realized_pnl(close_price)
        if should_close:
            balance += pnl_usd

        trades.append({
            'id': trade_id_for(profile_id, test_run_id, index),
            'profile_id': profile_id,
            'import_source': ImportSource.SEED.value,
            'test_run_id': test_run_id,
            'coin': coin,
            'direction': direction.value,
            'strategy_tag': strategy,
            'timeframe': timeframe,
            'date_open': date_open,
            'entry_price': avg_entry,
            'original_entry_price': entry,
            'position_size': ledger.total_notional,
            'stop_price': stop,
            'original_stop_price': stop,
            'take_price': take,
            'close_price': close_price,
            'date_close': date_close,
            'actual_duration_minutes': metrics.duration_minutes(date_open, date_close),
            'account_balance_at_entry': balance_at_entry,
            'risk_usd': risk_usd,
            'original_risk_usd': original_risk,
            'risk_percent': metrics.risk_percent(risk_usd, balance_at_entry),
            'rr_ratio': metrics.rr(entry, take, stop),
            'pnl_usd': pnl_usd,
            'realized_pnl_usd': pnl_usd,
            'pnl_percent_of_balance': (
                metrics.pnl_percent_of_balance(pnl_usd, balance_at_entry) if should_close else None
            ),
            'r_multiple': metrics.r_multiple(pnl_usd, original_risk) if should_close else None,
            'adds_history': ledger.adds_to_json(),
            'partial_closes': ledger.partials_to_json(),
        })

    return trades


# ============================================================================
# РЕЗУЛЬТАТЫ
# ============================================================================

@dataclass
class GenerationResult:
    """Результат генерации тестовых сделок"""
    test_run_id: str
    profile_id: str
    mode: str
    seed: int
    requested: int
    inserted: int = 0
    verified: int = 0
    open: int = 0
    closed: int = 0
    deduplicated_count: int = 0
    duration_ms: float = 0.0

    @property
    def consistency_check(self) -> bool:
        return self.open + self.closed == self.verified

    @property
    def count_match(self) -> bool:
        if self.deduplicated_count:
            return self.inserted == 0
        return self.requested == self.inserted == self.verified

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.consistency_check and self.count_match,
            'test_run_id': self.test_run_id,
            'profile_id': self.profile_id,
            'mode': self.mode,
            'seed': self.seed,
            'requested_count': self.requested,
            'inserted_count': self.inserted,
            'verified_db_total': self.verified,
            'open_count': self.open,
            'closed_count': self.closed,
            'deduplicated_count': self.deduplicated_count,
            'consistency_check': 'PASS' if self.consistency_check else 'FAIL',
            'count_match': 'PASS' if self.count_match else 'FAIL',
            'duration_ms': round(self.duration_ms, 2),
        }


@dataclass
class DeletionResult:
    """Результат scoped удаления"""
    profile_id: str
    scope: str
    test_run_id: Optional[str] = None
    total_found: int = 0
    deleted_count: int = 0
    remaining_count: int = 0
    failed_ids: List[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.remaining_count == 0 and self.deleted_count == self.total_found

    @property
    def verification(self) -> str:
        if self.success:
            return 'PASS'
        # Скан упёрся в лимит: удалено всё найденное, остаток ждет повторного вызова
        if self.truncated and self.deleted_count == self.total_found:
            return 'PARTIAL'
        return 'FAIL'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'profile_id': self.profile_id,
            'scope': self.scope,
            'test_run_id': self.test_run_id,
            'total_found': self.total_found,
            'deleted_count': self.deleted_count,
            'remaining_count': self.remaining_count,
            'failed_count': len(self.failed_ids),
            'truncated': self.truncated,
            'verification': self.verification,
        }


# ============================================================================
# GENERATOR
# ============================================================================

class TestDataGenerator:
    """
    Генерация и удаление тестовых сделок активного профиля

    Генерация идемпотентна по test_run_id, удаление всегда ограничено
    (owner, profile_id[, test_run_id]).
    """
    __test__ = False

    def __init__(
        self,
        database: Database,
        profiles: ProfileIntegrityManager,
        settings: Optional[Settings] = None
    ):
        self.db = database
        self.profiles = profiles
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.TestDataGenerator")

        self.stats = {
            'runs': 0,
            'deduplicated_runs': 0,
            'trades_inserted': 0,
            'trades_deleted': 0,
        }

    # ------------------------------------------------------------------
    # Генерация
    # ------------------------------------------------------------------

    async def generate(
        self,
        owner: str,
        count: int = 20,
        mode: str = GenerationMode.SMOKE.value,
        seed: Optional[int] = None,
        include_open: bool = True,
        test_run_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> GenerationResult:
        """
        Генерация count тестовых сделок в активный профиль

        Повторный вызов с тем же test_run_id ничего не вставляет и
        возвращает количество уже существующих сделок прогона.
        """
        try:
            mode = GenerationMode(str(getattr(mode, "value", mode)).upper())
        except ValueError:
            raise ValidationError(f"Unknown generation mode: {mode}")
        if not isinstance(count, int) or isinstance(count, bool) or count <= 0:
            raise ValidationError(f"Count must be a positive integer, got {count}")

        profile = await self.profiles.resolve_active_profile(owner)
        access = Access.for_owner(owner)
        test_run_id = test_run_id or str(uuid.uuid4())
        seed = int(seed) if seed is not None else get_current_timestamp()

        result = GenerationResult(
            test_run_id=test_run_id,
            profile_id=profile.id,
            mode=mode.value,
            seed=seed,
            requested=count,
        )

        run_criteria = {'profile_id': profile.id, 'test_run_id': test_run_id}
        existing = await self.db.count(Trade, run_criteria, access)
        if existing > 0:
            self.stats['deduplicated_runs'] += 1
            self.logger.info(f"♻️ Run {test_run_id} already exists with {existing} trades (idempotent)")
            counts = await scan_trade_counts(
                self.db, access, run_criteria,
                self.settings.COUNT_PAGE_SIZE, self.settings.MAX_SCAN_RECORDS
            )
            result.deduplicated_count = existing
            result.verified = counts.total
            result.open = counts.open
            result.closed = counts.closed
            return result

        timer = Timer(f"generate {count} trades")
        with timer:
            trades = build_test_trades(
                profile_id=profile.id,
                test_run_id=test_run_id,
                count=count,
                mode=mode,
                seed=seed,
                starting_balance=profile.starting_balance or self.settings.DEFAULT_STARTING_BALANCE,
                include_open=include_open,
                now=now,
            )
            if len(trades) != count:
                raise IntegrityViolationError(
                    f"Generated {len(trades)} trades but expected {count}",
                    details={'generated': len(trades), 'expected': count}
                )

            result.inserted = await self._insert_batches(trades, access)
        result.duration_ms = timer.elapsed_ms

        counts = await scan_trade_counts(
            self.db, access, run_criteria,
            self.settings.COUNT_PAGE_SIZE, self.settings.MAX_SCAN_RECORDS
        )
        result.verified = counts.total
        result.open = counts.open
        result.closed = counts.closed

        await self.db.create(TestRun, {
            'test_run_id': test_run_id,
            'profile_id': profile.id,
            'count': result.verified,
            'seed': seed,
            'mode': mode.value,
            'timestamp': get_current_utc_datetime(),
        }, access)

        self.stats['runs'] += 1
        self.stats['trades_inserted'] += result.inserted

        if not (result.count_match and result.consistency_check):
            self.logger.error(
                f"❌ Run {test_run_id} verification failed: requested {count}, "
                f"inserted {result.inserted}, verified {result.verified}"
            )
            raise IntegrityViolationError(
                "Generated trade count does not match the database",
                details=result.to_dict()
            )

        self.logger.info(
            f"🧪 Generated {result.inserted} {mode.value} trades for profile {profile.id} "
            f"({result.open} open, {result.closed} closed) in {result.duration_ms:.0f}ms"
        )
        return result

    async def _insert_batches(self, trades: List[Dict[str, Any]], access: Access) -> int:
        """Вставка пачками с проверкой дублей внутри пачки и между пачками"""
        batch_size = self.settings.GENERATOR_BATCH_SIZE
        inserted_ids = set()
        inserted = 0

        for batch_no, batch in enumerate(chunk_list(trades, batch_size), start=1):

            batch_ids = [trade['id'] for trade in batch]
            if len(set(batch_ids)) != len(batch_ids):
                raise DuplicateIdError(f"Duplicate IDs in batch {batch_no}")

            repeated = [trade_id for trade_id in batch_ids if trade_id in inserted_ids]
            if repeated:
                raise DuplicateIdError(
                    f"Attempting to re-insert IDs in batch {batch_no}",
                    details={'ids': repeated[:5]}
                )

            await self.db.bulk_create(Trade, batch, access)
            inserted += len(batch)
            inserted_ids.update(batch_ids)
            self.logger.debug(f"💾 Inserted batch {batch_no}: {inserted}/{len(trades)}")

        return inserted

    # ------------------------------------------------------------------
    # Удаление
    # ------------------------------------------------------------------

    async def delete_trades(
        self,
        owner: str,
        profile_id: Optional[str] = None,
        test_run_id: Optional[str] = None,
        scope: str = 'all'
    ) -> DeletionResult:
        """
        Удаление сделок профиля

        Без profile_id удаляется только активный профиль; явный profile_id
        должен принадлежать владельцу.
        """
        if scope not in DELETE_SCOPES:
            raise ValidationError(f"Unknown deletion scope: {scope}")

        profile = await self.profiles.resolve_target_profile(owner, profile_id)

        criteria: Dict[str, Any] = {'profile_id': profile.id}
        if scope == 'test_only':
            criteria['import_source'] = ImportSource.SEED.value
        if test_run_id:
            criteria['test_run_id'] = test_run_id

        result = DeletionResult(profile_id=profile.id, scope=scope, test_run_id=test_run_id)
        return await self._delete_scoped(owner, criteria, result)

    async def wipe_test_trades(self, owner: str, test_run_id: Optional[str] = None) -> DeletionResult:
        """Удаление только seed сделок активного профиля"""
        return await self.delete_trades(owner, test_run_id=test_run_id, scope='test_only')

    async def _delete_scoped(
        self,
        owner: str,
        criteria: Dict[str, Any],
        result: DeletionResult
    ) -> DeletionResult:
        if not criteria.get('profile_id'):
            raise ValidationError("Refusing to delete trades without a profile scope")

        access = Access.for_owner(owner)
        trade_ids = await self._collect_ids(criteria, access, result)
        result.total_found = len(trade_ids)

        self.logger.info(
            f"🗑️ Deleting {len(trade_ids)} trades for profile {result.profile_id} "
            f"(scope: {result.scope}, test_run_id: {result.test_run_id or 'all'})"
        )

        batch_size = self.settings.DELETE_BATCH_SIZE
        delay = self.settings.DELETE_BATCH_DELAY_MS / 1000

        batches = list(chunk_list(trade_ids, batch_size))
        for batch_no, batch in enumerate(batches, start=1):
            outcomes = await asyncio.gather(
                *(self.db.delete(Trade, trade_id, access) for trade_id in batch),
                return_exceptions=True
            )

            for trade_id, outcome in zip(batch, outcomes):
                if outcome is True:
                    result.deleted_count += 1
                else:
                    result.failed_ids.append(trade_id)
                    if isinstance(outcome, Exception):
                        self.logger.warning(f"⚠️ Failed to delete trade {trade_id}: {outcome}")

            self.logger.debug(f"🗑️ Deleted {result.deleted_count}/{result.total_found}")

            if batch_no < len(batches) and delay > 0:
                await asyncio.sleep(delay)

        result.remaining_count = await self.db.count(Trade, criteria, access)
        self.stats['trades_deleted'] += result.deleted_count

        if result.truncated and result.remaining_count > 0 and not result.failed_ids:
            self.logger.warning(
                f"⚠️ Deleted {result.deleted_count} trades, {result.remaining_count} remain beyond "
                f"the scan cap for profile {result.profile_id}; repeat the deletion"
            )
            return result

        if result.remaining_count > 0:
            self.logger.error(
                f"❌ {result.remaining_count} trades remain after deletion for profile {result.profile_id}"
            )
            raise IntegrityViolationError(
                f"{result.remaining_count} trades remain after deletion",
                next_step="Retry the deletion",
                details=result.to_dict()
            )

        self.logger.info(f"✅ Deleted {result.deleted_count}/{result.total_found} trades")
        return result

    async def _collect_ids(
        self,
        criteria: Dict[str, Any],
        access: Access,
        result: DeletionResult
    ) -> List[str]:
        page_size = self.settings.COUNT_PAGE_SIZE
        max_records = self.settings.MAX_SCAN_RECORDS
        trade_ids: List[str] = []

        while True:
            if len(trade_ids) >= max_records:
                result.truncated = True
                self.logger.warning(f"⚠️ Deletion scan capped at {max_records} records")
                break

            limit = min(page_size, max_records - len(trade_ids))
            batch = await self.db.filter(
                Trade, criteria, access,
                order_by='-created_date',
                limit=limit,
                skip=len(trade_ids)
            )
            if not batch:
                break

            trade_ids.extend(trade.id for trade in batch)
            if len(batch) < limit:
                break

        return trade_ids
