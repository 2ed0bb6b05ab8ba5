"""
Exchange Sync Service
Инкрементальное зеркалирование открытых и закрытых позиций Bybit в журнал
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.config.settings import Settings, get_settings
from core import metrics
from core.bybit_client import ExchangeRelayClient, PageResult
from core.profile_integrity import ProfileIntegrityManager
from data.database import Database, Access
from data.models import ApiSettings, Trade, Direction, ImportSource, UserProfile
from utils.helpers import (
    JournalError, ValidationError, RelayNotConfiguredError,
    safe_float, safe_int, positive_or_none, timestamp_to_datetime,
    get_current_timestamp, get_current_utc_datetime, mask_secret
)
from utils.logger import setup_logger, log_sync_event, log_execution_time


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

EXCHANGE_NAME = "bybit"

OPEN_PREFIX = "EXCHANGE:OPEN"
CLOSED_PREFIX = "EXCHANGE:CLOSED"


class SyncMode(str, Enum):
    """Режим синхронизации"""
    INITIALIZATION = "initialization"
    INCREMENTAL = "incremental"


@dataclass
class SyncReport:
    """Итог синхронизации: счетчики и ошибки по секциям, финальные курсоры"""
    mode: SyncMode
    profile_id: str
    balance: Optional[float] = None
    open_upserted: int = 0
    open_skipped: int = 0
    executions_seen: int = 0
    closed_upserted: int = 0
    closed_skipped: int = 0
    closed_pages: int = 0
    closed_truncated: bool = False
    errors: Dict[str, str] = field(default_factory=dict)
    closed_baseline_ms: Optional[int] = None
    exec_baseline_ms: Optional[int] = None

    @property
    def success(self) -> bool:
        return not any(section != 'balance' for section in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'profile_id': self.profile_id,
            'balance': self.balance,
            'open_positions': self.open_upserted,
            'open_skipped': self.open_skipped,
            'executions_seen': self.executions_seen,
            'closed_trades': self.closed_upserted,
            'closed_skipped': self.closed_skipped,
            'closed_pages': self.closed_pages,
            'closed_truncated': self.closed_truncated,
            'errors': self.errors,
            'closed_baseline_ms': self.closed_baseline_ms,
            'exec_baseline_ms': self.exec_baseline_ms,
        }


def _error_kind(error: Exception) -> str:
    if isinstance(error, JournalError):
        return error.error_code
    return "UNEXPECTED_ERROR"


# ============================================================================
# NORMALIZATION
# ============================================================================

def open_external_id(symbol: str, direction: str, position_idx: Any) -> str:
    return f"{OPEN_PREFIX}:{symbol}:{direction}:{safe_int(position_idx)}"


def closed_external_id(symbol: str, direction: str, closed_ts: int) -> str:
    return f"{CLOSED_PREFIX}:{symbol}:{direction}:{closed_ts}"


def position_direction(side: Optional[str]) -> Optional[str]:
    """Сторона позиции: Buy -> Long, Sell -> Short"""
    if side == "Buy":
        return Direction.LONG.value
    if side == "Sell":
        return Direction.SHORT.value
    return None


def closing_direction(side: Optional[str]) -> Optional[str]:
    """В closed-pnl side - сторона закрывающего ордера: Sell закрывает Long"""
    if side == "Sell":
        return Direction.LONG.value
    if side == "Buy":
        return Direction.SHORT.value
    return None


def closed_record_ts(record: Dict[str, Any]) -> int:
    return safe_int(record.get('updatedTime')) or safe_int(record.get('createdTime'))


def normalize_open_position(
    position: Dict[str, Any],
    balance: Optional[float]
) -> Optional[Dict[str, Any]]:
    """
    Позиция Bybit -> поля Trade

    Возвращает None для пустых позиций (size == 0 или без стороны).
    """
    size = safe_float(position.get('size'))
    direction = position_direction(position.get('side'))
    entry = positive_or_none(position.get('avgPrice'))
    symbol = position.get('symbol')

    if not symbol or size <= 0 or direction is None or entry is None:
        return None

    position_size = safe_float(position.get('positionValue')) or size * entry
    stop = positive_or_none(position.get('stopLoss'))
    take = positive_or_none(position.get('takeProfit'))
    risk_usd = metrics.risk(entry, stop, position_size)
    opened_ms = safe_int(position.get('createdTime'))

    return {
        'external_id': open_external_id(symbol, direction, position.get('positionIdx')),
        'coin': symbol,
        'direction': direction,
        'entry_price': entry,
        'position_size': position_size,
        'stop_price': stop,
        'take_price': take,
        'close_price': None,
        'date_close': None,
        'date_open': timestamp_to_datetime(opened_ms) if opened_ms else get_current_utc_datetime(),
        'risk_usd': risk_usd,
        'risk_percent': metrics.risk_percent(risk_usd, balance),
        'rr_ratio': metrics.rr(entry, take, stop),
        'pnl_usd': safe_float(position.get('unrealisedPnl')),
        'import_source': ImportSource.EXCHANGE.value,
    }


def normalize_closed_record(
    record: Dict[str, Any],
    balance: Optional[float]
) -> Optional[Dict[str, Any]]:
    """Запись closed-pnl Bybit -> поля закрытой Trade"""
    symbol = record.get('symbol')
    direction = closing_direction(record.get('side'))
    entry = positive_or_none(record.get('avgEntryPrice'))
    close = positive_or_none(record.get('avgExitPrice'))
    closed_ts = closed_record_ts(record)

    if not symbol or direction is None or entry is None or close is None or not closed_ts:
        return None

    pnl_usd = safe_float(record.get('closedPnl'))
    opened_ms = safe_int(record.get('createdTime')) or closed_ts
    date_open = timestamp_to_datetime(opened_ms)
    date_close = timestamp_to_datetime(closed_ts)

    return {
        'external_id': closed_external_id(symbol, direction, closed_ts),
        'coin': symbol,
        'direction': direction,
        'entry_price': entry,
        'position_size': safe_float(record.get('cumEntryValue')) or safe_float(record.get('qty')) * entry,
        'close_price': close,
        'date_open': date_open,
        'date_close': date_close,
        'actual_duration_minutes': metrics.duration_minutes(date_open, date_close),
        'pnl_usd': pnl_usd,
        'realized_pnl_usd': pnl_usd,
        'pnl_percent_of_balance': metrics.pnl_percent_of_balance(pnl_usd, balance),
        'r_multiple': None,
        'import_source': ImportSource.EXCHANGE.value,
    }


# ============================================================================
# SYNC SERVICE
# ============================================================================

ClientFactory = Callable[[str, str], Any]


class ExchangeSyncService:
    """
    Сервис синхронизации журнала с биржей

    Режим выбирается флагом bybit_sync_initialized:
    - инициализация импортирует только открытые позиции и ставит курсоры
      на серверное время;
    - инкрементальный режим дочитывает исполнения и closed-pnl от курсоров.
    Ошибки секций логируются и попадают в отчет, курсор секции двигается
    только после ее успешного выполнения.
    """

    def __init__(
        self,
        database: Database,
        profiles: ProfileIntegrityManager,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.db = database
        self.profiles = profiles
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.ExchangeSyncService")
        self._client_factory = client_factory

        self.stats = {
            'syncs': 0,
            'failed_sections': 0,
            'trades_upserted': 0,
        }

    def _create_client(self, api_key: str, api_secret: str):
        if self._client_factory is not None:
            return self._client_factory(api_key, api_secret)
        if not self.settings.BYBIT_PROXY_URL:
            raise RelayNotConfiguredError("Bridge server not configured")
        return ExchangeRelayClient(api_key, api_secret, settings=self.settings)

    async def _get_api_settings(self, owner: str, profile_id: str) -> Optional[ApiSettings]:
        rows = await self.db.filter(
            ApiSettings,
            {'profile_id': profile_id, 'exchange': EXCHANGE_NAME},
            Access.for_owner(owner),
            limit=1
        )
        return rows[0] if rows else None

    async def _require_api_settings(self, owner: str, profile_id: str) -> ApiSettings:
        api_settings = await self._get_api_settings(owner, profile_id)
        if api_settings is None or not api_settings.is_active:
            raise ValidationError(
                "Bybit is not connected for the active profile",
                error_code="MISSING_CREDENTIALS",
                next_step="Connect your Bybit account in Settings"
            )
        return api_settings

    # ========================================================================
    # CONNECT / BALANCE
    # ========================================================================

    async def connect(
        self,
        owner: str,
        api_key: Optional[str],
        api_secret: Optional[str],
        environment: str = "mainnet"
    ) -> Dict[str, Any]:
        """Проверка ключей запросом баланса и сохранение ApiSettings активного профиля"""
        if not api_key or not api_secret:
            raise ValidationError(
                "API credentials are required",
                error_code="MISSING_CREDENTIALS",
                next_step="Enter both API Key and API Secret"
            )

        profile = await self.profiles.resolve_active_profile(owner)
        self.logger.info(f"🔌 Connecting Bybit for profile {profile.id} ({environment})")

        async with self._create_client(api_key, api_secret) as client:
            balance = await client.get_usdt_balance()

        access = Access.for_owner(owner)
        data = {
            'api_key': api_key,
            'api_secret': api_secret,
            'environment': environment,
            'is_active': True,
        }

        existing = await self._get_api_settings(owner, profile.id)
        if existing is not None:
            await self.db.update(ApiSettings, existing.id, data, access)
        else:
            await self.db.create(ApiSettings, {
                **data,
                'profile_id': profile.id,
                'exchange': EXCHANGE_NAME,
                'bybit_sync_initialized': False,
            }, access)

        log_sync_event('connected', owner, "✅ Bybit connected", profile_id=profile.id)

        return {
            'connected': True,
            'exchange': EXCHANGE_NAME,
            'environment': environment,
            'profile_id': profile.id,
            'api_key': mask_secret(api_key),
            'balance': balance,
        }

    async def get_balance(self, owner: str) -> Optional[float]:
        """USDT баланс кошелька для активного профиля"""
        profile = await self.profiles.resolve_active_profile(owner)
        api_settings = await self._require_api_settings(owner, profile.id)

        async with self._create_client(api_settings.api_key, api_settings.api_secret) as client:
            return await client.get_usdt_balance()

    # ========================================================================
    # SYNC
    # ========================================================================

    @log_execution_time(__name__)
    async def sync(self, owner: str) -> SyncReport:
        """Синхронизация активного профиля владельца"""
        profile = await self.profiles.resolve_active_profile(owner)
        api_settings = await self._require_api_settings(owner, profile.id)

        mode = SyncMode.INCREMENTAL if api_settings.bybit_sync_initialized else SyncMode.INITIALIZATION
        report = SyncReport(
            mode=mode,
            profile_id=profile.id,
            closed_baseline_ms=api_settings.closed_baseline_ms,
            exec_baseline_ms=api_settings.exec_baseline_ms,
        )

        log_sync_event('sync_started', owner, f"🔄 Sync started ({mode.value})", profile_id=profile.id)

        async with self._create_client(api_settings.api_key, api_settings.api_secret) as client:
            report.balance = await self._fetch_balance(client, report)

            if mode == SyncMode.INITIALIZATION:
                await self._initialize(owner, profile, api_settings, client, report)
            else:
                await self._incremental(owner, profile, api_settings, client, report)

        self.stats['syncs'] += 1
        log_sync_event(
            'sync_finished', owner,
            f"✅ Sync finished ({mode.value}): {report.open_upserted} open, "
            f"{report.closed_upserted} closed, errors: {list(report.errors) or 'none'}",
            profile_id=profile.id,
            errors=report.errors,
        )
        return report

    async def _fetch_balance(self, client, report: SyncReport) -> Optional[float]:
        """Ошибка баланса не фатальна"""
        try:
            return await client.get_usdt_balance()
        except Exception as e:
            report.errors['balance'] = _error_kind(e)
            self.logger.warning(f"⚠️ Balance fetch failed, continuing without balance: {e}")
            return None

    async def _initialize(
        self,
        owner: str,
        profile: UserProfile,
        api_settings: ApiSettings,
        client,
        report: SyncReport
    ) -> None:
        """Первая синхронизация: только открытые позиции, без истории"""
        try:
            server_ms = await client.get_server_time()
        except Exception as e:
            server_ms = get_current_timestamp()
            self.logger.warning(f"⚠️ Server time unavailable, using local time: {e}")

        await self._sync_open_positions(owner, profile, client, report)

        report.closed_baseline_ms = server_ms
        report.exec_baseline_ms = server_ms

        await self.db.update(ApiSettings, api_settings.id, {
            'bybit_sync_initialized': True,
            'closed_baseline_ms': server_ms,
            'exec_baseline_ms': server_ms,
            'last_sync': get_current_utc_datetime(),
        }, Access.for_owner(owner))

        self.logger.info(
            f"🆕 Sync initialized for profile {profile.id}: "
            f"{report.open_upserted} open positions, baselines at {server_ms}"
        )

    async def _incremental(
        self,
        owner: str,
        profile: UserProfile,
        api_settings: ApiSettings,
        client,
        report: SyncReport
    ) -> None:
        """Повторная синхронизация: открытые позиции, исполнения, closed-pnl"""
        await self._sync_open_positions(owner, profile, client, report)

        changes: Dict[str, Any] = {'last_sync': get_current_utc_datetime()}

        new_exec = await self._sync_executions(api_settings.exec_baseline_ms, client, report)
        if new_exec is not None:
            changes['exec_baseline_ms'] = new_exec
            report.exec_baseline_ms = new_exec

        new_closed = await self._sync_closed_pnl(
            owner, profile, api_settings.closed_baseline_ms, client, report
        )
        if new_closed is not None:
            changes['closed_baseline_ms'] = new_closed
            report.closed_baseline_ms = new_closed

        await self.db.update(ApiSettings, api_settings.id, changes, Access.for_owner(owner))

    # ------------------------------------------------------------------
    # Секции
    # ------------------------------------------------------------------

    async def _collect_pages(
        self,
        fetch_page: Callable[[Optional[str]], Any]
    ) -> Tuple[List[Dict[str, Any]], int, bool]:
        """Все страницы до пустого курсора или пустой страницы, не больше лимита"""
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        pages = 0

        while pages < self.settings.SYNC_MAX_CLOSED_PAGES:
            page: PageResult = await fetch_page(cursor)
            pages += 1
            if not page.items:
                return items, pages, False
            items.extend(page.items)
            if not page.next_cursor:
                return items, pages, False
            cursor = page.next_cursor

        return items, pages, True

    async def _sync_open_positions(
        self,
        owner: str,
        profile: UserProfile,
        client,
        report: SyncReport
    ) -> None:
        try:
            positions, _, truncated = await self._collect_pages(
                lambda cursor: client.get_positions(cursor=cursor)
            )
            if truncated:
                self.logger.warning(f"⚠️ Position list truncated at {self.settings.SYNC_MAX_CLOSED_PAGES} pages")

            for position in positions:
                data = normalize_open_position(position, report.balance)
                if data is None:
                    report.open_skipped += 1
                    continue
                await self._upsert(owner, profile, data, report.balance)
                report.open_upserted += 1

        except Exception as e:
            report.errors['positions'] = _error_kind(e)
            self.stats['failed_sections'] += 1
            self.logger.error(f"❌ Open positions sync failed for profile {profile.id}: {e}")

    async def _sync_executions(
        self,
        baseline_ms: Optional[int],
        client,
        report: SyncReport
    ) -> Optional[int]:
        """Возвращает новое значение курсора или None, если секция упала"""
        try:
            executions, _, _ = await self._collect_pages(
                lambda cursor: client.get_executions(
                    start_time=baseline_ms, cursor=cursor, limit=self.settings.SYNC_PAGE_LIMIT
                )
            )
        except Exception as e:
            report.errors['executions'] = _error_kind(e)
            self.stats['failed_sections'] += 1
            self.logger.error(f"❌ Executions sync failed: {e}")
            return None

        report.executions_seen = len(executions)
        max_seen = max((safe_int(item.get('execTime')) for item in executions), default=0)
        return max(baseline_ms or 0, max_seen)

    async def _sync_closed_pnl(
        self,
        owner: str,
        profile: UserProfile,
        baseline_ms: Optional[int],
        client,
        report: SyncReport
    ) -> Optional[int]:
        """
        Пагинация closed-pnl от курсора

        Курсор сдвигается до max(старый, максимальный увиденный timestamp),
        в том числе при упоре в лимит страниц (closed_truncated в отчете).
        """
        baseline = baseline_ms or 0
        try:
            records, pages, truncated = await self._collect_pages(
                lambda cursor: client.get_closed_pnl(
                    start_time=baseline_ms, cursor=cursor, limit=self.settings.SYNC_PAGE_LIMIT
                )
            )
            report.closed_pages = pages
            report.closed_truncated = truncated

            max_seen = baseline
            for record in records:
                closed_ts = closed_record_ts(record)
                if closed_ts < baseline:
                    report.closed_skipped += 1
                    continue
                max_seen = max(max_seen, closed_ts)

                data = normalize_closed_record(record, report.balance)
                if data is None:
                    report.closed_skipped += 1
                    continue

                await self._upsert(owner, profile, data, report.balance)
                report.closed_upserted += 1

        except Exception as e:
            report.errors['closed_pnl'] = _error_kind(e)
            self.stats['failed_sections'] += 1
            self.logger.error(f"❌ Closed PnL sync failed for profile {profile.id}: {e}")
            return None

        if truncated:
            self.logger.warning(
                f"⚠️ Closed PnL page cap ({self.settings.SYNC_MAX_CLOSED_PAGES}) reached, "
                f"cursor advanced to {max(baseline, max_seen)}"
            )

        return max(baseline, max_seen)

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def _upsert(
        self,
        owner: str,
        profile: UserProfile,
        data: Dict[str, Any],
        balance: Optional[float]
    ) -> Trade:
        """Поиск по (owner, profile_id, external_id): update или create"""
        access = Access.for_owner(owner)
        existing = await self.db.filter(
            Trade,
            {'profile_id': profile.id, 'external_id': data['external_id']},
            access,
            limit=1
        )

        if existing:
            trade = await self.db.update(Trade, existing[0].id, data, access)
        else:
            trade = await self.db.create(Trade, {
                **data,
                'profile_id': profile.id,
                'original_entry_price': data['entry_price'],
                'original_stop_price': data.get('stop_price'),
                'original_risk_usd': data.get('risk_usd'),
                'account_balance_at_entry': balance if balance is not None else profile.starting_balance,
            }, access)

        self.stats['trades_upserted'] += 1
        return trade
