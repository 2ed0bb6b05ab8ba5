"""
Trade Journal Database Models
SQLAlchemy ORM модели сделок, профилей, настроек API и тестовых прогонов
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum as PyEnum
import uuid

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, BigInteger,
    Index, UniqueConstraint, CheckConstraint, JSON
)
from sqlalchemy.orm import declarative_base, validates


# ============================================================================
# BASE CONFIGURATION
# ============================================================================

Base = declarative_base()

def generate_uuid():
    """Генерация UUID для записей"""
    return str(uuid.uuid4())

def utc_now():
    """Текущее время в UTC"""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class Direction(str, PyEnum):
    """Направление позиции"""
    LONG = "Long"
    SHORT = "Short"


class ImportSource(str, PyEnum):
    """Откуда появилась сделка"""
    MANUAL = "manual"
    SEED = "seed"
    EXCHANGE = "exchange"


class GenerationMode(str, PyEnum):
    """Режимы генератора тестовых сделок"""
    SMOKE = "SMOKE"
    EDGE = "EDGE"
    LOAD = "LOAD"


# ============================================================================
# СДЕЛКИ
# ============================================================================

class Trade(Base):
    """
    Сделка/позиция журнала

    close_price IS NULL тогда и только тогда, когда позиция открыта.
    """
    __tablename__ = 'trades'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner = Column(String(255), nullable=False, index=True)
    profile_id = Column(String(36), nullable=False, index=True)
    external_id = Column(String(255), nullable=True)

    # Instrument
    coin = Column(String(30), nullable=False)
    direction = Column(String(10), nullable=False)

    # Prices
    entry_price = Column(Float, nullable=False)
    original_entry_price = Column(Float, nullable=True)
    position_size = Column(Float, nullable=False)
    stop_price = Column(Float, nullable=True)
    original_stop_price = Column(Float, nullable=True)
    take_price = Column(Float, nullable=True)
    close_price = Column(Float, nullable=True)

    # Dates
    date_open = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    date_close = Column(DateTime(timezone=True), nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)

    # Risk / result
    risk_usd = Column(Float, nullable=True)
    risk_percent = Column(Float, nullable=True)
    original_risk_usd = Column(Float, nullable=True)
    rr_ratio = Column(Float, nullable=True)
    pnl_usd = Column(Float, nullable=False, default=0.0)
    pnl_percent_of_balance = Column(Float, nullable=True)
    r_multiple = Column(Float, nullable=True)
    realized_pnl_usd = Column(Float, nullable=False, default=0.0)

    # History (JSON только на границе хранения)
    adds_history = Column(JSON, nullable=False, default=list)
    partial_closes = Column(JSON, nullable=False, default=list)

    account_balance_at_entry = Column(Float, nullable=True)
    test_run_id = Column(String(64), nullable=True, index=True)
    import_source = Column(String(20), nullable=False, default=ImportSource.MANUAL.value)
    strategy_tag = Column(String(50), nullable=True)
    timeframe = Column(String(20), nullable=True)

    # Metadata
    created_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_date = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_trade_owner_profile', 'owner', 'profile_id'),
        Index('idx_trade_external', 'owner', 'profile_id', 'external_id'),
        CheckConstraint('entry_price > 0', name='check_trade_entry_positive'),
        CheckConstraint('position_size >= 0', name='check_trade_size_non_negative'),
    )

    @validates('direction')
    def validate_direction(self, key, direction):
        """Только Long/Short"""
        value = getattr(direction, 'value', direction)
        if value not in (Direction.LONG.value, Direction.SHORT.value):
            raise ValueError(f"Invalid direction: {direction}")
        return value

    @validates('import_source')
    def validate_import_source(self, key, source):
        value = getattr(source, 'value', source)
        if value not in {s.value for s in ImportSource}:
            raise ValueError(f"Invalid import_source: {source}")
        return value

    @property
    def is_open(self) -> bool:
        return self.close_price is None

    def to_dict(self) -> Dict[str, Any]:
        """Сериализация для HTTP ответов"""
        return {
            'id': self.id,
            'profile_id': self.profile_id,
            'external_id': self.external_id,
            'coin': self.coin,
            'direction': self.direction,
            'entry_price': self.entry_price,
            'original_entry_price': self.original_entry_price,
            'position_size': self.position_size,
            'stop_price': self.stop_price,
            'original_stop_price': self.original_stop_price,
            'take_price': self.take_price,
            'close_price': self.close_price,
            'date_open': _iso(self.date_open),
            'date_close': _iso(self.date_close),
            'actual_duration_minutes': self.actual_duration_minutes,
            'risk_usd': self.risk_usd,
            'risk_percent': self.risk_percent,
            'original_risk_usd': self.original_risk_usd,
            'rr_ratio': self.rr_ratio,
            'pnl_usd': self.pnl_usd,
            'pnl_percent_of_balance': self.pnl_percent_of_balance,
            'r_multiple': self.r_multiple,
            'realized_pnl_usd': self.realized_pnl_usd,
            'adds_history': self.adds_history or [],
            'partial_closes': self.partial_closes or [],
            'account_balance_at_entry': self.account_balance_at_entry,
            'test_run_id': self.test_run_id,
            'import_source': self.import_source,
            'strategy_tag': self.strategy_tag,
            'timeframe': self.timeframe,
        }

    def __repr__(self):
        return f"<Trade(id={self.id}, coin={self.coin}, direction={self.direction}, open={self.is_open})>"


# ============================================================================
# ПРОФИЛИ
# ============================================================================

class UserProfile(Base):
    """
    Торговый профиль владельца

    Для одного владельца в "здоровом" состоянии активен ровно один профиль.
    """
    __tablename__ = 'user_profiles'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, default=False, nullable=False)
    profile_name = Column(String(100), nullable=False)
    profile_image = Column(String(500), nullable=True)
    starting_balance = Column(Float, default=10000.0, nullable=False)
    open_commission = Column(Float, default=0.05, nullable=False)
    close_commission = Column(Float, default=0.05, nullable=False)

    created_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_date = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_profile_owner_active', 'owner', 'is_active'),
        CheckConstraint('starting_balance >= 0', name='check_profile_balance_non_negative'),
    )

    @validates('profile_name')
    def validate_profile_name(self, key, name):
        if name is None or not str(name).strip():
            raise ValueError("Profile name must not be empty")
        return str(name).strip()

    @property
    def last_touched(self) -> Optional[datetime]:
        """updated_date, а если его нет - created_date"""
        return self.updated_date or self.created_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'is_active': self.is_active,
            'profile_name': self.profile_name,
            'profile_image': self.profile_image,
            'starting_balance': self.starting_balance,
            'open_commission': self.open_commission,
            'close_commission': self.close_commission,
            'created_date': _iso(self.created_date),
            'updated_date': _iso(self.updated_date),
        }

    def __repr__(self):
        return f"<UserProfile(id={self.id}, name={self.profile_name}, active={self.is_active})>"


# ============================================================================
# НАСТРОЙКИ API БИРЖИ
# ============================================================================

class ApiSettings(Base):
    """
    Ключи биржи и курсоры синхронизации для профиля

    Курсоры только растут и двигаются лишь после успешного запроса.
    """
    __tablename__ = 'api_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String(255), nullable=False, index=True)
    profile_id = Column(String(36), nullable=False)
    exchange = Column(String(20), nullable=False, default="bybit")

    api_key = Column(String(255), nullable=False)
    api_secret = Column(String(255), nullable=False)
    environment = Column(String(20), nullable=False, default="mainnet")
    is_active = Column(Boolean, default=True, nullable=False)

    # Sync state
    bybit_sync_initialized = Column(Boolean, default=False, nullable=False)
    closed_baseline_ms = Column(BigInteger, nullable=True)
    exec_baseline_ms = Column(BigInteger, nullable=True)
    last_sync = Column(DateTime(timezone=True), nullable=True)

    created_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_date = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('owner', 'profile_id', 'exchange', name='unique_api_settings_profile_exchange'),
    )

    def __repr__(self):
        return f"<ApiSettings(owner={self.owner}, profile_id={self.profile_id}, exchange={self.exchange})>"


# ============================================================================
# ТЕСТОВЫЕ ПРОГОНЫ
# ============================================================================

class TestRun(Base):
    """
    Маркер идемпотентности: одна запись на вызов генератора
    """
    __tablename__ = 'test_runs'
    __test__ = False  # pytest не должен собирать эту модель

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(String(64), nullable=False, index=True)
    owner = Column(String(255), nullable=False, index=True)
    profile_id = Column(String(36), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    seed = Column(BigInteger, nullable=False)
    mode = Column(String(10), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self):
        return f"<TestRun(test_run_id={self.test_run_id}, count={self.count}, mode={self.mode})>"


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def get_table_names():
    """
    Получение списка всех таблиц
    """
    return [table.name for table in Base.metadata.tables.values()]
