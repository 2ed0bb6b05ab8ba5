"""
Trade Journal Core Module
Ядро журнала - метрики, учет позиций, профили, синхронизация с биржей
"""

# ============================================================================
# METRICS / POSITIONS
# ============================================================================
from . import metrics
from .position_ledger import PositionLedger, AddEntry, PartialClose

# ============================================================================
# PROFILES
# ============================================================================
from .profile_integrity import (
    ProfileIntegrityManager,
    ProfileState,
    HealReport,
    RepairReport,
)

# ============================================================================
# EXCHANGE
# ============================================================================
from .bybit_client import ExchangeRelayClient, PageResult, classify_exchange_error
from .exchange_sync import ExchangeSyncService, SyncReport, SyncMode

# ============================================================================
# JOURNAL / TEST DATA
# ============================================================================
from .trade_journal import TradeJournal, TradeCounts, scan_trade_counts
from .test_data import (
    TestDataGenerator,
    SeededRandom,
    GenerationResult,
    DeletionResult,
    build_test_trades,
)

__all__ = [
    'metrics',
    'PositionLedger', 'AddEntry', 'PartialClose',
    'ProfileIntegrityManager', 'ProfileState', 'HealReport', 'RepairReport',
    'ExchangeRelayClient', 'PageResult', 'classify_exchange_error',
    'ExchangeSyncService', 'SyncReport', 'SyncMode',
    'TradeJournal', 'TradeCounts', 'scan_trade_counts',
    'TestDataGenerator', 'SeededRandom', 'GenerationResult', 'DeletionResult',
    'build_test_trades',
    'get_core_status',
]


def get_core_status(components: dict) -> dict:
    """
    Статус компонентов ядра по их счетчикам

    Args:
        components: Словарь с компонентами

    Returns:
        Словарь со статистикой каждого компонента
    """
    status = {}

    for name, component in components.items():
        if hasattr(component, 'get_stats'):
            status[name] = component.get_stats()
        elif hasattr(component, 'stats'):
            status[name] = dict(component.stats)
        else:
            status[name] = {'available': True}

    return status
