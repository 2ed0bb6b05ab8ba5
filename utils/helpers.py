"""
Trade Journal Helper Functions
Набор универсальных вспомогательных функций и иерархия ошибок
"""

import hashlib
import hmac
import math
import time
from datetime import datetime, timezone
from typing import (
    Any, Dict, List, Optional, Union, TypeVar, Iterator
)

from utils.logger import setup_logger


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

T = TypeVar('T')
Number = Union[int, float]


logger = setup_logger(__name__)


# ============================================================================
# DATETIME AND TIME UTILITIES
# ============================================================================

def get_current_timestamp() -> int:
    """Получение текущего timestamp в миллисекундах"""
    return int(time.time() * 1000)


def get_current_utc_datetime() -> datetime:
    """Получение текущего UTC datetime"""
    return datetime.now(timezone.utc)


def timestamp_to_datetime(timestamp: Union[int, float]) -> datetime:
    """Конвертация timestamp в datetime (поддерживает секунды и миллисекунды)"""
    if timestamp > 1e10:  # Миллисекунды
        timestamp = timestamp / 1000
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite теряет tzinfo; считаем naive datetime как UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================================
# NUMERIC UTILITIES
# ============================================================================

def safe_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """Безопасная конвертация в float (пустые строки и мусор -> default)"""
    try:
        if value is None or value == "":
            return default
        result = float(value)
        if not math.isfinite(result):
            return default
        return result
    except (ValueError, TypeError):
        return default


def safe_int(value: Any, default: int = 0) -> int:
    """Безопасная конвертация в int"""
    try:
        if value is None or value == "":
            return default
        return int(float(value))  # Через float для обработки "123.0"
    except (ValueError, TypeError):
        return default


def finite_or_none(value: Optional[float]) -> Optional[float]:
    """NaN и Infinity никогда не уходят наружу - превращаем их в None"""
    if value is None:
        return None
    if not math.isfinite(value):
        return None
    return value


def positive_or_none(value: Any) -> Optional[float]:
    """Цена вида "0" или "" от биржи означает отсутствие значения"""
    result = safe_float(value, None)
    if result is None or result <= 0:
        return None
    return result


# ============================================================================
# DATA STRUCTURE UTILITIES
# ============================================================================

def safe_get(data: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Безопасное получение вложенного значения по пути 'a.b.c'"""
    current: Any = data
    for part in key.split('.'):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def chunk_list(data: List[T], chunk_size: int) -> Iterator[List[T]]:
    """Разбиение списка на чанки"""
    for i in range(0, len(data), chunk_size):
        yield data[i:i + chunk_size]


# ============================================================================
# ENCRYPTION AND HASHING UTILITIES
# ============================================================================

def generate_signature(
    secret: str,
    message: str,
    algorithm: str = 'sha256'
) -> str:
    """Генерация HMAC подписи"""
    secret_bytes = secret.encode('utf-8')
    message_bytes = message.encode('utf-8')

    if algorithm.lower() == 'sha256':
        signature = hmac.new(secret_bytes, message_bytes, hashlib.sha256)
    elif algorithm.lower() == 'sha512':
        signature = hmac.new(secret_bytes, message_bytes, hashlib.sha512)
    else:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    return signature.hexdigest()


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Маскировка ключа для ответов API и логов"""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return value[:visible] + "*" * (len(value) - visible)


# ============================================================================
# PERFORMANCE AND PROFILING
# ============================================================================

class Timer:
    """Контекстный менеджер для измерения времени выполнения"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        duration = self.end_time - self.start_time
        logger.debug(f"⏱️ {self.name} took {duration:.4f}s")

    @property
    def elapsed(self) -> float:
        """Время выполнения в секундах"""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return 0.0

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed * 1000)


# ============================================================================
# EXCEPTION HANDLING
# ============================================================================

class JournalError(Exception):
    """
    Базовое исключение журнала сделок

    Каждая ошибка несет стабильный error_code, чтобы клиент мог ветвиться
    без разбора текста сообщения.
    """
    error_code = "INTERNAL_ERROR"
    status_code = 500
    next_step = "Retry or contact support"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        next_step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if next_step:
            self.next_step = next_step
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'success': False,
            'error': self.message,
            'error_code': self.error_code,
            'next_step': self.next_step,
        }
        payload.update(self.details)
        return payload


class AuthRequiredError(JournalError):
    """Нет аутентифицированного владельца"""
    error_code = "AUTH_REQUIRED"
    status_code = 401
    next_step = "Please log in"


class ForbiddenError(JournalError):
    """Операция требует привилегированного доступа"""
    error_code = "FORBIDDEN"
    status_code = 403
    next_step = "This action requires admin access"


class ValidationError(JournalError):
    """Ошибка валидации данных"""
    error_code = "VALIDATION_ERROR"
    status_code = 400
    next_step = "Check the request fields and try again"


class NoActiveProfileError(JournalError):
    error_code = "NO_ACTIVE_PROFILE"
    status_code = 400
    next_step = "Activate a profile in Settings"


class ProfileLimitReachedError(JournalError):
    error_code = "PROFILE_LIMIT_REACHED"
    status_code = 400
    next_step = "Delete an existing profile before creating a new one"


class ProfileNotFoundError(JournalError):
    error_code = "PROFILE_NOT_FOUND"
    status_code = 404
    next_step = "Check profile ID and permissions"


class TradeNotFoundError(JournalError):
    error_code = "TRADE_NOT_FOUND"
    status_code = 404
    next_step = "Check trade ID and active profile"


class IntegrityViolationError(JournalError):
    """activeCount != 1 после попытки ремонта, либо расхождение счетчиков"""
    error_code = "INTEGRITY_VIOLATION"
    status_code = 500
    next_step = "Contact support - critical profile state issue"


class DuplicateIdError(JournalError):
    """Повтор id при массовой вставке - всегда фатально"""
    error_code = "DUPLICATE_ID"
    status_code = 500
    next_step = "Retry with a new test_run_id"


class RelayError(JournalError):
    """Базовая ошибка обращения к relay серверу биржи"""
    error_code = "BRIDGE_ERROR"
    status_code = 500
    next_step = "Check your API credentials and try again"


class RelayNotConfiguredError(RelayError):
    error_code = "BRIDGE_NOT_CONFIGURED"
    status_code = 500
    next_step = "Contact support - bridge server URL missing"


class RelayUnreachableError(RelayError):
    error_code = "BRIDGE_UNREACHABLE"
    status_code = 500
    next_step = "The bridge server may be down. Try again in a few minutes"


class RelayTimeoutError(RelayError):
    error_code = "TIMEOUT"
    status_code = 500
    next_step = "The bridge server took too long to respond. Try again"


class NetworkError(RelayError):
    """Сетевая ошибка"""
    error_code = "NETWORK_ERROR"
    status_code = 500
    next_step = "Check your connection and try again"


class ExchangeError(RelayError):
    """Ошибка биржи, сведенная к небольшой стабильной таксономии"""
    error_code = "EXCHANGE_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        ret_code: Optional[int] = None,
        error_code: Optional[str] = None,
        next_step: Optional[str] = None
    ):
        super().__init__(
            message,
            error_code=error_code,
            next_step=next_step,
            details={'exchange_ret_code': ret_code} if ret_code is not None else None
        )
        self.ret_code = ret_code
