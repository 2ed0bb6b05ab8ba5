"""
Trade Journal Logging System
Централизованная система логирования с поддержкой файлов и консоли
"""

import sys
import logging
import logging.handlers
import re
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, Any
from functools import lru_cache
import json
import traceback


# ============================================================================
# КОНСТАНТЫ И КОНФИГУРАЦИЯ
# ============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_EMOJIS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🔥'
}

LOG_COLORS = {
    'DEBUG': '\033[36m',     # Cyan
    'INFO': '\033[32m',      # Green
    'WARNING': '\033[33m',   # Yellow
    'ERROR': '\033[31m',     # Red
    'CRITICAL': '\033[35m',  # Magenta
    'RESET': '\033[0m'
}

# Стандартные атрибуты LogRecord, которые не попадают в JSON как extra
_RECORD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'exc_info', 'exc_text', 'stack_info',
    'taskName',
}


# ============================================================================
# КАСТОМНЫЕ ФОРМАТТЕРЫ
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """

    def format(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        color = LOG_COLORS.get(level_name, LOG_COLORS['RESET'])
        emoji = LOG_EMOJIS.get(level_name, '')
        reset = LOG_COLORS['RESET']

        # Копия record, чтобы не портить уровень для других handlers
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{color}{emoji} {level_name}{reset}"

        return super().format(record_copy)


class JSONFormatter(logging.Formatter):
    """
    JSON форматтер для структурированного логирования
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


# ============================================================================
# ФИЛЬТРЫ
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """
    Фильтр для скрытия API ключей, секретов и подписей
    """

    SENSITIVE_PATTERNS = [
        'api_key', 'api_secret', 'apikey', 'apisecret', 'secret', 'token',
        'x-bapi-sign', 'x-proxy-secret', 'password'
    ]

    MASK_PATTERNS = [
        (r'(api_?key["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
        (r'(api_?secret["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
        (r'(x-bapi-sign["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
        (r'(x-proxy-secret["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
        (r'(token["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
        (r'(password["\']?\s*[:=]\s*["\']?)([^"\'>\s,}]+)', r'\1***MASKED***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        lowered = message.lower()

        if any(pattern in lowered for pattern in self.SENSITIVE_PATTERNS):
            record.msg = self.mask(message)
            record.args = None

        return True

    @classmethod
    def mask(cls, message: str) -> str:
        """Маскировка чувствительных данных"""
        for pattern, replacement in cls.MASK_PATTERNS:
            message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
        return message


# ============================================================================
# ОСНОВНОЙ КЛАСС ЛОГИРОВАНИЯ
# ============================================================================

class JournalLogger:
    """
    Главный класс для управления логированием журнала сделок
    """

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: Dict[str, logging.Handler] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def setup(
        self,
        log_level: str = "INFO",
        log_format: Optional[str] = None,
        log_date_format: Optional[str] = None,
        log_to_file: bool = False,
        log_file_path: str = "logs/trade_journal.log",
        log_file_max_size: int = 10 * 1024 * 1024,  # 10MB
        log_file_backup_count: int = 5,
        colored_console: bool = True,
        json_format: bool = False,
        force: bool = False,
    ) -> None:
        """
        Настройка системы логирования

        Args:
            log_level: Уровень логирования
            log_format: Формат логов
            log_date_format: Формат даты
            log_to_file: Логировать в файл
            log_file_path: Путь к файлу логов
            log_file_max_size: Максимальный размер файла
            log_file_backup_count: Количество архивных файлов
            colored_console: Цветной вывод в консоль
            json_format: JSON формат для файлов
            force: Переинициализировать, даже если уже настроено
        """
        if self._initialized and not force:
            return

        if force:
            self._close_handlers()

        log_format = log_format or DEFAULT_FORMAT
        log_date_format = log_date_format or DEFAULT_DATE_FORMAT

        if colored_console:
            console_formatter = ColoredFormatter(log_format, log_date_format)
        else:
            console_formatter = logging.Formatter(log_format, log_date_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(SensitiveDataFilter())
        self._handlers['console'] = console_handler

        if log_to_file:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

            if json_format:
                file_formatter = JSONFormatter()
            else:
                file_formatter = logging.Formatter(log_format, log_date_format)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=log_file_max_size,
                backupCount=log_file_backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(file_formatter)
            file_handler.addFilter(SensitiveDataFilter())
            self._handlers['file'] = file_handler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, str(log_level).upper()))

        for handler in list(root_logger.handlers):
            if isinstance(handler, (logging.StreamHandler, logging.handlers.RotatingFileHandler)) \
                    and handler not in self._handlers.values():
                root_logger.removeHandler(handler)

        for handler in self._handlers.values():
            root_logger.addHandler(handler)

        self._initialized = True

        logger = self.get_logger("system.logger")
        logger.info(f"🚀 Trade Journal logger initialized (level: {log_level}, file: {log_to_file})")

    def get_logger(self, name: str) -> logging.Logger:
        """
        Получение логгера по имени с кешированием
        """
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]

    def log_sync_event(
        self,
        event_type: str,
        owner: str,
        profile_id: Optional[str] = None,
        message: str = "",
        **extra_data
    ) -> None:
        """
        Структурированное логирование событий синхронизации с биржей
        """
        logger = self.get_logger("journal.sync.events")
        logger.info(message or event_type, extra={
            'event_type': event_type,
            'owner': owner,
            'profile_id': profile_id,
            'log_type': 'sync_event',
            **extra_data
        })

    def _close_handlers(self) -> None:
        root_logger = logging.getLogger()
        for handler in self._handlers.values():
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def shutdown(self) -> None:
        """
        Корректное завершение работы логгеров
        """
        self._close_handlers()
        self._initialized = False


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_logger_instance() -> JournalLogger:
    """
    Получение единственного экземпляра логгера
    """
    return JournalLogger()


journal_logger = get_logger_instance()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def setup_logger(
    name: str,
    log_level: str = "INFO",
    **kwargs
) -> logging.Logger:
    """
    Быстрая настройка логгера
    """
    if not journal_logger.initialized:
        journal_logger.setup(log_level=log_level, **kwargs)

    return journal_logger.get_logger(name)


def configure_logging(settings: Any) -> None:
    """
    Настройка логирования по объекту Settings (вызывается при старте приложения)
    """
    journal_logger.setup(
        log_level=str(getattr(settings.LOG_LEVEL, 'value', settings.LOG_LEVEL)),
        log_format=settings.LOG_FORMAT,
        log_date_format=settings.LOG_DATE_FORMAT,
        log_to_file=settings.LOG_TO_FILE,
        log_file_path=settings.LOG_FILE_PATH,
        log_file_max_size=settings.LOG_FILE_MAX_SIZE,
        log_file_backup_count=settings.LOG_FILE_BACKUP_COUNT,
        colored_console=not settings.is_production,
        json_format=settings.is_production,
        force=True,
    )
    configure_external_loggers("WARNING" if settings.is_production else "INFO")


def log_sync_event(
    event_type: str,
    owner: str,
    message: str,
    profile_id: Optional[str] = None,
    **extra
) -> None:
    """
    Быстрое логирование события синхронизации
    """
    journal_logger.log_sync_event(
        event_type=event_type,
        owner=owner,
        profile_id=profile_id,
        message=message,
        **extra
    )


# ============================================================================
# DECORATORS
# ============================================================================

def log_execution_time(logger_name: Optional[str] = None):
    """
    Декоратор для логирования времени выполнения корутин
    """
    def decorator(func):
        import time
        from functools import wraps

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = journal_logger.get_logger(logger_name or func.__module__)
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
                execution_time = time.perf_counter() - start_time
                logger.debug(f"⏱️ {func.__name__} executed in {execution_time:.3f}s")
                return result
            except Exception as e:
                execution_time = time.perf_counter() - start_time
                logger.error(f"❌ {func.__name__} failed after {execution_time:.3f}s: {e}")
                raise

        return async_wrapper

    return decorator


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def configure_external_loggers(level: str = "WARNING"):
    """
    Настройка уровня логирования для внешних библиотек
    """
    external_loggers = [
        'aiohttp.access',
        'aiohttp.client',
        'sqlalchemy.engine',
        'aiosqlite',
        'uvicorn.access',
    ]

    for logger_name in external_loggers:
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
