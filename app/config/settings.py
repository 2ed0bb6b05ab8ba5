"""
Trade Journal Configuration Settings
Конфигурация сервиса журнала сделок и синхронизации с биржей
"""

import logging
from typing import Optional, Dict, Any
from functools import lru_cache
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Типы окружений"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Уровни логирования"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Главный класс конфигурации с валидацией
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        validate_assignment=True,
        extra='ignore',
    )

    # ============================================================================
    # ОСНОВНЫЕ НАСТРОЙКИ ПРИЛОЖЕНИЯ
    # ============================================================================

    APP_NAME: str = Field(default="Trade Journal", description="Название приложения")
    VERSION: str = Field(default="1.0.0", description="Версия приложения")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Окружение")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    # Server настройки
    HOST: str = Field(default="0.0.0.0", description="IP адрес сервера")
    PORT: int = Field(default=8000, description="Порт сервера")

    # ============================================================================
    # БАЗА ДАННЫХ НАСТРОЙКИ
    # ============================================================================

    DATABASE_URL: str = Field(default="sqlite:///trade_journal.db", description="URL базы данных")
    DATABASE_ECHO: bool = Field(default=False, description="Логировать SQL запросы")

    # ============================================================================
    # BYBIT RELAY НАСТРОЙКИ
    # ============================================================================

    BYBIT_PROXY_URL: Optional[str] = Field(default=None, description="URL relay сервера для Bybit")
    BYBIT_PROXY_SECRET: Optional[str] = Field(default=None, description="Секрет relay сервера")
    BYBIT_RECV_WINDOW: int = Field(default=5000, description="Receive window (ms)")
    BYBIT_TIMEOUT: int = Field(default=15, description="Request timeout (seconds)")
    BYBIT_CATEGORY: str = Field(default="linear", description="Категория контрактов")
    BYBIT_ACCOUNT_TYPE: str = Field(default="UNIFIED", description="Тип аккаунта для баланса")

    # Синхронизация
    SYNC_MAX_CLOSED_PAGES: int = Field(default=20, description="Лимит страниц closed-pnl за один sync")
    SYNC_PAGE_LIMIT: int = Field(default=100, description="Размер страницы запросов к бирже")

    # ============================================================================
    # ПРОФИЛИ И ТЕСТОВЫЕ ДАННЫЕ
    # ============================================================================

    MAX_PROFILES_PER_OWNER: int = Field(default=5, description="Максимум профилей на владельца")
    DEFAULT_STARTING_BALANCE: float = Field(default=10000.0, description="Стартовый баланс профиля")

    GENERATOR_BATCH_SIZE: int = Field(default=500, description="Размер пачки при генерации")
    DELETE_BATCH_SIZE: int = Field(default=100, description="Размер пачки при удалении")
    DELETE_BATCH_DELAY_MS: int = Field(default=100, description="Пауза между пачками удаления (ms)")
    COUNT_PAGE_SIZE: int = Field(default=2000, description="Размер страницы при подсчете")
    MAX_SCAN_RECORDS: int = Field(default=100000, description="Жесткий лимит сканирования записей")

    # ============================================================================
    # ЛОГИРОВАНИЕ
    # ============================================================================

    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Уровень логирования")
    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Формат логов"
    )
    LOG_DATE_FORMAT: str = Field(default="%Y-%m-%d %H:%M:%S", description="Формат даты в логах")

    # File logging
    LOG_TO_FILE: bool = Field(default=False, description="Логировать в файл")
    LOG_FILE_PATH: str = Field(default="logs/trade_journal.log", description="Путь к файлу логов")
    LOG_FILE_MAX_SIZE: int = Field(default=10485760, description="Макс размер файла логов (10MB)")
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, description="Количество архивных файлов логов")

    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('ENVIRONMENT', mode='before')
    @classmethod
    def validate_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @field_validator('BYBIT_PROXY_URL')
    @classmethod
    def validate_proxy_url(cls, v):
        if v is None or v.strip() == "":
            return None
        v = v.strip().rstrip('/')
        if not v.startswith(('http://', 'https://')):
            raise ValueError('BYBIT_PROXY_URL must start with http:// or https://')
        return v

    @field_validator(
        'BYBIT_TIMEOUT', 'SYNC_MAX_CLOSED_PAGES', 'SYNC_PAGE_LIMIT',
        'MAX_PROFILES_PER_OWNER', 'GENERATOR_BATCH_SIZE', 'DELETE_BATCH_SIZE',
        'COUNT_PAGE_SIZE', 'MAX_SCAN_RECORDS'
    )
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f'{info.field_name} must be positive')
        return v

    @field_validator('DELETE_BATCH_DELAY_MS')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError('DELETE_BATCH_DELAY_MS must be >= 0')
        return v

    # ============================================================================
    # COMPUTED PROPERTIES
    # ============================================================================

    @property
    def is_production(self) -> bool:
        """Проверка продакшн окружения"""
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Проверка dev окружения"""
        return self.ENVIRONMENT == Environment.DEVELOPMENT

    @property
    def database_async_url(self) -> str:
        """Async URL для базы данных"""
        if self.DATABASE_URL.startswith('sqlite:///'):
            return self.DATABASE_URL.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return self.DATABASE_URL

    # ============================================================================
    # METHODS
    # ============================================================================

    def get_relay_config(self) -> Dict[str, Any]:
        """Конфигурация для клиента relay сервера"""
        return {
            'proxy_url': self.BYBIT_PROXY_URL,
            'proxy_secret': self.BYBIT_PROXY_SECRET,
            'recv_window': self.BYBIT_RECV_WINDOW,
            'timeout': self.BYBIT_TIMEOUT,
            'category': self.BYBIT_CATEGORY,
            'account_type': self.BYBIT_ACCOUNT_TYPE,
        }

    def log_startup_config(self, logger: logging.Logger):
        """Безопасное логирование конфигурации при старте"""
        safe_config = {
            'APP_NAME': self.APP_NAME,
            'VERSION': self.VERSION,
            'ENVIRONMENT': self.ENVIRONMENT.value,
            'HOST': self.HOST,
            'PORT': self.PORT,
            'BYBIT_PROXY_URL': self.BYBIT_PROXY_URL or 'not configured',
            'LOG_LEVEL': self.LOG_LEVEL.value,
            'DATABASE_URL': self.DATABASE_URL.split('://', 1)[0] + '://***',
        }

        logger.info("🚀 Trade Journal Configuration:")
        for key, value in safe_config.items():
            logger.info(f"  {key}: {value}")


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Создание единственного экземпляра настроек с кешированием
    """
    return Settings()
