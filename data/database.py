"""
Trade Journal Database Connection and Entity Store
Async подключение к SQLite и универсальное хранилище сущностей с проверкой доступа
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict, Any, Type, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import select, func, text, inspect
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import IntegrityError

from data.models import Base, get_table_names
from app.config.settings import Settings, get_settings
from utils.helpers import ForbiddenError, ValidationError, DuplicateIdError
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

# SQLite pragma настройки (только для файловой БД)
SQLITE_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=memory",
]

REQUIRED_TABLES = get_table_names()


# ============================================================================
# ACCESS CAPABILITY
# ============================================================================

@dataclass(frozen=True)
class Access:
    """
    Явная "способность" доступа к хранилищу

    owner-scoped доступ видит и меняет только записи своего владельца.
    privileged (service role) видит всё и нужен для админских операций.
    """
    owner: Optional[str] = None
    privileged: bool = False

    @classmethod
    def for_owner(cls, owner: str) -> "Access":
        if not owner:
            raise ValidationError("Owner is required for scoped access")
        return cls(owner=owner, privileged=False)

    @classmethod
    def service(cls) -> "Access":
        return cls(owner=None, privileged=True)

    def __repr__(self):
        return "Access(service)" if self.privileged else f"Access(owner={self.owner})"


# ============================================================================
# DATACLASSES ДЛЯ РЕЗУЛЬТАТОВ
# ============================================================================

@dataclass
class HealthCheckResult:
    """Результат проверки здоровья БД"""
    is_healthy: bool
    connection_ok: bool
    tables_exist: bool
    error_message: Optional[str] = None


# ============================================================================
# ОСНОВНОЙ КЛАСС БД
# ============================================================================

class Database:
    """
    Главный класс для работы с базой данных

    Все операции хранилища принимают Access. Для owner-scoped доступа фильтр
    по владельцу добавляется автоматически.
    """

    def __init__(self, settings: Optional[Settings] = None, database_url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.Database")

        self.database_url = database_url or self.settings.database_async_url
        self.async_engine = None
        self.async_session_factory = None

        # SQLite допускает одного писателя, а StaticPool делит одно соединение
        # между сессиями, поэтому сессии выполняются по очереди
        self._session_lock = asyncio.Lock()

        self._initialized = False
        self._connected = False

        self.stats = {
            'queries': 0,
            'writes': 0,
            'errors': 0,
        }

    @property
    def is_memory(self) -> bool:
        return ':memory:' in self.database_url or self.database_url.endswith('://')

    async def init(self) -> None:
        """
        Инициализация базы данных
        """
        if self._initialized:
            return

        try:
            self.logger.info("🗄️ Initializing database connection...")

            engine_kwargs: Dict[str, Any] = {
                'echo': self.settings.DATABASE_ECHO,
            }

            if self.database_url.startswith('sqlite'):
                engine_kwargs['connect_args'] = {"check_same_thread": False}
                if self.is_memory:
                    engine_kwargs['poolclass'] = StaticPool
                else:
                    db_path = Path(self.database_url.split(':///', 1)[-1])
                    db_path.parent.mkdir(parents=True, exist_ok=True)

            self.async_engine = create_async_engine(self.database_url, **engine_kwargs)

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            await self._create_tables()

            if self.database_url.startswith('sqlite') and not self.is_memory:
                await self._optimize_sqlite()

            self._initialized = True
            await self._check_connection()
            self._connected = True

            self.logger.info("✅ Database initialized successfully")

        except Exception as e:
            self.logger.error(f"❌ Failed to initialize database: {e}")
            raise

    async def close(self) -> None:
        """
        Закрытие подключения к БД
        """
        self.logger.info("🔒 Closing database connections...")

        if self.async_engine:
            await self.async_engine.dispose()

        self._connected = False
        self._initialized = False
        self.logger.info("✅ Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """
        Async context manager для получения сессии БД
        """
        if not self._initialized:
            await self.init()

        async with self._session_lock:
            async with self.async_session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    self.stats['errors'] += 1
                    self.logger.error(f"❌ Database session error: {e}")
                    raise

    # ============================================================================
    # ПРИВАТНЫЕ МЕТОДЫ ИНИЦИАЛИЗАЦИИ
    # ============================================================================

    async def _create_tables(self) -> None:
        """Создание всех таблиц"""
        try:
            async with self.async_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                table_names = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names()
                )

            self.logger.info(f"📊 Database tables: {', '.join(table_names)}")

        except Exception as e:
            self.logger.error(f"❌ Failed to create tables: {e}")
            raise

    async def _optimize_sqlite(self) -> None:
        """Оптимизация SQLite настроек"""
        try:
            async with self.async_engine.begin() as conn:
                for pragma in SQLITE_PRAGMA_SETTINGS:
                    await conn.execute(text(pragma))

            self.logger.debug("🔧 SQLite optimizations applied")

        except Exception as e:
            self.logger.warning(f"⚠️ Failed to apply SQLite optimizations: {e}")

    async def _check_connection(self) -> None:
        """Проверка подключения к БД"""
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()

            self.logger.debug("✅ Database connection verified")

        except Exception as e:
            self.logger.error(f"❌ Database connection check failed: {e}")
            raise

    # ============================================================================
    # ПРОВЕРКА ДОСТУПА
    # ============================================================================

    @staticmethod
    def _has_owner(model: Type[Base]) -> bool:
        return hasattr(model, 'owner')

    def _scoped_criteria(
        self,
        model: Type[Base],
        criteria: Optional[Dict[str, Any]],
        access: Access
    ) -> Dict[str, Any]:
        criteria = dict(criteria or {})

        if access.privileged or not self._has_owner(model):
            return criteria

        if not access.owner:
            raise ForbiddenError("Storage access without owner scope")

        requested_owner = criteria.get('owner')
        if requested_owner is not None and requested_owner != access.owner:
            raise ForbiddenError("Cannot access records of another owner")

        criteria['owner'] = access.owner
        return criteria

    def _check_row_access(self, model: Type[Base], row: Any, access: Access) -> bool:
        if row is None:
            return False
        if access.privileged or not self._has_owner(model):
            return True
        return row.owner == access.owner

    @staticmethod
    def _build_conditions(model: Type[Base], criteria: Dict[str, Any]) -> List[Any]:
        conditions = []
        for field, value in criteria.items():
            column = getattr(model, field, None)
            if column is None:
                raise ValidationError(f"Unknown field '{field}' for {model.__name__}")

            if value is None:
                conditions.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            else:
                conditions.append(column == getattr(value, 'value', value))
        return conditions

    @staticmethod
    def _order_clause(model: Type[Base], order_by: Optional[str]):
        """'-updated_date' -> updated_date DESC"""
        if not order_by:
            return None
        descending = order_by.startswith('-')
        column = getattr(model, order_by.lstrip('-+'), None)
        if column is None:
            raise ValidationError(f"Unknown order field '{order_by}' for {model.__name__}")
        return column.desc() if descending else column.asc()

    # ============================================================================
    # ENTITY STORE
    # ============================================================================

    async def filter(
        self,
        model: Type[Base],
        criteria: Optional[Dict[str, Any]],
        access: Access,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        skip: int = 0
    ) -> List[Any]:
        """
        Выборка записей по равенству полей

        None в criteria означает IS NULL, список - IN.
        """
        scoped = self._scoped_criteria(model, criteria, access)
        query = select(model).where(*self._build_conditions(model, scoped))

        order = self._order_clause(model, order_by)
        if order is not None:
            query = query.order_by(order)
        # Стабильная пагинация
        query = query.order_by(model.id.asc())

        if skip:
            query = query.offset(skip)
        if limit is not None:
            query = query.limit(limit)

        async with self.get_session() as session:
            result = await session.execute(query)
            rows = list(result.scalars().all())

        self.stats['queries'] += 1
        return rows

    async def get(self, model: Type[Base], entity_id: Any, access: Access) -> Optional[Any]:
        """Запись по id (None если не найдена или чужая)"""
        async with self.get_session() as session:
            row = await session.get(model, entity_id)

        self.stats['queries'] += 1
        if not self._check_row_access(model, row, access):
            return None
        return row

    async def count(
        self,
        model: Type[Base],
        criteria: Optional[Dict[str, Any]],
        access: Access
    ) -> int:
        scoped = self._scoped_criteria(model, criteria, access)
        query = select(func.count()).select_from(model).where(*self._build_conditions(model, scoped))

        async with self.get_session() as session:
            result = await session.scalar(query)

        self.stats['queries'] += 1
        return int(result or 0)

    def _prepare_row(self, model: Type[Base], data: Dict[str, Any], access: Access) -> Any:
        data = dict(data)
        if self._has_owner(model) and not access.privileged:
            if data.get('owner') not in (None, access.owner):
                raise ForbiddenError("Cannot create records for another owner")
            data['owner'] = access.owner
        return model(**data)

    async def create(self, model: Type[Base], data: Dict[str, Any], access: Access) -> Any:
        """Создание одной записи"""
        row = self._prepare_row(model, data, access)
        try:
            async with self.get_session() as session:
                session.add(row)
                await session.flush()
                await session.refresh(row)
        except IntegrityError as e:
            self.logger.error(f"❌ {model.__name__} integrity error: {e}")
            raise DuplicateIdError(f"{model.__name__} violates a unique constraint") from e

        self.stats['writes'] += 1
        return row

    async def bulk_create(
        self,
        model: Type[Base],
        rows: Iterable[Dict[str, Any]],
        access: Access
    ) -> List[Any]:
        """Создание пачки записей в одной транзакции"""
        instances = [self._prepare_row(model, data, access) for data in rows]
        if not instances:
            return []

        try:
            async with self.get_session() as session:
                session.add_all(instances)
                await session.flush()
        except IntegrityError as e:
            self.logger.error(f"❌ Bulk insert into {model.__tablename__} failed: {e}")
            raise DuplicateIdError(
                f"Duplicate id in bulk insert into {model.__tablename__}"
            ) from e

        self.stats['writes'] += len(instances)
        self.logger.debug(f"💾 Bulk inserted {len(instances)} rows into {model.__tablename__}")
        return instances

    async def update(
        self,
        model: Type[Base],
        entity_id: Any,
        changes: Dict[str, Any],
        access: Access
    ) -> Optional[Any]:
        """Частичное обновление записи (None если не найдена или чужая)"""
        if 'owner' in changes and not access.privileged:
            raise ForbiddenError("Owner of a record cannot be changed")

        async with self.get_session() as session:
            row = await session.get(model, entity_id)
            if not self._check_row_access(model, row, access):
                return None

            for field, value in changes.items():
                if not hasattr(model, field):
                    raise ValidationError(f"Unknown field '{field}' for {model.__name__}")
                setattr(row, field, value)

            await session.flush()
            await session.refresh(row)

        self.stats['writes'] += 1
        return row

    async def delete(self, model: Type[Base], entity_id: Any, access: Access) -> bool:
        """Удаление записи по id"""
        async with self.get_session() as session:
            row = await session.get(model, entity_id)
            if not self._check_row_access(model, row, access):
                return False
            await session.delete(row)

        self.stats['writes'] += 1
        return True

    async def distinct_values(self, model: Type[Base], field: str, access: Access) -> List[Any]:
        """Уникальные значения колонки (только service role)"""
        if not access.privileged:
            raise ForbiddenError("Distinct scan requires privileged access")

        column = getattr(model, field)
        async with self.get_session() as session:
            result = await session.execute(select(column).distinct())
            values = [value for value in result.scalars().all()]

        self.stats['queries'] += 1
        return values

    # ============================================================================
    # HEALTH CHECK
    # ============================================================================

    async def health_check(self) -> HealthCheckResult:
        """
        Проверка здоровья базы данных
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

            async with self.async_engine.connect() as conn:
                table_names = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names()
                )
            tables_exist = all(table in table_names for table in REQUIRED_TABLES)

            return HealthCheckResult(
                is_healthy=tables_exist,
                connection_ok=True,
                tables_exist=tables_exist
            )

        except Exception as e:
            self.logger.error(f"❌ Database health check failed: {e}")
            return HealthCheckResult(
                is_healthy=False,
                connection_ok=False,
                tables_exist=False,
                error_message=str(e)
            )


# ============================================================================
# SINGLETON И CONVENIENCE ФУНКЦИИ
# ============================================================================

_database_instance: Optional[Database] = None


def get_database() -> Database:
    """
    Получение глобального экземпляра базы данных
    """
    global _database_instance
    if _database_instance is None:
        _database_instance = Database()
    return _database_instance


async def init_database(settings: Optional[Settings] = None) -> Database:
    """
    Инициализация базы данных
    """
    global _database_instance
    if settings is not None:
        _database_instance = Database(settings)
    db = get_database()
    await db.init()
    return db
