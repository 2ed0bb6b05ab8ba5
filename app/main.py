"""
Trade Journal Main Application
HTTP API журнала сделок: профили, сделки, синхронизация с Bybit, тестовые данные
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from app.config.settings import Settings, get_settings
from core import (
    ProfileIntegrityManager, ExchangeSyncService, TradeJournal,
    TestDataGenerator, get_core_status
)
from data.database import Database, Access, init_database
from utils.helpers import JournalError, AuthRequiredError, ForbiddenError, ValidationError
from utils.logger import setup_logger, configure_logging, configure_external_loggers


logger = setup_logger(__name__)


# ============================================================================
# PYDANTIC МОДЕЛИ ДЛЯ API
# ============================================================================

class CreateProfileRequest(BaseModel):
    profile_name: str
    make_active: bool = False
    starting_balance: Optional[float] = None


class SwitchProfileRequest(BaseModel):
    profile_id: str


class OpenTradeRequest(BaseModel):
    coin: str
    direction: str
    entry_price: float
    position_size: float
    stop_price: Optional[float] = None
    take_price: Optional[float] = None
    date_open: Optional[datetime] = None
    strategy_tag: Optional[str] = None
    timeframe: Optional[str] = None


class AddToPositionRequest(BaseModel):
    price: float
    size_usd: float
    timestamp: Optional[datetime] = None


class PartialCloseRequest(BaseModel):
    percent: float
    price: float
    timestamp: Optional[datetime] = None


class CloseTradeRequest(BaseModel):
    close_price: float
    date_close: Optional[datetime] = None


class ConnectExchangeRequest(BaseModel):
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    environment: str = "mainnet"


class GenerateTradesRequest(BaseModel):
    count: int = 20
    mode: str = "SMOKE"
    seed: Optional[int] = None
    include_open: bool = Field(default=True, alias="includeOpen")
    test_run_id: Optional[str] = Field(default=None, alias="request_id")

    model_config = {'populate_by_name': True}


class DeleteTradesRequest(BaseModel):
    profile_id: Optional[str] = None
    test_run_id: Optional[str] = None
    scope: str = "all"


class WipeTestTradesRequest(BaseModel):
    test_run_id: Optional[str] = None


# ============================================================================
# ЗАВИСИМОСТИ
# ============================================================================

async def get_owner(x_user_email: Optional[str] = Header(default=None)) -> str:
    """Владелец запроса из X-User-Email"""
    if not x_user_email or not x_user_email.strip():
        raise AuthRequiredError("Unauthorized")
    return x_user_email.strip()


async def get_admin_access(
    owner: str = Depends(get_owner),
    x_user_role: Optional[str] = Header(default=None)
) -> Access:
    """Service role только для администраторов"""
    if (x_user_role or '').lower() != 'admin':
        raise ForbiddenError("Admin access required", next_step="Contact an administrator")
    return Access.service()


def get_services(request: Request) -> Dict[str, Any]:
    return request.app.state.services


def _ok(**payload) -> Dict[str, Any]:
    return {'success': True, **payload}


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

def build_services(
    database: Database,
    settings: Settings,
    client_factory=None
) -> Dict[str, Any]:
    """Создание сервисов поверх общей базы данных"""
    profiles = ProfileIntegrityManager(database, settings)
    return {
        'database': database,
        'profiles': profiles,
        'journal': TradeJournal(database, profiles, settings),
        'exchange': ExchangeSyncService(database, profiles, settings, client_factory=client_factory),
        'test_data': TestDataGenerator(database, profiles, settings),
    }


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    client_factory=None
) -> FastAPI:
    """
    Сборка FastAPI приложения

    Если передана уже инициализированная база, сервисы создаются сразу,
    иначе база открывается в lifespan.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        configure_logging(settings)
        configure_external_loggers()
        settings.log_startup_config(logger)
        logger.info(f"🚀 Starting {settings.APP_NAME}...")

        owned_database = None
        if app.state.services is None:
            owned_database = await init_database(settings)
            app.state.services = build_services(owned_database, settings, client_factory)

        logger.info(f"✅ {settings.APP_NAME} started successfully")
        try:
            yield
        finally:
            # SHUTDOWN
            logger.info(f"🔄 Shutting down {settings.APP_NAME}...")
            if owned_database is not None:
                await owned_database.close()
                app.state.services = None
            logger.info(f"✅ {settings.APP_NAME} shut down gracefully")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Trade journal with profile integrity and Bybit sync",
        version=settings.VERSION,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = build_services(database, settings, client_factory) if database is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(JournalError)
    async def journal_error_handler(request: Request, exc: JournalError):
        if exc.status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.error_code} {exc.message}")
        else:
            logger.warning(f"⚠️ {request.method} {request.url.path}: {exc.error_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [
            {'field': '.'.join(str(part) for part in item.get('loc', ())), 'message': item.get('msg')}
            for item in exc.errors()
        ]
        error = ValidationError("Invalid request body", details={'fields': fields})
        logger.warning(f"⚠️ {request.method} {request.url.path}: {error.error_code} {fields}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    register_routes(app)
    return app


# ============================================================================
# API ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    # ------------------------------------------------------------------
    # CORE
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health_check(services: Dict[str, Any] = Depends(get_services)):
        """Проверка состояния базы и счетчики сервисов"""
        db_health = await services['database'].health_check()
        components = {name: svc for name, svc in services.items() if name != 'database'}
        return {
            'success': db_health.is_healthy,
            'status': 'healthy' if db_health.is_healthy else 'unhealthy',
            'version': app.version,
            'database': asdict(db_health),
            'services': get_core_status(components),
        }

    # ------------------------------------------------------------------
    # PROFILES
    # ------------------------------------------------------------------

    @app.get("/api/profiles")
    async def list_profiles(owner: str = Depends(get_owner), services=Depends(get_services)):
        profiles = await services['profiles'].list_profiles(owner)
        return _ok(profiles=[profile.to_dict() for profile in profiles])

    @app.post("/api/profiles")
    async def create_profile(
        body: CreateProfileRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        profile = await services['profiles'].create_profile(
            owner, body.profile_name,
            make_active=body.make_active,
            starting_balance=body.starting_balance
        )
        return _ok(profile=profile.to_dict())

    @app.post("/api/profiles/switch")
    async def switch_profile(
        body: SwitchProfileRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        profile = await services['profiles'].switch(owner, body.profile_id)
        return _ok(active_profile=profile.to_dict())

    @app.post("/api/profiles/heal")
    async def heal_profiles(owner: str = Depends(get_owner), services=Depends(get_services)):
        report = await services['profiles'].heal(owner)
        return _ok(**report.to_dict())

    @app.post("/api/profiles/initialize")
    async def initialize_profile(owner: str = Depends(get_owner), services=Depends(get_services)):
        profile = await services['profiles'].ensure_initial_profile(owner)
        return _ok(created=profile is not None, profile=profile.to_dict() if profile else None)

    @app.post("/api/admin/profiles/repair")
    async def repair_profiles(access: Access = Depends(get_admin_access), services=Depends(get_services)):
        report = await services['profiles'].repair_all(access)
        return _ok(**report.to_dict())

    # ------------------------------------------------------------------
    # TRADES
    # ------------------------------------------------------------------

    @app.post("/api/trades")
    async def open_trade(
        body: OpenTradeRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        trade = await services['journal'].open_trade(owner, body.model_dump())
        return _ok(trade=trade.to_dict())

    @app.post("/api/trades/{trade_id}/add")
    async def add_to_position(
        trade_id: str,
        body: AddToPositionRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        trade = await services['journal'].add_to_position(
            owner, trade_id, body.price, body.size_usd, body.timestamp
        )
        return _ok(trade=trade.to_dict())

    @app.post("/api/trades/{trade_id}/partial-close")
    async def partial_close(
        trade_id: str,
        body: PartialCloseRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        trade = await services['journal'].partial_close(
            owner, trade_id, body.percent, body.price, body.timestamp
        )
        return _ok(trade=trade.to_dict())

    @app.post("/api/trades/{trade_id}/close")
    async def close_trade(
        trade_id: str,
        body: CloseTradeRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        trade = await services['journal'].close_trade(owner, trade_id, body.close_price, body.date_close)
        return _ok(trade=trade.to_dict())

    @app.post("/api/trades/recalculate")
    async def recalculate_metrics(owner: str = Depends(get_owner), services=Depends(get_services)):
        return _ok(**await services['journal'].recalculate_metrics(owner))

    @app.post("/api/trades/clear-open-pnl")
    async def clear_open_pnl(owner: str = Depends(get_owner), services=Depends(get_services)):
        return _ok(**await services['journal'].clear_open_realized_pnl(owner))

    @app.get("/api/trades/count")
    async def count_trades(
        profile_id: Optional[str] = None,
        test_run_id: Optional[str] = None,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        counts = await services['journal'].count_trades(owner, profile_id, test_run_id)
        return _ok(**counts.to_dict())

    # ------------------------------------------------------------------
    # EXCHANGE
    # ------------------------------------------------------------------

    @app.post("/api/exchange/connect")
    async def connect_exchange(
        body: ConnectExchangeRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        result = await services['exchange'].connect(owner, body.api_key, body.api_secret, body.environment)
        return _ok(**result)

    @app.post("/api/exchange/sync")
    async def sync_exchange(owner: str = Depends(get_owner), services=Depends(get_services)):
        report = await services['exchange'].sync(owner)
        return {**report.to_dict(), 'success': report.success}

    @app.get("/api/exchange/balance")
    async def exchange_balance(owner: str = Depends(get_owner), services=Depends(get_services)):
        balance = await services['exchange'].get_balance(owner)
        return _ok(balance=balance)

    # ------------------------------------------------------------------
    # TEST DATA
    # ------------------------------------------------------------------

    @app.post("/api/dev/test-trades/generate")
    async def generate_test_trades(
        body: GenerateTradesRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        result = await services['test_data'].generate(
            owner,
            count=body.count,
            mode=body.mode,
            seed=body.seed,
            include_open=body.include_open,
            test_run_id=body.test_run_id,
        )
        return result.to_dict()

    @app.post("/api/dev/test-trades/delete")
    async def delete_trades(
        body: DeleteTradesRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        result = await services['test_data'].delete_trades(
            owner, profile_id=body.profile_id, test_run_id=body.test_run_id, scope=body.scope
        )
        return result.to_dict()

    @app.post("/api/dev/test-trades/wipe")
    async def wipe_test_trades(
        body: WipeTestTradesRequest,
        owner: str = Depends(get_owner),
        services=Depends(get_services)
    ):
        result = await services['test_data'].wipe_test_trades(owner, test_run_id=body.test_run_id)
        return result.to_dict()


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    settings = get_settings()
    if settings.is_development:
        uvicorn.run(
            "app.main:app",
            host=settings.HOST,
            port=settings.PORT,
            reload=True,
            log_level="debug"
        )
    else:
        uvicorn.run(
            "app.main:app",
            host=settings.HOST,
            port=settings.PORT,
            workers=1,
            log_level="info",
            access_log=True
        )
