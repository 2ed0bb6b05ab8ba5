"""
Trade Journal Bybit Relay Client
HTTP клиент для подписанных запросов к Bybit v5 API через relay сервер
"""

import asyncio
import json
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from urllib.parse import urlencode

import aiohttp

from utils.logger import setup_logger
from utils.helpers import (
    get_current_timestamp, safe_float, safe_int, safe_get,
    generate_signature, Timer,
    RelayError, RelayNotConfiguredError, RelayUnreachableError,
    RelayTimeoutError, NetworkError, ExchangeError
)
from app.config.settings import Settings, get_settings


# ============================================================================
# CONSTANTS
# ============================================================================

# Bybit v5 endpoints
WALLET_BALANCE_PATH = "/v5/account/wallet-balance"
SERVER_TIME_PATH = "/v5/market/time"
POSITIONS_PATH = "/v5/position/list"
EXECUTIONS_PATH = "/v5/execution/list"
CLOSED_PNL_PATH = "/v5/position/closed-pnl"

# retCode -> (error_code, next_step)
EXCHANGE_ERROR_CODES = {
    10003: ("INVALID_API_KEY", "Check that the API key is correct and not expired"),
    10004: ("INVALID_SIGNATURE", "Check that the API secret is correct"),
    10005: ("INSUFFICIENT_PERMISSIONS", "Enable read permissions for the API key"),
    10010: ("IP_NOT_ALLOWED", "Add the bridge server IP to the API key whitelist"),
}


def classify_exchange_error(ret_code: int, ret_msg: str) -> ExchangeError:
    """retCode Bybit -> ExchangeError с небольшой стабильной таксономией"""
    error_code, next_step = EXCHANGE_ERROR_CODES.get(
        ret_code, ("EXCHANGE_ERROR", "Check your API credentials and try again")
    )
    return ExchangeError(
        f"Bybit error {ret_code}: {ret_msg}",
        ret_code=ret_code,
        error_code=error_code,
        next_step=next_step,
    )


def normalize_proxy_url(url: Optional[str]) -> Optional[str]:
    """Убираем хвостовые слэши и /proxy, если его дописали в настройку"""
    if not url:
        return None
    url = url.strip().rstrip('/')
    if url.endswith('/proxy'):
        url = url[:-len('/proxy')]
    return url or None


@dataclass
class PageResult:
    """Страница ответа с курсором пагинации"""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


# ============================================================================
# RELAY CLIENT
# ============================================================================

class ExchangeRelayClient:
    """
    Клиент Bybit v5 API через relay сервер

    Запрос подписывается локально (HMAC-SHA256 над
    timestamp + apiKey + recvWindow + queryString), а relay сервер
    только пересылает его на биржу. Relay аутентифицируется X-Proxy-Secret.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        settings: Optional[Settings] = None,
        proxy_url: Optional[str] = None,
        proxy_secret: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.ExchangeRelayClient")

        self.api_key = api_key
        self.api_secret = api_secret

        relay_config = self.settings.get_relay_config()
        self.proxy_url = normalize_proxy_url(proxy_url or relay_config['proxy_url'])
        self.proxy_secret = proxy_secret or relay_config['proxy_secret']

        self.recv_window = relay_config['recv_window']
        self.timeout = relay_config['timeout']
        self.category = relay_config['category']
        self.account_type = relay_config['account_type']

        self._session: Optional[aiohttp.ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'timeouts': 0,
        }

    async def __aenter__(self):
        await self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_session(self):
        """Создание HTTP сессии"""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    'Content-Type': 'application/json',
                    'User-Agent': 'TradeJournal/1.0.0'
                }
            )

    async def close(self):
        """Закрытие сессии"""
        if self._session:
            await self._session.close()
            self._session = None
            self.logger.debug("🔌 Relay client session closed")

    # ========================================================================
    # ПОДПИСЬ И ТРАНСПОРТ
    # ========================================================================

    @staticmethod
    def build_query_string(params: Optional[Dict[str, Any]]) -> str:
        """Стабильная query string: параметры без None, отсортированы по ключу"""
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        return urlencode(sorted(clean.items()))

    def sign(self, timestamp: int, query_string: str) -> str:
        """HMAC-SHA256 над timestamp + apiKey + recvWindow + queryString"""
        payload = f"{timestamp}{self.api_key}{self.recv_window}{query_string}"
        return generate_signature(self.api_secret, payload)

    def _signed_headers(self, query_string: str) -> Dict[str, str]:
        timestamp = get_current_timestamp()
        return {
            'X-BAPI-API-KEY': self.api_key,
            'X-BAPI-SIGN': self.sign(timestamp, query_string),
            'X-BAPI-TIMESTAMP': str(timestamp),
            'X-BAPI-RECV-WINDOW': str(self.recv_window),
        }

    async def _request(
        self,
        request_type: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        auth_required: bool = True
    ) -> Dict[str, Any]:
        """
        Отправка запроса через relay

        Returns:
            Ответ Bybit ({retCode, retMsg, result, time})
        """
        if not self.proxy_url:
            raise RelayNotConfiguredError("Bridge server not configured")

        if not self._session:
            await self._create_session()

        query_string = self.build_query_string(params)
        body = {
            'type': request_type,
            'method': 'GET',
            'path': path,
            'query': query_string,
            'headers': self._signed_headers(query_string) if auth_required else {},
        }
        headers = {'X-Proxy-Secret': self.proxy_secret or ''}

        self.stats['total_requests'] += 1

        try:
            with Timer(f"Relay {request_type}"):
                async with self._session.post(
                    f"{self.proxy_url}/proxy", json=body, headers=headers
                ) as response:
                    response_data = await self._handle_response(response)

        except RelayError:
            self.stats['failed_requests'] += 1
            raise
        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            self.stats['timeouts'] += 1
            self.logger.error(f"⏰ Relay request timed out: {request_type} after {self.timeout}s")
            raise RelayTimeoutError("Connection timeout") from e
        except aiohttp.ClientConnectorError as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ Cannot reach bridge server: {e}")
            raise RelayUnreachableError("Cannot reach bridge server") from e
        except aiohttp.ClientError as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ Relay network error: {request_type} - {e}")
            raise NetworkError(f"Network error: {e}") from e

        self._validate_response(response_data)
        self.stats['successful_requests'] += 1
        return response_data

    async def _handle_response(self, response: aiohttp.ClientResponse) -> Dict[str, Any]:
        """Обработка HTTP ответа relay сервера"""
        response_text = await response.text()

        try:
            response_data = json.loads(response_text) if response_text else {}
        except json.JSONDecodeError:
            response_data = {}

        if response.status >= 400:
            message = (
                response_data.get('detail')
                or response_data.get('message')
                or response_data.get('error')
                or f"Bridge server error ({response.status})"
            )
            self.logger.error(f"❌ Bridge error {response.status}: {message}")
            raise RelayError(
                str(message),
                error_code=response_data.get('errorCode') or "BRIDGE_ERROR",
                details={'http_status': response.status}
            )

        if not isinstance(response_data, dict):
            raise RelayError("Bridge server returned a malformed response")

        return response_data

    def _validate_response(self, response_data: Dict[str, Any]):
        """Проверка retCode Bybit"""
        ret_code = safe_int(response_data.get('retCode', 0))
        if ret_code != 0:
            error = classify_exchange_error(ret_code, response_data.get('retMsg', 'Unknown error'))
            self.logger.warning(f"⚠️ {error.message} ({error.error_code})")
            raise error

    # ========================================================================
    # ACCOUNT ENDPOINTS
    # ========================================================================

    async def get_wallet_balance(self, account_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Получение баланса кошелька

        Returns:
            result Bybit ({list: [{coin: [...]}]})
        """
        response = await self._request(
            'get_wallet_balance',
            WALLET_BALANCE_PATH,
            {'accountType': account_type or self.account_type}
        )
        return response.get('result') or {}

    async def get_usdt_balance(self) -> Optional[float]:
        """USDT walletBalance (или equity) первого аккаунта"""
        result = await self.get_wallet_balance()
        coins = safe_get(result, 'list.0.coin') or []
        for coin in coins:
            if coin.get('coin') == 'USDT':
                return safe_float(coin.get('walletBalance') or coin.get('equity'), 0.0)
        return None

    async def get_server_time(self) -> int:
        """Серверное время биржи в миллисекундах"""
        response = await self._request('get_server_time', SERVER_TIME_PATH, auth_required=False)

        server_ms = safe_int(response.get('time'))
        if server_ms > 0:
            return server_ms

        time_second = safe_int(safe_get(response, 'result.timeSecond'))
        if time_second > 0:
            return time_second * 1000

        raise RelayError("Server time missing in exchange response")

    # ========================================================================
    # POSITION / HISTORY ENDPOINTS
    # ========================================================================

    async def get_positions(self, cursor: Optional[str] = None, limit: int = 200) -> PageResult:
        """Текущие позиции (страница)"""
        response = await self._request('get_positions', POSITIONS_PATH, {
            'category': self.category,
            'settleCoin': 'USDT',
            'limit': limit,
            'cursor': cursor or None,
        })
        return self._page(response)

    async def get_executions(
        self,
        start_time: Optional[int] = None,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> PageResult:
        """Исполнения начиная с start_time (страница)"""
        response = await self._request('get_executions', EXECUTIONS_PATH, {
            'category': self.category,
            'startTime': start_time,
            'limit': limit,
            'cursor': cursor or None,
        })
        return self._page(response)

    async def get_closed_pnl(
        self,
        start_time: Optional[int] = None,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> PageResult:
        """Закрытый PnL начиная с start_time (страница, nextPageCursor)"""
        response = await self._request('get_closed_pnl', CLOSED_PNL_PATH, {
            'category': self.category,
            'startTime': start_time,
            'limit': limit,
            'cursor': cursor or None,
        })
        return self._page(response)

    @staticmethod
    def _page(response: Dict[str, Any]) -> PageResult:
        result = response.get('result') or {}
        return PageResult(
            items=list(result.get('list') or []),
            next_cursor=result.get('nextPageCursor') or None,
        )

    # ========================================================================
    # UTILITY METHODS
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Получение статистики клиента"""
        total = self.stats['total_requests']
        success_rate = (self.stats['successful_requests'] / total) * 100 if total else 0
        return {
            **self.stats,
            'success_rate_pct': round(success_rate, 2),
        }
