"""
Upbit REST client.

Quotation endpoints (candles, ticker) are public. Exchange endpoints
(accounts, orders) are signed with an HS256 JWT built from the access/secret
key pair; requests that carry parameters also sign a SHA-512 hash of the
query string.
"""
import hashlib
import logging
import math
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlencode

import jwt
import requests

from tradebuilder import config
from tradebuilder.indicators.technical import highest
from tradebuilder.workflows.errors import MarketDataError
from tradebuilder.workflows.market_data import MarketDataProvider
from tradebuilder.workflows.order_dispatch import OrderSink

logger = logging.getLogger(__name__)

VALID_MINUTE_PERIODS = [1, 3, 5, 10, 15, 30, 60, 240]
MAX_CANDLE_COUNT = 200

# HighestPrice period unit -> candle endpoint
PERIOD_ENDPOINTS = {
    'day': 'candles/days',
    'week': 'candles/weeks',
    'month': 'candles/months',
    'year': 'candles/years',
}


class UpbitAPIError(Exception):
    """Non-2xx response or transport failure talking to Upbit."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _format_number(value: float) -> str:
    # Upbit rejects scientific notation in price/volume strings
    text = f"{float(value):.8f}".rstrip('0').rstrip('.')
    return text or '0'


class UpbitClient:
    """
    Thin wrapper over the Upbit v1 REST API.

    Credentials default to UPBIT_ACCESS_KEY / UPBIT_SECRET_KEY from the
    environment. Public endpoints work without them.
    """

    def __init__(self, access_key: str = None, secret_key: str = None, base_url: str = None,
                 timeout: float = None, session: requests.Session = None):
        self.access_key = access_key or config.UPBIT_ACCESS_KEY
        self.secret_key = secret_key or config.UPBIT_SECRET_KEY
        self.base_url = (base_url or config.UPBIT_API_URL).rstrip('/')
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key and self.secret_key)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def create_token(self, params: Dict[str, Any] = None) -> str:
        if not self.has_credentials:
            raise UpbitAPIError('Upbit credentials missing (UPBIT_ACCESS_KEY / UPBIT_SECRET_KEY)')
        payload = {
            'access_key': self.access_key,
            'nonce': str(uuid.uuid4()),
        }
        if params:
            query = unquote(urlencode(params, doseq=True)).encode('utf-8')
            payload['query_hash'] = hashlib.sha512(query).hexdigest()
            payload['query_hash_alg'] = 'SHA512'
        token = jwt.encode(payload, self.secret_key, algorithm='HS256')
        # PyJWT < 2 returned bytes
        return token.decode('utf-8') if isinstance(token, bytes) else token

    def _request(self, method: str, path: str, params: Dict[str, Any] = None,
                 body: Dict[str, Any] = None, signed: bool = False) -> Any:
        url = f"{self.base_url}/{path}"
        headers = {'Accept': 'application/json'}
        if signed:
            headers['Authorization'] = f"Bearer {self.create_token(body or params)}"
        try:
            resp = self.session.request(method, url, params=params, json=body,
                                        headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpbitAPIError(f"Upbit request failed: {e}") from e

        if not resp.ok:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            raise UpbitAPIError(f"Upbit API error: {resp.status_code} {payload}",
                                status_code=resp.status_code, payload=payload)
        return resp.json()

    # ------------------------------------------------------------------
    # Quotation
    # ------------------------------------------------------------------

    def fetch_candles(self, market: str, period: int = 1, count: int = MAX_CANDLE_COUNT) -> List[Dict[str, float]]:
        """
        Fetch minute candles.

        Args:
            market: market code, e.g. KRW-BTC
            period: candle length in minutes (1, 3, 5, 10, 15, 30, 60, 240)
            count: number of candles, capped at 200

        Returns:
            [{'timestamp': seconds, 'price': close, 'volume': volume}, ...] oldest first
        """
        if period not in VALID_MINUTE_PERIODS:
            raise ValueError(f"Unsupported candle period {period}; valid: {VALID_MINUTE_PERIODS}")
        count = max(1, min(int(count), MAX_CANDLE_COUNT))
        raw = self._request('GET', f'candles/minutes/{period}', params={'market': market, 'count': count})
        candles = [
            {
                'timestamp': int(c['timestamp']) // 1000,
                'price': float(c['trade_price']),
                'volume': float(c.get('candle_acc_trade_volume') or 0.0),
            }
            for c in raw
        ]
        # Upbit returns newest first
        candles.sort(key=lambda c: c['timestamp'])
        logger.debug('%s %dm candles: %d fetched', market, period, len(candles))
        return candles

    def get_current_prices(self, markets: List[str]) -> Dict[str, float]:
        if not markets:
            return {}
        raw = self._request('GET', 'ticker', params={'markets': ','.join(markets)})
        return {t['market']: float(t['trade_price']) for t in raw}

    def get_current_price(self, market: str) -> float:
        prices = self.get_current_prices([market])
        if market not in prices:
            raise UpbitAPIError(f"No ticker returned for {market}")
        return prices[market]

    def get_highest_price(self, market: str, unit: str = 'day', count: int = 1) -> float:
        """Highest traded price over the last `count` candles of `unit`."""
        if unit not in PERIOD_ENDPOINTS:
            raise ValueError(f"Unsupported period unit '{unit}'; valid: {sorted(PERIOD_ENDPOINTS)}")
        count = max(1, min(int(count), MAX_CANDLE_COUNT))
        raw = self._request('GET', PERIOD_ENDPOINTS[unit], params={'market': market, 'count': count})
        value = highest([float(c['high_price']) for c in raw if c.get('high_price') is not None])
        if math.isnan(value):
            raise UpbitAPIError(f"No {unit} candles returned for {market}")
        return value

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    def fetch_accounts(self) -> List[Dict[str, Any]]:
        return self._request('GET', 'accounts', signed=True)

    def place_order(self, market: str, side: str, order_type: str, price: float = None,
                    volume: float = None) -> Dict[str, Any]:
        """
        Place an order. Never raises; returns {'success': bool, 'data'|'error': ...}.

        market bid: spend `price` KRW; market ask: sell `volume`;
        limit: both `price` and `volume`.
        """
        body = {'market': market, 'side': side}
        try:
            if order_type == 'market' and side == 'bid':
                body['ord_type'] = 'price'
                body['price'] = _format_number(price)
            elif order_type == 'market' and side == 'ask':
                body['ord_type'] = 'market'
                body['volume'] = _format_number(volume)
            elif order_type == 'limit':
                body['ord_type'] = 'limit'
                body['price'] = _format_number(price)
                body['volume'] = _format_number(volume)
            else:
                raise ValueError(f"Unsupported order type: {order_type}")

            data = self._request('POST', 'orders', body=body, signed=True)
        except (UpbitAPIError, ValueError, TypeError) as e:
            logger.error('Order failed %s %s %s: %s', market, order_type, side, e)
            error = getattr(e, 'payload', None) or str(e)
            return {'success': False, 'error': error}

        logger.info('Order placed %s %s %s', market, order_type, side)
        return {'success': True, 'data': data}

    def market_buy(self, market: str, krw_amount: float) -> Dict[str, Any]:
        return self.place_order(market, 'bid', 'market', price=krw_amount)

    def market_sell(self, market: str, volume: float) -> Dict[str, Any]:
        return self.place_order(market, 'ask', 'market', volume=volume)

    def limit_buy(self, market: str, price: float, volume: float) -> Dict[str, Any]:
        return self.place_order(market, 'bid', 'limit', price=price, volume=volume)

    def limit_sell(self, market: str, price: float, volume: float) -> Dict[str, Any]:
        return self.place_order(market, 'ask', 'limit', price=price, volume=volume)

    def limit_buy_with_krw(self, market: str, price: float, krw_amount: float) -> Dict[str, Any]:
        if not price or price <= 0:
            return {'success': False, 'error': f"Invalid limit price: {price}"}
        return self.limit_buy(market, price, krw_amount / price)

    def limit_sell_with_krw(self, market: str, price: float, krw_amount: float) -> Dict[str, Any]:
        if not price or price <= 0:
            return {'success': False, 'error': f"Invalid limit price: {price}"}
        return self.limit_sell(market, price, krw_amount / price)

    def sell_all(self, market: str, order_type: str = 'market', limit_price: float = None) -> Dict[str, Any]:
        """Sell the whole balance of the market's base currency."""
        currency = market.split('-')[-1]
        try:
            accounts = self.fetch_accounts()
        except UpbitAPIError as e:
            return {'success': False, 'error': str(e)}

        account = next((a for a in accounts if a.get('currency') == currency), None)
        volume = float(account.get('balance') or 0.0) if account else 0.0
        if volume <= 0:
            return {'success': False, 'error': f"No {currency} balance to sell"}

        if order_type == 'market':
            return self.market_sell(market, volume)
        if order_type == 'limit':
            try:
                price = limit_price or self.get_current_price(market)
            except UpbitAPIError as e:
                return {'success': False, 'error': str(e)}
            return self.limit_sell(market, price, volume)
        return {'success': False, 'error': f"Unsupported order type: {order_type}"}


class UpbitMarketDataProvider(MarketDataProvider, OrderSink):
    """Adapts UpbitClient to the market data and order sink contracts."""

    def __init__(self, client: UpbitClient = None):
        self.client = client or UpbitClient()

    def fetch_candles(self, symbol: str, interval_minutes: int, count: int):
        try:
            return self.client.fetch_candles(symbol, interval_minutes, count)
        except (UpbitAPIError, ValueError) as e:
            raise MarketDataError(str(e)) from e

    def get_current_price(self, symbol: str) -> float:
        try:
            return self.client.get_current_price(symbol)
        except UpbitAPIError as e:
            raise MarketDataError(str(e)) from e

    def get_highest_price(self, symbol: str, period_unit: str, period_count: int) -> float:
        try:
            return self.client.get_highest_price(symbol, period_unit, period_count)
        except (UpbitAPIError, ValueError) as e:
            raise MarketDataError(str(e)) from e

    def market_buy(self, symbol: str, krw_amount: float):
        return self.client.market_buy(symbol, krw_amount)

    def market_sell(self, symbol: str, volume: float):
        return self.client.market_sell(symbol, volume)

    def limit_buy_with_krw(self, symbol: str, price: float, krw_amount: float):
        return self.client.limit_buy_with_krw(symbol, price, krw_amount)

    def limit_sell_with_krw(self, symbol: str, price: float, krw_amount: float):
        return self.client.limit_sell_with_krw(symbol, price, krw_amount)
