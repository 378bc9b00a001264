"""
TradeBuilder - Upbit client tests
HTTP is replaced by a mocked requests session.
"""

import hashlib
from unittest.mock import MagicMock

import jwt
import pytest
import requests

from tradebuilder.integrations.upbit_fetch import UpbitAPIError, UpbitClient, UpbitMarketDataProvider
from tradebuilder.workflows.errors import MarketDataError


def response(payload, status=200):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = str(payload)
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return UpbitClient('access', 'secret', base_url='https://api.test/v1', timeout=3, session=session)


def last_request(session):
    args, kwargs = session.request.call_args
    return args[0], args[1], kwargs


# =============================================================================
# Quotation
# =============================================================================

class TestQuotation:

    def test_candles_oldest_first_in_seconds(self, client, session):
        session.request.return_value = response([
            {'timestamp': 1_700_003_600_000, 'trade_price': 101.0, 'candle_acc_trade_volume': 2.5},
            {'timestamp': 1_700_000_000_000, 'trade_price': 100.0, 'candle_acc_trade_volume': 1.5},
        ])
        candles = client.fetch_candles('KRW-BTC', 60, 2)
        assert candles == [
            {'timestamp': 1_700_000_000, 'price': 100.0, 'volume': 1.5},
            {'timestamp': 1_700_003_600, 'price': 101.0, 'volume': 2.5},
        ]
        method, url, kwargs = last_request(session)
        assert (method, url) == ('GET', 'https://api.test/v1/candles/minutes/60')
        assert kwargs['params'] == {'market': 'KRW-BTC', 'count': 2}
        assert 'Authorization' not in kwargs['headers']

    def test_invalid_candle_period(self, client, session):
        with pytest.raises(ValueError):
            client.fetch_candles('KRW-BTC', 7, 10)
        session.request.assert_not_called()

    def test_candle_count_is_capped(self, client, session):
        session.request.return_value = response([])
        client.fetch_candles('KRW-BTC', 1, 500)
        assert last_request(session)[2]['params']['count'] == 200

    def test_current_prices(self, client, session):
        session.request.return_value = response([
            {'market': 'KRW-BTC', 'trade_price': 90000000.0},
            {'market': 'KRW-ETH', 'trade_price': 4000000.0},
        ])
        assert client.get_current_prices(['KRW-BTC', 'KRW-ETH']) == {
            'KRW-BTC': 90000000.0, 'KRW-ETH': 4000000.0,
        }
        assert last_request(session)[2]['params'] == {'markets': 'KRW-BTC,KRW-ETH'}

    def test_current_price_missing_market(self, client, session):
        session.request.return_value = response([])
        with pytest.raises(UpbitAPIError):
            client.get_current_price('KRW-XYZ')

    def test_highest_price(self, client, session):
        session.request.return_value = response([
            {'high_price': 105.0}, {'high_price': 120.0}, {'high_price': 98.0},
        ])
        assert client.get_highest_price('KRW-BTC', 'week', 3) == 120.0
        assert last_request(session)[1] == 'https://api.test/v1/candles/weeks'

    def test_highest_price_unknown_unit(self, client):
        with pytest.raises(ValueError):
            client.get_highest_price('KRW-BTC', 'hour', 1)

    def test_http_error(self, client, session):
        session.request.return_value = response({'error': {'name': 'bad'}}, status=400)
        with pytest.raises(UpbitAPIError) as exc:
            client.get_current_price('KRW-BTC')
        assert exc.value.status_code == 400

    def test_transport_error(self, client, session):
        session.request.side_effect = requests.ConnectionError('refused')
        with pytest.raises(UpbitAPIError, match='refused'):
            client.get_current_price('KRW-BTC')


# =============================================================================
# Exchange
# =============================================================================

class TestOrders:

    def test_token_signs_query_hash(self, client):
        token = client.create_token({'market': 'KRW-BTC', 'side': 'bid'})
        claims = jwt.decode(token, 'secret', algorithms=['HS256'])
        assert claims['access_key'] == 'access'
        assert claims['nonce']
        assert claims['query_hash'] == hashlib.sha512(b'market=KRW-BTC&side=bid').hexdigest()
        assert claims['query_hash_alg'] == 'SHA512'

    def test_token_without_params(self, client):
        claims = jwt.decode(client.create_token(), 'secret', algorithms=['HS256'])
        assert 'query_hash' not in claims

    def test_market_buy_spends_krw(self, client, session):
        session.request.return_value = response({'uuid': 'o-1'})
        result = client.market_buy('KRW-BTC', 10000)
        assert result == {'success': True, 'data': {'uuid': 'o-1'}}
        method, url, kwargs = last_request(session)
        assert (method, url) == ('POST', 'https://api.test/v1/orders')
        assert kwargs['json'] == {'market': 'KRW-BTC', 'side': 'bid', 'ord_type': 'price', 'price': '10000'}
        assert kwargs['headers']['Authorization'].startswith('Bearer ')

    def test_market_sell_sells_volume(self, client, session):
        session.request.return_value = response({'uuid': 'o-2'})
        client.market_sell('KRW-BTC', 0.5)
        assert last_request(session)[2]['json'] == {
            'market': 'KRW-BTC', 'side': 'ask', 'ord_type': 'market', 'volume': '0.5',
        }

    def test_limit_buy_with_krw_converts_to_volume(self, client, session):
        session.request.return_value = response({'uuid': 'o-3'})
        client.limit_buy_with_krw('KRW-BTC', 50000, 10000)
        assert last_request(session)[2]['json'] == {
            'market': 'KRW-BTC', 'side': 'bid', 'ord_type': 'limit', 'price': '50000', 'volume': '0.2',
        }

    def test_limit_with_zero_price(self, client, session):
        assert client.limit_sell_with_krw('KRW-BTC', 0, 10000)['success'] is False
        session.request.assert_not_called()

    def test_rejected_order_returns_error(self, client, session):
        session.request.return_value = response({'error': {'message': 'insufficient funds'}}, status=400)
        result = client.market_buy('KRW-BTC', 10000)
        assert result['success'] is False
        assert result['error'] == {'error': {'message': 'insufficient funds'}}

    def test_order_without_credentials(self, session):
        client = UpbitClient('', '', base_url='https://api.test/v1', session=session)
        client.access_key = client.secret_key = None
        result = client.market_buy('KRW-BTC', 10000)
        assert result['success'] is False
        session.request.assert_not_called()

    def test_sell_all_uses_balance(self, client, session):
        session.request.side_effect = [
            response([{'currency': 'KRW', 'balance': '1000'}, {'currency': 'BTC', 'balance': '0.25'}]),
            response({'uuid': 'o-4'}),
        ]
        result = client.sell_all('KRW-BTC')
        assert result['success'] is True
        assert last_request(session)[2]['json']['volume'] == '0.25'

    def test_sell_all_without_balance(self, client, session):
        session.request.return_value = response([{'currency': 'KRW', 'balance': '1000'}])
        assert client.sell_all('KRW-BTC')['success'] is False


# =============================================================================
# Provider adapter
# =============================================================================

class TestProvider:

    def test_errors_become_market_data_errors(self, client, session):
        session.request.side_effect = requests.Timeout('slow')
        provider = UpbitMarketDataProvider(client)
        with pytest.raises(MarketDataError):
            provider.get_current_price('KRW-BTC')
        with pytest.raises(MarketDataError):
            provider.fetch_candles('KRW-BTC', 60, 10)
        with pytest.raises(MarketDataError):
            provider.get_highest_price('KRW-BTC', 'day', 1)

    def test_orders_pass_through(self, client, session):
        session.request.return_value = response({'uuid': 'o-5'})
        provider = UpbitMarketDataProvider(client)
        assert provider.market_sell('KRW-BTC', 1.0)['success'] is True
