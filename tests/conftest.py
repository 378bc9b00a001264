"""
Shared fixtures for the logic engine tests.
"""

import pytest

from builders import make_candles
from fakes import LogRecorder, RecordingSink
from tradebuilder.workflows.market_data import MarketDataManager


@pytest.fixture
def logs():
    return LogRecorder()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def candles():
    # 30 hourly closes rising from 100 to 129
    return make_candles(range(100, 130))


@pytest.fixture
def offline_manager(candles):
    """Manager without a provider, pre-filled with candles. No threads."""
    manager = MarketDataManager('KRW-BTC', provider=None)
    manager.ingest_candles(candles)
    yield manager
    manager.dispose()
