"""
TradeBuilder - Runtime configuration.

Every value can be overridden through the environment so the same code runs
in local dev, tests and deployment without edits.
"""

import os

# Toggle verbose evaluator/runner output when TRADEBUILDER_DEBUG=1 in env
DEBUG = os.environ.get('TRADEBUILDER_DEBUG', '0') == '1'

# Data directory (logic files, index)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
DATA_DIR = os.environ.get('TRADEBUILDER_DATA_DIR', os.path.join(ROOT_DIR, 'data'))

# Exchange
UPBIT_API_URL = os.environ.get('UPBIT_API_URL', 'https://api.upbit.com/v1')
UPBIT_ACCESS_KEY = os.environ.get('UPBIT_ACCESS_KEY')
UPBIT_SECRET_KEY = os.environ.get('UPBIT_SECRET_KEY')
HTTP_TIMEOUT = float(os.environ.get('TRADEBUILDER_HTTP_TIMEOUT', '10'))

# Market data
HISTORY_SIZE = 200
PRICE_POLL_INTERVAL = float(os.environ.get('TRADEBUILDER_PRICE_POLL_INTERVAL', '1.0'))
CANDLE_INTERVAL_MINUTES = int(os.environ.get('TRADEBUILDER_CANDLE_INTERVAL', '60'))
CANDLE_REFRESH_SECONDS = float(os.environ.get('TRADEBUILDER_CANDLE_REFRESH', '60'))
CANDLE_REFRESH_COUNT = 5
DATA_READY_TIMEOUT = float(os.environ.get('TRADEBUILDER_DATA_READY_TIMEOUT', '15'))

# Runner
DEFAULT_RUN_INTERVAL = float(os.environ.get('TRADEBUILDER_RUN_INTERVAL', '5.0'))
MIN_RUN_INTERVAL = 1.0
WORKER_REQUEST_TIMEOUT = float(os.environ.get('TRADEBUILDER_WORKER_TIMEOUT', '30'))
WORKER_STOP_GRACE = 1.0

# API
LOG_BUFFER_SIZE = int(os.environ.get('TRADEBUILDER_LOG_BUFFER', '500'))
CORS_ORIGINS = [
    o.strip() for o in os.environ.get(
        'TRADEBUILDER_CORS_ORIGINS',
        'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',') if o.strip()
]
