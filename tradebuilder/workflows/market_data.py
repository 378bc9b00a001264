"""
market_data.py

Best-effort, synchronous view of one symbol's market data, refreshed in the
background.

  MarketDataManager.start()                 -> launch refresh thread
  MarketDataManager.get_latest_price()      -> live price, last close or NaN
  MarketDataManager.get_price_data_array()  -> close history, oldest first
  MarketDataManager.warm_up_highest_price() -> async highest-price lookup
  MarketDataManager.get_highest_price()     -> memoized value or DataNotReadyError
  MarketDataManager.dispose()               -> stop thread and warm-up pool

A single background thread does the initial candle fetch, then polls the live
price every `poll_interval` seconds and refreshes candles every
`candle_refresh_seconds`. Because one thread does all the fetching, a slow
request delays the next tick instead of stacking concurrent requests. Fetch
errors are logged and swallowed; the next tick retries.
"""
import math
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Tuple

from tradebuilder import config
from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.errors import DataNotReadyError

logger = setup_logger('tradebuilder.market')


class MarketDataProvider:
    """
    Collaborator contract for market data.

    Implementations may block on the network. Every method raises
    MarketDataError on failure.
    """

    def fetch_candles(self, symbol: str, interval_minutes: int, count: int) -> List[dict]:
        """Return [{timestamp, price, volume}, ...] oldest first."""
        raise NotImplementedError()

    def get_current_price(self, symbol: str) -> float:
        raise NotImplementedError()

    def get_highest_price(self, symbol: str, period_unit: str, period_count: int) -> float:
        raise NotImplementedError()


class MarketDataManager:
    """Rolling candle history and cached indicator inputs for one symbol."""

    def __init__(
        self,
        stock: str,
        provider: Optional[MarketDataProvider],
        history_size: int = None,
        poll_interval: float = None,
        candle_interval: int = None,
        candle_refresh_seconds: float = None,
    ):
        self.stock = stock
        self.provider = provider
        self.history_size = history_size or config.HISTORY_SIZE
        self.poll_interval = poll_interval or config.PRICE_POLL_INTERVAL
        self.candle_interval = candle_interval or config.CANDLE_INTERVAL_MINUTES
        self.candle_refresh_seconds = candle_refresh_seconds or config.CANDLE_REFRESH_SECONDS

        self._time_data: deque = deque(maxlen=self.history_size)
        self._price_data: deque = deque(maxlen=self.history_size)
        self._volume_data: deque = deque(maxlen=self.history_size)
        self._live_price: Optional[float] = None
        self._highest_price_cache: Dict[Tuple[str, int], float] = {}
        self._warm_ups: Dict[Tuple[str, int], Future] = {}

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        with self._lock:
            if self._disposed:
                raise RuntimeError('MarketDataManager already disposed')
            if self._thread and self._thread.is_alive():
                return
            if self.provider is None:
                self._ready.set()
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name=f'MarketData-{self.stock}', daemon=True
            )
            self._thread.start()
        logger.debug('MarketDataManager started for %s', self.stock)

    def dispose(self):
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            t = self._thread
            executor = self._executor
            self._executor = None
        self._stop.set()
        if t and t is not threading.current_thread():
            t.join(timeout=2)
        if executor:
            executor.shutdown(wait=False, cancel_futures=True)
        logger.debug('MarketDataManager disposed for %s', self.stock)

    def wait_until_ready(self, timeout: float = None) -> bool:
        return self._ready.wait(timeout)

    def is_data_ready(self) -> bool:
        return self._ready.is_set()

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def _run_loop(self):
        self._initialize_data()
        last_candle_refresh = time.monotonic()
        while not self._stop.wait(self.poll_interval):
            self._poll_price()
            if time.monotonic() - last_candle_refresh >= self.candle_refresh_seconds:
                self._refresh_candles(config.CANDLE_REFRESH_COUNT)
                last_candle_refresh = time.monotonic()

    def _initialize_data(self):
        try:
            candles = self.provider.fetch_candles(self.stock, self.candle_interval, self.history_size)
            self.ingest_candles(candles)
            logger.info('Loaded %d candles for %s', len(candles or []), self.stock)
        except Exception as e:
            logger.error('Initial candle fetch failed for %s: %s', self.stock, e)
        finally:
            # Ready even after a failure: readers fall back to NaN
            self._ready.set()

    def _poll_price(self):
        try:
            price = self.provider.get_current_price(self.stock)
            if price is not None:
                with self._lock:
                    self._live_price = float(price)
        except Exception as e:
            logger.warning('Price poll failed for %s: %s', self.stock, e)

    def _refresh_candles(self, count: int):
        try:
            candles = self.provider.fetch_candles(self.stock, self.candle_interval, count)
            self.ingest_candles(candles)
        except Exception as e:
            logger.warning('Candle refresh failed for %s: %s', self.stock, e)

    def ingest_candles(self, candles: List[dict]):
        """
        Merge candles into the history by timestamp.

        Same timestamp as the newest candle replaces it (the bar is still
        forming), newer timestamps append, older ones are ignored.
        """
        if not candles:
            return
        ordered = sorted(candles, key=lambda c: c.get('timestamp') or 0)
        with self._lock:
            for candle in ordered:
                ts = candle.get('timestamp')
                price = candle.get('price')
                if ts is None or price is None:
                    continue
                volume = candle.get('volume') or 0.0
                if self._time_data and ts < self._time_data[-1]:
                    continue
                if self._time_data and ts == self._time_data[-1]:
                    self._time_data.pop()
                    self._price_data.pop()
                    self._volume_data.pop()
                self._time_data.append(ts)
                self._price_data.append(float(price))
                self._volume_data.append(float(volume))

    # ------------------------------------------------------------------
    # Highest price warm-up
    # ------------------------------------------------------------------

    def warm_up_highest_price(self, period_unit: str, period_length: int) -> Future:
        """Start (or reuse) the async lookup of the highest price over a period."""
        key = (period_unit, int(period_length))
        with self._lock:
            existing = self._warm_ups.get(key)
            if existing is not None:
                return existing
            if self.provider is None:
                future: Future = Future()
                future.set_result(None)
                self._warm_ups[key] = future
                return future
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f'WarmUp-{self.stock}')
            future = self._executor.submit(self._load_highest_price, key)
            self._warm_ups[key] = future
        return future

    def _load_highest_price(self, key: Tuple[str, int]):
        period_unit, period_length = key
        try:
            price = self.provider.get_highest_price(self.stock, period_unit, period_length)
        except Exception as e:
            logger.error('HighestPrice warm-up failed for %s %s-%s: %s',
                         self.stock, period_unit, period_length, e)
            with self._lock:
                # allow a later warm_up call to retry
                self._warm_ups.pop(key, None)
            raise
        with self._lock:
            self._highest_price_cache[key] = float(price)
        return price

    def wait_for_warm_ups(self, timeout: float = None) -> bool:
        """Block until every started warm-up finished. False on timeout."""
        with self._lock:
            futures = list(self._warm_ups.values())
        deadline = None if timeout is None else time.monotonic() + timeout
        for future in futures:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                future.result(timeout=remaining)
            except FutureTimeoutError:
                return False
            except Exception:
                # failure already logged by the loader; readiness stays false
                continue
        return True

    def is_highest_price_ready(self, period_unit: str, period_length: int) -> bool:
        with self._lock:
            return (period_unit, int(period_length)) in self._highest_price_cache

    def get_highest_price(self, period_unit: str, period_length: int) -> float:
        key = (period_unit, int(period_length))
        with self._lock:
            if key not in self._highest_price_cache:
                raise DataNotReadyError(
                    f"HighestPrice data not ready yet for {period_unit}-{period_length}"
                )
            return self._highest_price_cache[key]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_latest_price(self) -> float:
        """Live price if polled, else last close, else NaN. Never raises."""
        with self._lock:
            if self._live_price is not None:
                return self._live_price
            if self._price_data:
                return self._price_data[-1]
        return math.nan

    def set_live_price(self, price: Optional[float]):
        with self._lock:
            self._live_price = None if price is None else float(price)

    def get_price_data_array(self, count: Optional[int] = None) -> List[float]:
        with self._lock:
            if count is None or count >= len(self._price_data):
                return list(self._price_data)
            if count <= 0:
                return []
            return [self._price_data[i] for i in range(-count, 0)]

    def get_volume_data_array(self) -> List[float]:
        with self._lock:
            return list(self._volume_data)

    def get_time_data_array(self) -> List[int]:
        with self._lock:
            return list(self._time_data)
