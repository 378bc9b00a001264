"""
log_center.py

Logging helpers shared by the runner, worker and API.

  setup_logger(name)      -> console logger with the service format
  LogCenter.sink_for(id)  -> log(title, message) callable for one logic id
  LogCenter.get_logs(id)  -> timestamped entries, oldest first

Log sink entries are what users see in the running-logics monitor; they are
also mirrored to the python logger so server logs keep the full history.
"""
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from tradebuilder import config

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(message)s'

LogFunc = Callable[[str, str], None]


def setup_logger(name: str) -> logging.Logger:
    """Return a logger with a single console handler in the service format."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if config.DEBUG else logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger


logger = setup_logger('tradebuilder.logs')


class LogCenter:
    """Bounded, per-logic buffers of timestamped log sink entries."""

    def __init__(self, max_entries: int = None):
        self.max_entries = max_entries or config.LOG_BUFFER_SIZE
        self._buffers: Dict[str, Deque[dict]] = {}
        self._lock = threading.Lock()

    def log(self, logic_id: str, title: str, message: str):
        entry = {
            'ts': datetime.utcnow().isoformat() + 'Z',
            'title': title,
            'message': message,
        }
        with self._lock:
            buf = self._buffers.get(logic_id)
            if buf is None:
                buf = deque(maxlen=self.max_entries)
                self._buffers[logic_id] = buf
            buf.append(entry)
        level = logging.ERROR if title == 'Error' else logging.INFO
        logger.log(level, '[%s] %s: %s', logic_id, title, message)

    def sink_for(self, logic_id: str) -> LogFunc:
        return lambda title, message: self.log(logic_id, title, message)

    def get_logs(self, logic_id: str, limit: Optional[int] = None) -> List[dict]:
        with self._lock:
            entries = list(self._buffers.get(logic_id, ()))
        if limit:
            entries = entries[-limit:]
        return entries

    def clear(self, logic_id: str):
        with self._lock:
            self._buffers.pop(logic_id, None)
