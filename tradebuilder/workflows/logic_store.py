"""
File-based persistence for saved logics.

Layout under <data_dir>/logics:
  index.json   ordered list of {id, name, stock, order}
  <id>.json    {id, name, stock, data}  (data = {buyGraph, sellGraph})
"""
import json
import os
import re
import threading
import uuid
from typing import Any, Dict, List, Optional

from tradebuilder import config
from tradebuilder.utils.log_center import setup_logger

logger = setup_logger('tradebuilder.store')

_LOGIC_ID_RE = re.compile(r'^[A-Za-z0-9_.-]+$')


class LogicNotFoundError(KeyError):
    pass


class LogicStore:
    def __init__(self, data_dir: str = None):
        self.root = os.path.join(data_dir or config.DATA_DIR, 'logics')
        self.index_file = os.path.join(self.root, 'index.json')
        self._lock = threading.RLock()

    def _ensure_data_dir(self):
        if not os.path.exists(self.root):
            os.makedirs(self.root, exist_ok=True)

    def _logic_path(self, logic_id: str) -> str:
        if not logic_id or not _LOGIC_ID_RE.match(logic_id):
            raise ValueError(f"Invalid logic id: {logic_id!r}")
        return os.path.join(self.root, f"{logic_id}.json")

    def _load_json(self, path: str, default):
        if not os.path.exists(path):
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error('Error loading %s: %s', path, e)
            return default

    def _save_json(self, path: str, payload):
        self._ensure_data_dir()
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)

    def _load_index(self) -> List[Dict[str, Any]]:
        index = self._load_json(self.index_file, [])
        return index if isinstance(index, list) else []

    # ------------------------------------------------------------------

    def list_logics(self) -> List[Dict[str, Any]]:
        with self._lock:
            return sorted(self._load_index(), key=lambda e: e.get('order', 0))

    def create_logic(self, name: str, stock: str = '', data: Dict[str, Any] = None) -> Dict[str, Any]:
        with self._lock:
            index = self._load_index()
            logic_id = f"logic-{uuid.uuid4()}"
            logic = {'id': logic_id, 'name': name or 'Untitled', 'stock': stock or '', 'data': data or {}}
            self._save_json(self._logic_path(logic_id), logic)
            index.append({'id': logic_id, 'name': logic['name'], 'stock': logic['stock'], 'order': len(index)})
            self._save_json(self.index_file, index)
            logger.info('Created logic %s (%s)', logic_id, logic['name'])
            return logic

    def load_logic(self, logic_id: str) -> Dict[str, Any]:
        with self._lock:
            logic = self._load_json(self._logic_path(logic_id), None)
        if logic is None:
            raise LogicNotFoundError(logic_id)
        return logic

    def save_logic(self, logic_id: str, name: str = None, stock: str = None,
                   data: Dict[str, Any] = None) -> Dict[str, Any]:
        """Update fields that are not None. The logic must exist."""
        with self._lock:
            logic = self.load_logic(logic_id)
            if name is not None:
                logic['name'] = name
            if stock is not None:
                logic['stock'] = stock
            if data is not None:
                logic['data'] = data
            self._save_json(self._logic_path(logic_id), logic)

            index = self._load_index()
            for entry in index:
                if entry.get('id') == logic_id:
                    entry['name'] = logic['name']
                    entry['stock'] = logic['stock']
                    break
            else:
                index.append({'id': logic_id, 'name': logic['name'], 'stock': logic['stock'],
                              'order': len(index)})
            self._save_json(self.index_file, index)
            return logic

    def delete_logic(self, logic_id: str) -> bool:
        with self._lock:
            path = self._logic_path(logic_id)
            index = self._load_index()
            remaining = [e for e in index if e.get('id') != logic_id]
            existed = os.path.exists(path) or len(remaining) != len(index)
            if os.path.exists(path):
                os.remove(path)
            for i, entry in enumerate(sorted(remaining, key=lambda e: e.get('order', 0))):
                entry['order'] = i
            self._save_json(self.index_file, remaining)
            return existed

    def reorder_logics(self, ordered_ids: List[str]) -> List[Dict[str, Any]]:
        """Apply a new order. Ids not listed keep their relative order at the end."""
        with self._lock:
            index = self._load_index()
            by_id = {e.get('id'): e for e in index}
            ordered = [by_id.pop(i) for i in ordered_ids if i in by_id]
            ordered += sorted(by_id.values(), key=lambda e: e.get('order', 0))
            for i, entry in enumerate(ordered):
                entry['order'] = i
            self._save_json(self.index_file, ordered)
            return ordered


_default_store: Optional[LogicStore] = None


def get_store() -> LogicStore:
    global _default_store
    if _default_store is None:
        _default_store = LogicStore()
    return _default_store
