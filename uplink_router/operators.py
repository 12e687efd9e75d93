"""
Last known operator name per mobile network id.

Modems only report an operator name once registered; the cache lets the UI
label a network it has seen before while the modem is still searching.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from .jsoncache import load_json_cache, write_json_cache

LOGGER = logging.getLogger("uplink_router.operators")

OPERATORS_CACHE_FILE = "gsm_operator_cache.json"


class OperatorNameCache:
    def __init__(self, cache_dir: Path):
        self.path = Path(cache_dir) / OPERATORS_CACHE_FILE
        self._lock = threading.Lock()
        loaded = load_json_cache(self.path, "GSM operators cache")
        self._names: Dict[str, str] = {
            str(k): v for k, v in loaded.items() if isinstance(v, str) and v
        }

    def name(self, network_id: str) -> Optional[str]:
        with self._lock:
            return self._names.get(network_id)

    def update(self, network_id: str, name: str) -> bool:
        """Remember ``name`` for ``network_id``; True if the cache file was rewritten."""
        if not network_id or not name:
            return False
        with self._lock:
            if self._names.get(network_id) == name:
                return False
            self._names[network_id] = name
            snapshot = dict(self._names)
        LOGGER.debug("operator %s is now %s", network_id, name)
        return write_json_cache(self.path, snapshot)
