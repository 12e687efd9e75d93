"""
Relay servers and accounts pushed by the remote management service.

The validated list is cached in ``relays_cache.json`` so the appliance can
stream to a relay while the remote service is unreachable.
"""

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .jsoncache import load_json_cache, write_json_cache
from .netutil import validate_port

LOGGER = logging.getLogger("uplink_router.relays")

RELAYS_CACHE_FILE = "relays_cache.json"


def validate_relays(msg: Any) -> Optional[Dict[str, Any]]:
    """Keep the well-formed servers and accounts; None if nothing usable remains."""
    if not isinstance(msg, dict):
        return None
    out: Dict[str, Any] = {"servers": {}, "accounts": {}}

    servers = msg.get("servers")
    for sid, srv in (servers.items() if isinstance(servers, dict) else ()):
        if not isinstance(srv, dict):
            continue
        if srv.get("type") != "srtla" or not isinstance(srv.get("name"), str) or not isinstance(srv.get("addr"), str):
            continue
        if srv.get("default") not in (None, False, True):
            continue
        port = validate_port(srv.get("port"))
        if port is None:
            continue
        entry = {"type": "srtla", "name": srv["name"], "addr": srv["addr"], "port": port}
        if srv.get("bcrp_port"):
            entry["bcrp_port"] = str(srv["bcrp_port"])
        if srv.get("default") is True:
            entry["default"] = True
        out["servers"][sid] = entry

    accounts = msg.get("accounts")
    for aid, acc in (accounts.items() if isinstance(accounts, dict) else ()):
        if not isinstance(acc, dict):
            continue
        if not isinstance(acc.get("name"), str) or not isinstance(acc.get("ingest_key"), str):
            continue
        entry = {"name": acc["name"], "ingest_key": acc["ingest_key"]}
        if acc.get("disabled"):
            entry["disabled"] = True
        out["accounts"][aid] = entry

    if "bcrp_key" in msg and msg["bcrp_key"] is not None:
        if not isinstance(msg["bcrp_key"], str):
            return None
        out["bcrp_key"] = msg["bcrp_key"]

    if not out["servers"]:
        return None
    return out


def rtt_badge(rtt: Optional[int]) -> str:
    if rtt is None:
        return ""
    if rtt <= 80:
        return "🟢"
    if rtt <= 150:
        return "🟡"
    return "🔴"


class RelayRegistry:
    def __init__(self, cache_dir: Path):
        self.path = Path(cache_dir) / RELAYS_CACHE_FILE
        self._lock = threading.Lock()
        loaded = load_json_cache(self.path, "relays cache")
        self._relays: Optional[Dict[str, Any]] = validate_relays(loaded) if loaded else None
        self._listeners: List[Callable[[], None]] = []

    def get(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._relays)

    def server(self, sid: Optional[str]) -> Optional[Dict[str, Any]]:
        with self._lock:
            if not self._relays or not sid:
                return None
            srv = self._relays["servers"].get(sid)
            return dict(srv) if srv else None

    def account(self, aid: Optional[str]) -> Optional[Dict[str, Any]]:
        with self._lock:
            if not self._relays or not aid:
                return None
            acc = self._relays["accounts"].get(aid)
            return dict(acc) if acc else None

    def on_change(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def update(self, msg: Any) -> bool:
        """Apply a relay list from the remote service; True if the cache changed."""
        relays = validate_relays(msg)
        if relays is None:
            LOGGER.warning("Ignoring an invalid relay list")
            return False
        with self._lock:
            if relays == self._relays:
                return False
            self._relays = relays
        LOGGER.debug("updated the relays cache: %s", relays)
        write_json_cache(self.path, relays)
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                LOGGER.exception("Relay change listener failed")
        return True

    def build_view(self, rtts: Optional[Dict[str, int]] = None) -> Dict[str, Dict[str, Any]]:
        rtts = rtts or {}
        view: Dict[str, Dict[str, Any]] = {"servers": {}, "accounts": {}}
        relays = self.get()
        if not relays:
            return view
        for sid, srv in relays["servers"].items():
            rtt = rtts.get(sid)
            badge = rtt_badge(rtt)
            name = f"{badge} {srv['name']}" if badge else srv["name"]
            if rtt is not None:
                name += f" ({rtt} ms)"
            entry: Dict[str, Any] = {"name": name}
            if srv.get("default"):
                entry["default"] = True
            view["servers"][sid] = entry
        for aid, acc in relays["accounts"].items():
            entry = {"name": acc["name"] + (" [disabled]" if acc.get("disabled") else "")}
            if acc.get("disabled"):
                entry["disabled"] = True
            view["accounts"][aid] = entry
        return view

    def convert_manual(self, config: Dict[str, Any]) -> bool:
        """Point a manual endpoint config at the matching relay entries, in place."""
        relays = self.get()
        if not relays:
            return False
        modified = False
        if not config.get("relay_server") and config.get("srtla_addr") and config.get("srtla_port"):
            for sid, srv in relays["servers"].items():
                if srv["addr"].lower() == str(config["srtla_addr"]).lower() and srv["port"] == config["srtla_port"]:
                    config["relay_server"] = sid
                    modified = True
                    break
        if not config.get("relay_server"):
            return False
        if config.get("srtla_addr") or config.get("srtla_port"):
            config["srtla_addr"] = None
            config["srtla_port"] = None
            modified = True
        if not config.get("relay_account") and config.get("srt_streamid"):
            for aid, acc in relays["accounts"].items():
                if acc["ingest_key"] == config["srt_streamid"]:
                    config["relay_account"] = aid
                    modified = True
                    break
        if config.get("relay_account") and config.get("srt_streamid"):
            config["srt_streamid"] = None
            modified = True
        return modified
