"""
DNS resolution with a hijack check and a persistent fallback cache.

Resolving is assumed broken unless a well-known name returns its one expected
address; captive portals and broken modems tend to answer every query with
their own IP. Fresh answers are only kept in memory: they reach the on-disk
cache through ``validate()``, once the caller has seen the address work.
"""

import concurrent.futures
import logging
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .jsoncache import load_json_cache, write_json_cache
from .netutil import is_ipv4

LOGGER = logging.getLogger("uplink_router.dns")

DNS_TIMEOUT_S = 2.0
# Some records change with almost every query (CDNs); this bounds cache writes
DNS_MIN_AGE_S = 60.0

_FAMILIES = {"a": socket.AF_INET, "aaaa": socket.AF_INET6}


class DnsError(Exception):
    pass


@dataclass(frozen=True)
class ResolveResult:
    addrs: Tuple[str, ...]
    from_cache: bool


def getaddrinfo_lookup(hostname: str, rrtype: str) -> List[str]:
    infos = socket.getaddrinfo(hostname, None, _FAMILIES[rrtype], socket.SOCK_STREAM)
    addrs: List[str] = []
    for info in infos:
        addr = info[4][0]
        if addr not in addrs:
            addrs.append(addr)
    return addrs


Lookup = Callable[[str, str], List[str]]


class DnsCacheResolver:
    def __init__(
        self,
        cache_path: Path,
        sentinel_name: str,
        sentinel_addr: str,
        lookup: Lookup = getaddrinfo_lookup,
        timeout: float = DNS_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_path = Path(cache_path)
        self.sentinel_name = sentinel_name
        self.sentinel_addr = sentinel_addr
        self.lookup = lookup
        self.timeout = timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, dict] = load_json_cache(self.cache_path, "DNS cache")
        self._fresh: Dict[str, List[str]] = {}
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="dns")

    def _query(self, hostname: str, rrtype: Optional[str]) -> List[str]:
        types = [rrtype] if rrtype else ["a", "aaaa"]
        futures = [self._pool.submit(self.lookup, hostname, t) for t in types]
        done, pending = concurrent.futures.wait(futures, timeout=self.timeout)
        for fut in pending:
            fut.cancel()
        # IPv4 answers win when both were asked for
        for fut in futures:
            if fut in done and fut.exception() is None and fut.result():
                return list(fut.result())
        if pending:
            raise DnsError(f"DNS timeout for {hostname}")
        raise DnsError(f"DNS record not found for {hostname}")

    def _trustworthy(self) -> bool:
        try:
            addrs = self._query(self.sentinel_name, "a")
        except DnsError as exc:
            LOGGER.error("DNS validation failure: %s", exc)
            return False
        if addrs == [self.sentinel_addr]:
            return True
        LOGGER.error(
            "DNS validation failure: got result %s instead of the expected %s",
            addrs,
            self.sentinel_addr,
        )
        return False

    def resolve(self, hostname: str, rrtype: Optional[str] = None) -> Optional[ResolveResult]:
        if rrtype is not None:
            rrtype = rrtype.lower()
            if rrtype not in _FAMILIES:
                LOGGER.error("Invalid rrtype %s", rrtype)
                return None
        if is_ipv4(hostname) and rrtype != "aaaa":
            return ResolveResult((hostname,), False)

        if not self._trustworthy():
            with self._lock:
                self._fresh.pop(hostname, None)
        else:
            try:
                addrs = self._query(hostname, rrtype)
            except DnsError as exc:
                LOGGER.error("dns error %s", exc)
            else:
                with self._lock:
                    self._fresh[hostname] = addrs
                return ResolveResult(tuple(addrs), False)

        with self._lock:
            entry = self._cache.get(hostname)
            cached = list(entry.get("results") or []) if isinstance(entry, dict) else []
        if cached:
            LOGGER.warning("Using cached DNS results for %s: %s", hostname, cached)
            return ResolveResult(tuple(cached), True)
        LOGGER.error("DNS query for %s failed and no cached value is available", hostname)
        return None

    def validate(self, hostname: str) -> bool:
        """Promote the last fresh answer to the cache; returns True if the disk was written."""
        if is_ipv4(hostname):
            return False
        with self._lock:
            fresh = self._fresh.get(hostname)
            if not fresh:
                LOGGER.warning("DNS: error validating results for %s: not found", hostname)
                return False
            entry = self._cache.get(hostname)
            if isinstance(entry, dict) and set(entry.get("results") or []) == set(fresh):
                return False
            now = self.clock()
            write = not (isinstance(entry, dict) and entry.get("ts") and now - entry["ts"] < DNS_MIN_AGE_S)
            if not isinstance(entry, dict):
                entry = {"ts": now, "results": []}
                self._cache[hostname] = entry
            entry["results"] = list(fresh)
            if not write:
                return False
            entry["ts"] = now
            snapshot = {name: dict(e) for name, e in self._cache.items()}
        write_json_cache(self.cache_path, snapshot)
        LOGGER.debug("DNS cache updated for %s: %s", hostname, fresh)
        return True

    def cached(self, hostname: str) -> Optional[Tuple[str, ...]]:
        with self._lock:
            entry = self._cache.get(hostname)
            if not isinstance(entry, dict):
                return None
            return tuple(entry.get("results") or ())

    def close(self) -> None:
        self._pool.shutdown(wait=False)
