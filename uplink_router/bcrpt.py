"""
Relay health monitoring through the BCRPT probe process.

The probe binary reads three files from the bcrpt directory (local source
addresses, relay ``ip:port`` endpoints and the pre-shared key), reloads them
on SIGHUP and prints one JSON stats object per line on stdout::

    {"rtt": {"203.0.113.7:5000": {"max_min": 42}}, "mtu": {"conn0": 1500}}

An RTT entry is either a single measurement or a mapping of source address
to measurement. A relay is scored by its worst path.
"""

import json
import logging
import signal
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .dns_cache import DnsCacheResolver
from .interfaces import InterfaceMonitor
from .jsoncache import write_text_file
from .procs import SupervisedProcess
from .relays import RelayRegistry

LOGGER = logging.getLogger("uplink_router.bcrpt")

LOW_MTU_THRESHOLD = 1336
MAX_RETRIES = 5
INITIAL_RETRY_DELAY_S = 1.0

Scheduler = Callable[[float, Callable[[], None]], None]


def timer_scheduler(delay: float, fn: Callable[[], None]) -> None:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


class BcrptConfigError(Exception):
    pass


def _rtt_values(entry: Any) -> Iterable[float]:
    if not isinstance(entry, dict):
        return []
    if "max_min" in entry:
        value = entry["max_min"]
        return [value] if isinstance(value, (int, float)) and not isinstance(value, bool) else []
    values: List[float] = []
    for per_source in entry.values():
        values.extend(_rtt_values(per_source))
    return values


class RelayHealthMonitor:
    def __init__(
        self,
        exe: str,
        directory: Path,
        interfaces: InterfaceMonitor,
        resolver: DnsCacheResolver,
        relays: RelayRegistry,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        scheduler: Scheduler = timer_scheduler,
    ):
        self.exe = exe
        self.directory = Path(directory)
        self.source_ips_file = self.directory / "source_ips"
        self.server_ips_file = self.directory / "server_ips"
        self.key_file = self.directory / "key"
        self.interfaces = interfaces
        self.resolver = resolver
        self.relays = relays
        self.popen = popen
        self.scheduler = scheduler

        self.lock = threading.Lock()
        self.process: Optional[SupervisedProcess] = None
        self.retry_count = 0
        self.shutting_down = False
        self.streaming = False
        self.stale_sources = False
        self.stale_servers = False
        self.low_mtu = False
        self._ips_to_relays: Dict[str, str] = {}
        self._relay_rtts: Dict[str, int] = {}
        self._unknown_endpoints: Set[str] = set()

    # ------------------------------------------------------------------
    # generated files
    # ------------------------------------------------------------------
    def _write(self, path: Path, contents: str) -> None:
        if not write_text_file(path, contents):
            raise BcrptConfigError(f"failed to write {path}")

    def _generate_source_ips(self) -> None:
        ips = [i.ip for i in self.interfaces.error_free()]
        self._write(self.source_ips_file, "".join(f"{ip}\n" for ip in ips))

    def _generate_server_ips(self) -> None:
        relays = self.relays.get()
        mapping: Dict[str, str] = {}
        lines = []
        for sid, srv in (relays or {}).get("servers", {}).items():
            port = srv.get("bcrp_port")
            if not port:
                continue
            result = self.resolver.resolve(srv["addr"])
            if result is None:
                continue
            for ip in result.addrs:
                addr = f"{ip}:{port}"
                mapping[addr] = sid
                lines.append(f"{addr}\n")
            if not result.from_cache:
                self.resolver.validate(srv["addr"])
        self._write(self.server_ips_file, "".join(lines))
        with self.lock:
            self._ips_to_relays = mapping

    def _generate_key(self) -> None:
        relays = self.relays.get() or {}
        self._write(self.key_file, relays.get("bcrp_key") or "")

    def reload(self) -> None:
        with self.lock:
            proc = self.process
        if proc is not None:
            proc.signal(signal.SIGHUP)

    def update_source_ips(self) -> None:
        with self.lock:
            if self.streaming:
                self.stale_sources = True
                return
        try:
            self._generate_source_ips()
        except BcrptConfigError as exc:
            LOGGER.error("Failed to update the BCRPT source addresses: %s", exc)
            return
        self.reload()

    def update_server_config(self) -> None:
        with self.lock:
            frozen = self.streaming
            if frozen:
                self.stale_servers = True
        try:
            if not frozen:
                self._generate_server_ips()
            self._generate_key()
        except BcrptConfigError as exc:
            LOGGER.error("Failed to update the BCRPT server config: %s", exc)
            return
        self.reload()

    def set_streaming(self, streaming: bool) -> None:
        """Freeze the probed paths while a stream is up; apply queued updates after."""
        with self.lock:
            self.streaming = streaming
            if streaming:
                return
            sources, servers = self.stale_sources, self.stale_servers
            self.stale_sources = self.stale_servers = False
        if sources:
            self.update_source_ips()
        if servers:
            self.update_server_config()

    # ------------------------------------------------------------------
    # process
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self.lock:
            if self.shutting_down:
                return
            frozen = self.streaming
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if not frozen or not self.source_ips_file.exists():
                self._generate_source_ips()
            if not frozen or not self.server_ips_file.exists():
                self._generate_server_ips()
            self._generate_key()
        except (OSError, BcrptConfigError) as exc:
            self._retry(f"BCRPT config generation failed ({exc})")
            return

        proc = SupervisedProcess(
            "bcrpt",
            [self.exe, str(self.source_ips_file), str(self.server_ips_file), str(self.key_file)],
            cooldown=0,
            on_stdout=self.handle_stats,
            on_stderr=lambda line: LOGGER.info("bcrpt: %s", line),
            on_exit=self._on_exit,
            auto_restart=False,
            popen=self.popen,
        )
        with self.lock:
            self.process = proc
        if not proc.start():
            self._retry("BCRPT failed to start")

    def _on_exit(self, code: Optional[int]) -> None:
        self._retry(f"bcrpt exited unexpectedly with code {code}")

    def _retry(self, reason: str) -> None:
        with self.lock:
            if self.shutting_down:
                return
            if self.retry_count >= MAX_RETRIES:
                LOGGER.error("%s; giving up after %d attempts", reason, MAX_RETRIES)
                return
            self.retry_count += 1
            attempt = self.retry_count
        delay = INITIAL_RETRY_DELAY_S * 2 ** (attempt - 1)
        LOGGER.warning("%s. Retrying in %.0f s (attempt %d/%d)", reason, delay, attempt, MAX_RETRIES)
        self.scheduler(delay, self.start)

    def stop(self) -> None:
        with self.lock:
            self.shutting_down = True
            proc = self.process
            self.process = None
        if proc is not None:
            proc.stop()

    # ------------------------------------------------------------------
    # stats
    # ------------------------------------------------------------------
    def handle_stats(self, line: str) -> None:
        try:
            stats = json.loads(line)
        except ValueError:
            LOGGER.debug("bcrpt: unparsable output: %s", line)
            return
        if not isinstance(stats, dict):
            return

        with self.lock:
            mapping = dict(self._ips_to_relays)
        rtts: Dict[str, int] = {}
        rtt_stats = stats.get("rtt")
        for endpoint, entry in (rtt_stats.items() if isinstance(rtt_stats, dict) else ()):
            relay_id = mapping.get(endpoint)
            if relay_id is None:
                if endpoint not in self._unknown_endpoints:
                    self._unknown_endpoints.add(endpoint)
                    LOGGER.error("BUG?: bcrpt reported RTT for unknown relay endpoint %s", endpoint)
                continue
            for value in _rtt_values(entry):
                rtts[relay_id] = max(rtts.get(relay_id, value), value)

        low = False
        mtu_stats = stats.get("mtu")
        for mtu in (mtu_stats.values() if isinstance(mtu_stats, dict) else ()):
            if isinstance(mtu, (int, float)) and mtu < LOW_MTU_THRESHOLD:
                low = True

        with self.lock:
            # a probe that reports is healthy again
            self.retry_count = 0
            self._relay_rtts = rtts
            if low and not self.low_mtu:
                self.low_mtu = True
                LOGGER.info("Detected low MTU network. Using reduced SRT packet size")

    def relay_rtts(self) -> Dict[str, int]:
        with self.lock:
            return dict(self._relay_rtts)

    def relay_rtt(self, relay_id: str) -> Optional[int]:
        with self.lock:
            return self._relay_rtts.get(relay_id)

    def has_low_mtu(self) -> bool:
        with self.lock:
            return self.low_mtu
