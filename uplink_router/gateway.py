"""
Default-route failover.

A check first probes the connectivity-check URL through the current default
route. When that fails, each eligible interface is tried with its own source
address and the first one that reaches the Internet gets its per-interface
default route promoted to the main table.
"""

import enum
import logging
import subprocess
import threading
import time
from typing import Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter

from .dns_cache import DnsCacheResolver
from .interfaces import InterfaceMonitor
from .notifications import NotificationCenter

LOGGER = logging.getLogger("uplink_router.gateway")

CHECK_INTERVAL_S = 2.0
HTTP_TIMEOUT_S = 4.0
IP_CMD_TIMEOUT_S = 5.0
CONNECTIVITY_PATH = "/generate_204"
# "ip route del default" removes one route per call
MAX_ROUTE_DELETES = 32


class GatewayState(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    QUEUED = "queued"


class SourceAddressAdapter(HTTPAdapter):
    """Binds outgoing connections to one local address, and thus one link."""

    def __init__(self, source_ip: str, **kwargs):
        self.source_ip = source_ip
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["source_address"] = (self.source_ip, 0)
        super().init_poolmanager(*args, **kwargs)


def http_probe(addr: str, domain: str, source_ip: Optional[str] = None, timeout: float = HTTP_TIMEOUT_S) -> bool:
    host = f"[{addr}]" if ":" in addr else addr
    with requests.Session() as session:
        if source_ip:
            session.mount("http://", SourceAddressAdapter(source_ip))
        try:
            resp = session.get(
                f"http://{host}{CONNECTIVITY_PATH}",
                headers={"Host": domain},
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            LOGGER.debug("Connectivity probe to %s via %s failed: %s", addr, source_ip or "default route", exc)
            return False
        # captive portals answer with a redirect or a login page
        return resp.status_code == 204 and not resp.content


Probe = Callable[[str, str, Optional[str]], bool]
Executor = Callable[[Callable[[], None]], None]


def thread_executor(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


class RouteTable:
    """Thin wrapper over the ``ip route`` commands used for failover."""

    def __init__(self, run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.run = run

    def _ip(self, *args: str) -> Optional[subprocess.CompletedProcess]:
        try:
            return self.run(
                ["ip", *args],
                capture_output=True,
                text=True,
                timeout=IP_CMD_TIMEOUT_S,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.error("ip %s failed: %s", " ".join(args), exc)
            return None

    def interface_default(self, ifname: str) -> Optional[str]:
        res = self._ip("route", "show", "table", ifname, "default")
        if res is None or res.returncode != 0:
            LOGGER.error("Failed to read the default route for %s", ifname)
            return None
        route = res.stdout.strip().splitlines()
        return route[0].strip() if route else None

    def replace_default(self, route: str) -> bool:
        # Not atomic: a default route added by someone else between the two
        # steps is deleted or kept at random.
        for _ in range(MAX_ROUTE_DELETES):
            res = self._ip("route", "del", "default")
            if res is None or res.returncode != 0:
                break
        res = self._ip("route", "add", *route.split())
        if res is None or res.returncode != 0:
            LOGGER.error("Failed to add the default route '%s': %s", route, res.stderr.strip() if res else "")
            return False
        return True


class GatewayController:
    def __init__(
        self,
        interfaces: InterfaceMonitor,
        resolver: DnsCacheResolver,
        notifications: NotificationCenter,
        domain: str,
        probe: Probe = http_probe,
        routes: Optional[RouteTable] = None,
        executor: Executor = thread_executor,
    ):
        self.interfaces = interfaces
        self.resolver = resolver
        self.notifications = notifications
        self.domain = domain
        self.probe = probe
        self.routes = routes or RouteTable()
        self.executor = executor
        self._lock = threading.Lock()
        self._pending = True
        self._in_flight = False
        self._last_run: Optional[float] = None

    @property
    def state(self) -> GatewayState:
        with self._lock:
            if self._in_flight:
                return GatewayState.CHECKING
            return GatewayState.QUEUED if self._pending else GatewayState.IDLE

    def queue_check(self) -> None:
        with self._lock:
            self._pending = True

    def tick(self, now: Optional[float] = None) -> bool:
        """Start a check if one is due; returns whether one was started."""
        now = time.monotonic() if now is None else now
        with self._lock:
            if not self._pending or self._in_flight:
                return False
            if self._last_run is not None and now - self._last_run < CHECK_INTERVAL_S:
                return False
            self._pending = False
            self._in_flight = True
            self._last_run = now
        self.executor(self._run_check)
        return True

    def _run_check(self) -> None:
        ok = False
        try:
            ok = self.check()
        except Exception:
            LOGGER.exception("Gateway check failed")
        finally:
            with self._lock:
                self._in_flight = False
                if not ok:
                    self._pending = True

    def check(self) -> bool:
        result = self.resolver.resolve(self.domain)
        if result is None:
            LOGGER.error("Failed to resolve %s; no connectivity check possible", self.domain)
            return False
        addrs: List[str] = list(result.addrs)

        if any(self.probe(addr, self.domain, None) for addr in addrs):
            if not result.from_cache:
                self.resolver.validate(self.domain)
            self.notifications.remove("no_internet")
            LOGGER.debug("Internet reachable via the default route")
            return True

        self.notifications.send("no_internet", "error", "No Internet access", 10)
        LOGGER.info("Internet connectivity via the default route failed, trying each interface")
        for iface in self.interfaces.eligible():
            if not any(self.probe(addr, self.domain, iface.ip) for addr in addrs):
                continue
            LOGGER.info("Internet reachable via %s (%s)", iface.name, iface.ip)
            route = self.routes.interface_default(iface.name)
            if not route:
                LOGGER.error("No default route in table %s", iface.name)
                continue
            if self.routes.replace_default(route):
                LOGGER.info("Default route set to '%s'", route)
                if not result.from_cache:
                    self.resolver.validate(self.domain)
                return True
        LOGGER.warning("No interface could reach the Internet; leaving routes unchanged")
        return False
