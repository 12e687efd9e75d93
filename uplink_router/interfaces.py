"""
Network interface monitoring.

The monitor polls the OS interface table once per second and keeps the
interfaces usable for bonding: RUNNING, non-loopback, non-virtual, with an
IPv4 address. Interfaces sharing an address, or reserved for a Wi-Fi hotspot,
stay in the table but carry an error flag that excludes them from the link
list and from Internet probing.
"""

import enum
import logging
import re
import shutil
import socket
import subprocess
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Set

import psutil

from .notifications import NotificationCenter

LOGGER = logging.getLogger("uplink_router.interfaces")

EXCLUDED_NAMES = re.compile(r"^(lo$|docker|l4tbr|veth|virbr|br-)")
NMCLI_TIMEOUT_S = 10.0


class IfError(enum.IntFlag):
    NONE = 0
    DUP_IPV4 = 0x01
    HOTSPOT = 0x02


# Checked in this order, hotspot wins over a duplicate address
ERROR_MESSAGES = (
    (IfError.HOTSPOT, "WiFi hotspot"),
    (IfError.DUP_IPV4, "duplicate IPv4 addr"),
)


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    ip: Optional[str]
    netmask: Optional[str]
    enabled: bool = True
    tp: int = 0
    txb: int = 0
    error: IfError = IfError.NONE

    @property
    def eligible(self) -> bool:
        return self.enabled and not self.error and bool(self.ip)

    def error_message(self) -> Optional[str]:
        for flag, msg in ERROR_MESSAGES:
            if self.error & flag:
                return msg
        return None


@dataclass(frozen=True)
class RawInterface:
    """One OS interface as reported by the reader, before any policy."""

    name: str
    ip: Optional[str]
    netmask: Optional[str]
    running: bool
    tx_bytes: int


def read_os_interfaces() -> List[RawInterface]:
    addrs = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    counters = psutil.net_io_counters(pernic=True)
    out = []
    for name, entries in addrs.items():
        ip = netmask = None
        for entry in entries:
            if entry.family == socket.AF_INET:
                ip, netmask = entry.address, entry.netmask
                break
        st = stats.get(name)
        if st is None:
            running = False
        else:
            flags = getattr(st, "flags", "")
            running = "running" in flags.split(",") if flags else st.isup
        io = counters.get(name)
        out.append(RawInterface(name, ip, netmask, running, io.bytes_sent if io else 0))
    return out


ChangeListener = Callable[[], None]


class InterfaceMonitor:
    def __init__(
        self,
        reader: Callable[[], Iterable[RawInterface]] = read_os_interfaces,
        hotspot_provider: Optional[Callable[[], Set[str]]] = None,
        notifications: Optional[NotificationCenter] = None,
    ):
        self.reader = reader
        self.hotspot_provider = hotspot_provider or (lambda: set())
        self.notifications = notifications
        self._lock = threading.Lock()
        self._table: Dict[str, NetworkInterface] = {}
        self._listeners: List[ChangeListener] = []

    # ------------------------------------------------------------------
    # polling
    # ------------------------------------------------------------------
    def poll(self) -> bool:
        """Refresh the table; returns True if downstream state must be recomputed."""
        try:
            raw = list(self.reader())
        except (OSError, psutil.Error) as exc:
            LOGGER.error("Error reading the interface table: %s", exc)
            return False
        try:
            hotspots = set(self.hotspot_provider())
        except Exception as exc:
            LOGGER.error("Hotspot provider failed: %s", exc)
            hotspots = set()

        with self._lock:
            old = self._table
            new: Dict[str, NetworkInterface] = {}
            changed = False
            for r in raw:
                if EXCLUDED_NAMES.match(r.name) or not r.running or not r.ip:
                    continue
                prev = old.get(r.name)
                new[r.name] = NetworkInterface(
                    name=r.name,
                    ip=r.ip,
                    netmask=r.netmask,
                    enabled=prev.enabled if prev else True,
                    tp=max(0, r.tx_bytes - prev.txb) if prev else 0,
                    txb=r.tx_bytes,
                    error=IfError.HOTSPOT if r.name in hotspots else IfError.NONE,
                )
                if prev is None or prev.ip != r.ip:
                    changed = True
            if set(old) - set(new):
                changed = True

            duplicates = self._flag_duplicates(new)
            if any(old.get(n) is None or old[n].error != i.error for n, i in new.items()):
                changed = True
            self._table = new
            listeners = list(self._listeners)

        if changed:
            self._report_duplicates(duplicates)
            for listener in listeners:
                try:
                    listener()
                except Exception:
                    LOGGER.exception("Interface change listener failed")
        return changed

    @staticmethod
    def _flag_duplicates(table: Dict[str, NetworkInterface]) -> Dict[str, List[str]]:
        by_ip: Dict[str, List[str]] = {}
        for name, iface in table.items():
            by_ip.setdefault(iface.ip, []).append(name)
        dups = {ip: names for ip, names in by_ip.items() if len(names) > 1}
        for names in dups.values():
            for name in names:
                table[name] = replace(table[name], error=table[name].error | IfError.DUP_IPV4)
        return dups

    def _report_duplicates(self, dups: Dict[str, List[str]]) -> None:
        if self.notifications is None:
            return
        if not dups:
            self.notifications.remove("netif_dup_ip")
            return
        msg = "; ".join(
            f"Interfaces {', '.join(names)} can't be used because they share the same IP address: {ip}"
            for ip, names in dups.items()
        )
        self.notifications.send("netif_dup_ip", "error", msg, 0, persistent=True, dismissable=True)

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    def get_interfaces(self) -> Dict[str, NetworkInterface]:
        with self._lock:
            return dict(self._table)

    def eligible(self) -> List[NetworkInterface]:
        with self._lock:
            return [i for i in self._table.values() if i.eligible]

    def error_free(self) -> List[NetworkInterface]:
        with self._lock:
            return [i for i in self._table.values() if not i.error and i.ip]

    def build_view(self) -> Dict[str, Dict[str, object]]:
        view: Dict[str, Dict[str, object]] = {}
        for name, iface in self.get_interfaces().items():
            entry: Dict[str, object] = {"ip": iface.ip, "tp": iface.tp, "enabled": iface.enabled}
            err = iface.error_message()
            if err:
                entry["error"] = err
            view[name] = entry
        return view

    def set_enabled(self, name: str, ip: str, enabled: bool) -> Optional[str]:
        """Toggle an interface; returns an error message when the request is refused."""
        with self._lock:
            iface = self._table.get(name)
            if iface is None or iface.ip != ip:
                return f"Unknown network interface {name}"
            if enabled:
                err = iface.error_message()
                if err:
                    return f"Can't enable {name}: {err}"
            elif iface.enabled and sum(1 for i in self._table.values() if i.enabled) == 1:
                return "Can't disable all networks"
            if iface.enabled == enabled:
                return None
            self._table[name] = replace(iface, enabled=enabled)
            listeners = list(self._listeners)
        LOGGER.info("Interface %s %s", name, "enabled" if enabled else "disabled")
        for listener in listeners:
            try:
                listener()
            except Exception:
                LOGGER.exception("Interface change listener failed")
        return None


class HotspotDetector:
    """Tracks which Wi-Fi devices NetworkManager runs in access point mode."""

    def __init__(self, run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.run = run
        self._lock = threading.Lock()
        self._devices: Set[str] = set()

    def _nmcli(self, *args: str) -> Optional[str]:
        try:
            res = self.run(
                ["nmcli", "-t", *args],
                capture_output=True,
                text=True,
                timeout=NMCLI_TIMEOUT_S,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.debug("nmcli %s failed: %s", " ".join(args), exc)
            return None
        if res.returncode != 0:
            return None
        return res.stdout

    def refresh(self) -> Set[str]:
        active = self._nmcli("-f", "NAME,TYPE,DEVICE", "connection", "show", "--active")
        if active is None:
            return self.devices()
        found: Set[str] = set()
        for line in active.splitlines():
            # nmcli escapes ':' inside fields as '\:'
            fields = re.split(r"(?<!\\):", line)
            if len(fields) < 3 or fields[1] != "802-11-wireless" or not fields[2]:
                continue
            conn = fields[0].replace("\\:", ":")
            mode = self._nmcli("-g", "802-11-wireless.mode", "connection", "show", conn)
            if mode is not None and mode.strip() == "ap":
                found.add(fields[2])
        with self._lock:
            if found != self._devices:
                LOGGER.info("Hotspot devices: %s", ", ".join(sorted(found)) or "none")
            self._devices = found
        return set(found)

    def devices(self) -> Set[str]:
        with self._lock:
            return set(self._devices)

    @staticmethod
    def available() -> bool:
        return shutil.which("nmcli") is not None
