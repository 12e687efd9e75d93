import itertools
import os
import subprocess
import threading
from typing import List, Optional

import pytest

from .interfaces import RawInterface
from .notifications import NotificationCenter

SENTINEL_NAME = "wellknown.example.net"
SENTINEL_ADDR = "127.1.33.7"

_pids = itertools.count(1000)


def raw(name: str, ip: Optional[str], netmask: str = "255.255.255.0", running: bool = True, tx: int = 0) -> RawInterface:
    return RawInterface(name, ip, netmask, running, tx)


class FakeLookup:
    """Stand-in DNS: a dict of hostname -> answers, the sentinel answered correctly."""

    def __init__(self, answers=None, sentinel: Optional[List[str]] = None):
        self.answers = dict(answers or {})
        self.sentinel = [SENTINEL_ADDR] if sentinel is None else sentinel
        self.queries: List[str] = []

    def __call__(self, hostname: str, rrtype: str) -> List[str]:
        self.queries.append(hostname)
        if hostname == SENTINEL_NAME:
            return list(self.sentinel)
        if rrtype == "aaaa":
            raise OSError("no AAAA record")
        if hostname not in self.answers:
            raise OSError(f"NXDOMAIN {hostname}")
        return list(self.answers[hostname])


class FakeProcess:
    """Popen look-alike that only exits when terminated or killed."""

    def __init__(self, argv, events: list):
        self.argv = list(argv)
        self.name = os.path.basename(str(argv[0]))
        self.pid = next(_pids)
        self.stdout = None
        self.stderr = None
        self.returncode = None
        self.signals: List[int] = []
        self.events = events
        self._exited = threading.Event()

    def poll(self):
        return self.returncode

    def terminate(self):
        self.events.append(("terminate", self.name))
        self._finish(-15)

    def kill(self):
        self._finish(-9)

    def _finish(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.events.append(("exit", self.name))
            self._exited.set()

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.argv, timeout)
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)


class FakePopen:
    def __init__(self):
        self.events: list = []
        self.procs: List[FakeProcess] = []

    def __call__(self, argv, **kwargs):
        proc = FakeProcess(argv, self.events)
        self.procs.append(proc)
        self.events.append(("spawn", proc.name))
        return proc


@pytest.fixture
def sent():
    return []


@pytest.fixture
def notifications(sent):
    return NotificationCenter(sink=sent.append)
