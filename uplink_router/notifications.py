"""
Operator notifications.

Persistent notifications are identified by name, shown to every client that
connects later, de-duplicated and delivered at most once per second. The sink
is whatever the UI layer plugs in; by default notifications are only logged.
"""

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

LOGGER = logging.getLogger("uplink_router.notifications")

RATE_LIMIT_S = 1.0


@dataclass
class Notification:
    name: str
    type: str
    msg: str
    duration: int = 0
    is_persistent: bool = False
    is_dismissable: bool = True
    last_sent: float = 0.0
    updated: float = 0.0

    def remaining(self, now: float) -> Optional[int]:
        """Seconds left to live, 0 for never-expiring, None once expired."""
        if self.duration == 0:
            return 0
        left = math.ceil(self.duration - (now - self.updated))
        return left if left > 0 else None


Sink = Callable[[Dict[str, object]], None]


class NotificationCenter:
    def __init__(self, sink: Optional[Sink] = None, clock: Callable[[], float] = time.monotonic):
        self.sink = sink
        self.clock = clock
        self._lock = threading.Lock()
        self._persistent: Dict[str, Notification] = {}

    def send(
        self,
        name: str,
        type_: str,
        msg: str,
        duration: int = 0,
        persistent: bool = False,
        dismissable: bool = True,
    ) -> bool:
        now = self.clock()
        note = Notification(name, type_, msg, duration, persistent, dismissable, updated=now)
        with self._lock:
            if persistent:
                existing = self._persistent.get(name)
                if existing is not None:
                    rate_limited = existing.last_sent and existing.last_sent + RATE_LIMIT_S > now
                    note.last_sent = existing.last_sent if rate_limited else now
                    self._persistent[name] = note
                    if rate_limited:
                        return False
                else:
                    note.last_sent = now
                    self._persistent[name] = note
        self._deliver({"show": [self._message(note, duration)]})
        level = logging.ERROR if type_ == "error" else logging.WARNING if type_ == "warning" else logging.INFO
        LOGGER.log(level, "notification %s: %s", name, msg)
        return True

    def remove(self, name: str) -> None:
        with self._lock:
            existed = self._persistent.pop(name, None) is not None
        if existed:
            self._deliver({"remove": [name]})

    def exists(self, name: str) -> bool:
        with self._lock:
            note = self._persistent.get(name)
            if note is None:
                return False
            if note.remaining(self.clock()) is None:
                del self._persistent[name]
                return False
            return True

    def persistent_snapshot(self) -> List[Dict[str, object]]:
        """Live persistent notifications, in the form sent to a new client."""
        now = self.clock()
        out = []
        with self._lock:
            for name, note in list(self._persistent.items()):
                left = note.remaining(now)
                if left is None:
                    del self._persistent[name]
                    continue
                out.append(self._message(note, left))
        return out

    @staticmethod
    def _message(note: Notification, duration: int) -> Dict[str, object]:
        msg = asdict(note)
        msg.pop("last_sent")
        msg.pop("updated")
        msg["duration"] = duration
        return msg

    def _deliver(self, payload: Dict[str, object]) -> None:
        if self.sink is None:
            return
        try:
            self.sink(payload)
        except Exception as exc:
            LOGGER.warning("Notification sink failed: %s", exc)
