"""Audio capture cards and the cancellable wait for a missing one."""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .notifications import NotificationCenter
from .pipelines import DEFAULT_AUDIO_ID, NO_AUDIO_ID

LOGGER = logging.getLogger("uplink_router.audio")

AUDIO_POLL_S = 1.0

ALIASES = {
    "C4K": "Cam Link 4K",
    "usbaudio": "USB audio",
}
RK3588_ALIASES = {
    "rockchiphdmiin": "HDMI",
    "rockchipes8388": "Analog in",
}
# Onboard cards that are never useful capture inputs
EXCLUDED_CARDS = {
    "tegrahda",
    "tegrasndt210ref",
    "rockchipdp0",
    "rockchiphdmi0",
    "rockchiphdmi1",
    "rockchiphdmi2",
    "rockchiphdmiind",
    "rockchipes8316",
}
PRIORITY_CARDS = ["HDMI", "rockchiphdmiin", "rockchipes8388", "C4K", "usbaudio"]


class AudioDevices:
    """Maps display names to ALSA card ids, refreshed from sysfs."""

    def __init__(self, sound_dir: Path, hw: str = "generic"):
        self.sound_dir = Path(sound_dir)
        self.aliases = dict(ALIASES)
        if hw == "rk3588":
            self.aliases.update(RK3588_ALIASES)
        self._lock = threading.Lock()
        self._devices: Dict[str, str] = {}
        self._add(self._devices, NO_AUDIO_ID)
        self._add(self._devices, DEFAULT_AUDIO_ID)

    def _add(self, devices: Dict[str, str], card_id: str) -> None:
        devices[self.aliases.get(card_id, card_id)] = card_id

    def refresh(self) -> List[str]:
        try:
            entries = os.listdir(self.sound_dir)
        except OSError as exc:
            LOGGER.error("Failed to list sound cards in %s: %s", self.sound_dir, exc)
            entries = []
        found = set()
        for entry in entries:
            if not entry.startswith("card"):
                continue
            try:
                card_id = (self.sound_dir / entry / "id").read_text().strip()
            except OSError:
                continue
            if card_id and card_id not in EXCLUDED_CARDS:
                found.add(card_id)

        devices: Dict[str, str] = {}
        for card_id in PRIORITY_CARDS:
            if card_id in found:
                self._add(devices, card_id)
                found.discard(card_id)
        for card_id in sorted(found):
            self._add(devices, card_id)
        self._add(devices, NO_AUDIO_ID)
        self._add(devices, DEFAULT_AUDIO_ID)

        with self._lock:
            self._devices = devices
        LOGGER.debug("audio devices: %s", devices)
        return list(devices)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._devices)

    def lookup(self, name: str) -> Optional[str]:
        with self._lock:
            return self._devices.get(name)

    def card_id(self, name: str) -> str:
        """ALSA id for a display name, whether or not the card is present."""
        for card_id, alias in self.aliases.items():
            if alias == name:
                return card_id
        return name


class AudioWaiter:
    """Blocks until an audio input shows up, polling once a second.

    ``cancel`` is shared with ``stop()``; setting it ends the wait with None.
    """

    def __init__(
        self,
        devices: AudioDevices,
        notifications: NotificationCenter,
        interval: float = AUDIO_POLL_S,
        refresh: Optional[Callable[[], object]] = None,
    ):
        self.devices = devices
        self.notifications = notifications
        self.interval = interval
        self.refresh = refresh or devices.refresh

    def wait(self, asrc: str, cancel: threading.Event) -> Optional[str]:
        while not cancel.is_set():
            card_id = self.devices.lookup(asrc)
            if card_id is not None:
                self.notifications.remove("asrc_not_found")
                return card_id
            msg = f"Selected audio input '{asrc}' is unavailable. Waiting for it before starting the stream..."
            self.notifications.send("asrc_not_found", "error", msg, 2, persistent=True, dismissable=False)
            if cancel.wait(self.interval):
                break
            self.refresh()
        LOGGER.info("Wait for audio input '%s' cancelled", asrc)
        self.notifications.remove("asrc_not_found")
        return None
