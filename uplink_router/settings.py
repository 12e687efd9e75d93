"""
Deployment setup, runtime config and logging for the uplink router.

Setup keys describe the appliance (binary paths, generated files, cache
locations) and are read-only at runtime. The runtime config holds the last
stream settings chosen by the operator and is rewritten on every start.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = BASE_DIR / "config.json"
SETUP_PATH = BASE_DIR / "setup.json"
ENV_PREFIX = "UPLINK_"

LOGGER = logging.getLogger("uplink_router")

DEFAULT_SETUP: Dict[str, Any] = {
    "hw": "generic",
    "encoder_exec": "/usr/bin/belacoder",
    "sender_exec": "/usr/bin/srtla_send",
    "bcrpt_exec": "/usr/bin/bcrpt",
    "ips_file": "/tmp/srtla_ips",
    "bitrate_file": "/tmp/belacoder_br",
    "pipeline_tmp": "/tmp/belacoder_pipeline",
    "pipelines_dir": "/usr/share/belacoder/pipelines",
    "bcrpt_dir": "/var/run/bcrpt",
    "sound_device_dir": "/sys/class/sound",
    "boot_marker": "/tmp/uplink_router_restarted",
    "cache_dir": str(BASE_DIR / ".cache"),
    "log_dir": str(BASE_DIR / ".logs"),
    "dns_sentinel_name": "wellknown.belabox.net",
    "dns_sentinel_addr": "127.1.33.7",
    "connectivity_domain": "www.gstatic.com",
    "sender_port": 9000,
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "delay": 0,
    "pipeline": None,
    "acodec": "opus",
    "asrc": None,
    "max_br": 5000,
    "srt_latency": 2000,
    "bitrate_overlay": False,
    "relay_server": None,
    "relay_account": None,
    "srtla_addr": None,
    "srtla_port": None,
    "srt_streamid": None,
    "autostart": False,
}


def _coerce(value: str, default: Any) -> Any:
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            return default
    return value


def load_setup(path: Optional[Path] = None, env_file: Optional[Path] = None) -> Dict[str, Any]:
    """Merge defaults, ``setup.json`` and ``UPLINK_*`` environment overrides."""
    setup_path = Path(path or SETUP_PATH)
    load_dotenv(env_file or (setup_path.parent / ".env"), override=False)
    setup = dict(DEFAULT_SETUP)
    if setup_path.exists():
        try:
            setup.update(json.loads(setup_path.read_text()))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to read setup %s, using defaults: %s", setup_path, exc)
    for key, default in DEFAULT_SETUP.items():
        raw = os.environ.get(ENV_PREFIX + key.upper())
        if raw is not None:
            setup[key] = _coerce(raw, default)
    return setup


class ConfigStore:
    """Owns the persisted runtime config and hands out copies of it."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or CONFIG_PATH)
        self._cfg = self._load()

    def _load(self) -> Dict[str, Any]:
        cfg: Dict[str, Any] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text())
                if isinstance(loaded, dict):
                    cfg = loaded
                else:
                    LOGGER.warning("Config %s is not an object, using defaults", self.path)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Failed to load config %s, using defaults: %s", self.path, exc)
        for key, value in DEFAULT_CONFIG.items():
            cfg.setdefault(key, value)
        return cfg

    def get(self) -> Dict[str, Any]:
        return dict(self._cfg)

    def update(self, **changes: Any) -> Dict[str, Any]:
        self._cfg.update(changes)
        self.save()
        return self.get()

    def save(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._cfg, indent=2))
            return True
        except OSError as exc:
            LOGGER.warning("Failed to write config %s: %s", self.path, exc)
            return False


def configure_logging(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if not LOGGER.handlers:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(fmt)
        LOGGER.addHandler(stream_handler)
        if log_dir is not None:
            try:
                Path(log_dir).mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(Path(log_dir) / "uplink_router.log", encoding="utf-8")
                file_handler.setFormatter(fmt)
                LOGGER.addHandler(file_handler)
            except OSError as exc:
                LOGGER.warning("File logging disabled (%s): %s", log_dir, exc)
    LOGGER.setLevel(logging.DEBUG if verbose else logging.INFO)
    return LOGGER
