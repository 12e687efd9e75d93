"""
The control plane: every component constructed once and wired together,
plus the control loop thread that drives polling.
"""

import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .audio import AudioDevices
from .bcrpt import RelayHealthMonitor
from .dns_cache import DnsCacheResolver
from .gateway import CHECK_INTERVAL_S, GatewayController
from .interfaces import HotspotDetector, InterfaceMonitor, NetworkInterface
from .linklist import LinkListBuilder
from .notifications import NotificationCenter, Sink
from .operators import OperatorNameCache
from .pipelines import PipelineCatalog
from .procs import signal_by_name
from .relays import RelayRegistry
from .settings import ConfigStore
from .streaming import StreamSupervisor

LOGGER = logging.getLogger("uplink_router.service")

POLL_INTERVAL_S = 1.0
HOTSPOT_INTERVAL_S = 10.0


class ControlPlane:
    def __init__(
        self,
        setup: Dict[str, Any],
        config: ConfigStore,
        sink: Optional[Sink] = None,
        hotspots: Optional[HotspotDetector] = None,
    ):
        self.setup = setup
        self.config = config
        self.notifications = NotificationCenter(sink)
        self.hotspots = hotspots if hotspots is not None else HotspotDetector()
        cache_dir = Path(setup["cache_dir"])

        self.interfaces = InterfaceMonitor(
            hotspot_provider=self.hotspots.devices,
            notifications=self.notifications,
        )
        self.resolver = DnsCacheResolver(
            cache_dir / "dns_cache.json",
            setup["dns_sentinel_name"],
            setup["dns_sentinel_addr"],
        )
        self.gateway = GatewayController(
            self.interfaces,
            self.resolver,
            self.notifications,
            setup["connectivity_domain"],
        )
        self.linklist = LinkListBuilder(
            self.interfaces,
            Path(setup["ips_file"]),
            reload=lambda: signal_by_name(setup["sender_exec"], signal.SIGHUP),
        )
        self.relays = RelayRegistry(cache_dir)
        self.operators = OperatorNameCache(cache_dir)
        self.bcrpt = RelayHealthMonitor(
            setup["bcrpt_exec"],
            Path(setup["bcrpt_dir"]),
            self.interfaces,
            self.resolver,
            self.relays,
        )
        self.pipelines = PipelineCatalog(Path(setup["pipelines_dir"]), setup["hw"])
        self.audio = AudioDevices(Path(setup["sound_device_dir"]), setup["hw"])
        self.stream = StreamSupervisor(
            setup,
            config,
            self.notifications,
            self.interfaces,
            self.linklist,
            self.resolver,
            self.pipelines,
            self.audio,
            self.relays,
            queue_gateway_check=self.gateway.queue_check,
            low_mtu=self.bcrpt.has_low_mtu,
        )

        self.interfaces.on_change(self.gateway.queue_check)
        self.interfaces.on_change(self.bcrpt.update_source_ips)
        self.stream.on_status(self.bcrpt.set_streaming)
        self.relays.on_change(self._relays_changed)

        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []

    def _relays_changed(self) -> None:
        cfg = self.config.get()
        if self.relays.convert_manual(cfg):
            self.config.update(**cfg)
        self.bcrpt.update_server_config()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self.pipelines.refresh()
        self.audio.refresh()
        self.interfaces.poll()
        self.bcrpt.start()
        self._spawn(self._control_loop, "control-loop")
        if self.hotspots.available():
            self._spawn(self._hotspot_loop, "hotspot")
        else:
            LOGGER.info("nmcli not found, hotspot detection disabled")
        self.stream.check_autostart()

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self.threads.append(thread)

    def _control_loop(self) -> None:
        next_gateway = time.monotonic()
        while not self.stop_event.is_set():
            try:
                self.interfaces.poll()
                self.audio.refresh()
                now = time.monotonic()
                if now >= next_gateway:
                    self.gateway.tick(now)
                    next_gateway = now + CHECK_INTERVAL_S
            except Exception:
                LOGGER.exception("Control loop iteration failed")
            self.stop_event.wait(POLL_INTERVAL_S)

    def _hotspot_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.hotspots.refresh()
            except Exception:
                LOGGER.exception("Hotspot detection failed")
            self.stop_event.wait(HOTSPOT_INTERVAL_S)

    def shutdown(self, timeout: float = 15.0) -> None:
        LOGGER.info("Shutting down")
        self.stop_event.set()
        self.stream.shutdown()
        self.bcrpt.stop()
        for thread in self.threads:
            thread.join(timeout=timeout)
        self.resolver.close()

    # ------------------------------------------------------------------
    # collaborator accessors
    # ------------------------------------------------------------------
    def get_network_interfaces(self) -> Dict[str, NetworkInterface]:
        return self.interfaces.get_interfaces()

    def network_view(self) -> Dict[str, Dict[str, object]]:
        return self.interfaces.build_view()

    def set_interface_enabled(self, name: str, ip: str, enabled: bool) -> Optional[str]:
        err = self.interfaces.set_enabled(name, ip, enabled)
        if err:
            self.notifications.send("netif_enable", "error", err, 10)
        return err

    def get_is_streaming(self) -> bool:
        return self.stream.get_is_streaming()

    def start_stream(self, params: Dict[str, Any]) -> bool:
        return self.stream.start(params)

    def stop_stream(self) -> bool:
        return self.stream.stop()

    def set_autostart(self, value: bool) -> bool:
        return self.stream.set_autostart(value)

    def set_bitrate(self, max_br: Any) -> Optional[int]:
        return self.stream.set_bitrate(max_br)

    def get_relay_rtts(self) -> Dict[str, int]:
        return self.bcrpt.relay_rtts()

    def has_low_mtu(self) -> bool:
        return self.bcrpt.has_low_mtu()

    def relays_view(self) -> Dict[str, Dict[str, Any]]:
        return self.relays.build_view(self.bcrpt.relay_rtts())

    def update_relays(self, msg: Any) -> bool:
        return self.relays.update(msg)

    def operator_name(self, network_id: str) -> Optional[str]:
        return self.operators.name(network_id)

    def update_operator_name(self, network_id: str, name: str) -> bool:
        return self.operators.update(network_id, name)
