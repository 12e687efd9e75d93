"""
Stream supervision: start/stop of the encoder and the bonding link sender.

The encoder pushes SRT to the link sender on localhost, which spreads it over
every address in the link list. Both are respawned after a cooldown when they
exit on their own. On stop the encoder has to go first; the sender dying
under a live encoder is reported as a connection failure otherwise.
"""

import enum
import logging
import os
import random
import re
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audio import AudioDevices, AudioWaiter
from .dns_cache import DnsCacheResolver
from .interfaces import InterfaceMonitor
from .jsoncache import write_text_file
from .linklist import LinkListBuilder
from .netutil import validate_port
from .notifications import NotificationCenter
from .pipelines import AUDIO_CODECS, Pipeline, PipelineCatalog, build_pipeline_file
from .procs import SupervisedProcess, signal_by_name
from .relays import RelayRegistry
from .settings import ConfigStore

LOGGER = logging.getLogger("uplink_router.streaming")

SENDER_COOLDOWN_S = 0.1
ENCODER_COOLDOWN_S = 2.0
AUTOSTART_RETRY_S = 1.0
ENCODER_HOST = "127.0.0.1"

MIN_BITRATE = 300
MAX_BITRATE = 12000
MIN_DELAY, MAX_DELAY = -2000, 2000
MIN_LATENCY, MAX_LATENCY = 100, 10000

NO_CONNECTIONS_MSG = "Failed to start, no available network connections"


class StreamState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WAITING_FOR_AUDIO = "waiting_for_audio"
    ACTIVE = "active"
    STOPPING = "stopping"


TRANSITIONS = {
    StreamState.STOPPED: {StreamState.STARTING},
    StreamState.STARTING: {StreamState.WAITING_FOR_AUDIO, StreamState.ACTIVE, StreamState.STOPPING, StreamState.STOPPED},
    StreamState.WAITING_FOR_AUDIO: {StreamState.ACTIVE, StreamState.STOPPING, StreamState.STOPPED},
    StreamState.ACTIVE: {StreamState.STOPPING},
    StreamState.STOPPING: {StreamState.STOPPED},
}


# ----------------------------------------------------------------------
# stderr fault classification
# ----------------------------------------------------------------------
class Fault(enum.Enum):
    SRTLA_CONNECT_FAILED = "srtla_connect_failed"
    SRTLA_ALL_FAILED = "srtla_all_failed"
    AUDIO_CAPTURE = "audio_capture"
    VIDEO_CAPTURE = "video_capture"
    PIPELINE_STALL = "pipeline_stall"
    SRT_CONNECT_FAILED = "srt_connect_failed"
    SRT_CONNECTION_LOST = "srt_connection_lost"


SENDER, ENCODER = "sender", "encoder"

FAULT_PATTERNS: List[Tuple[str, "re.Pattern[str]", Fault]] = [
    (SENDER, re.compile(r"Failed to establish any initial connections"), Fault.SRTLA_CONNECT_FAILED),
    (SENDER, re.compile(r"no available connections"), Fault.SRTLA_ALL_FAILED),
    (ENCODER, re.compile(r"gstreamer error from alsasrc0"), Fault.AUDIO_CAPTURE),
    (ENCODER, re.compile(r"gstreamer error from v4l2src0"), Fault.VIDEO_CAPTURE),
    (ENCODER, re.compile(r"Pipeline stall detected"), Fault.PIPELINE_STALL),
    (ENCODER, re.compile(r"Failed to establish an SRT connection(?:: ([\w ]+)\.)?"), Fault.SRT_CONNECT_FAILED),
    (ENCODER, re.compile(r"The SRT connection.+, exiting"), Fault.SRT_CONNECTION_LOST),
]

FAULT_MESSAGES = {
    Fault.SRTLA_CONNECT_FAILED: "Failed to connect to the SRTLA server. Retrying...",
    Fault.SRTLA_ALL_FAILED: "All SRTLA connections failed. Trying to reconnect...",
    Fault.AUDIO_CAPTURE: "Capture card error (audio). Trying to restart...",
    Fault.VIDEO_CAPTURE: "Capture card error (video). Trying to restart...",
    Fault.PIPELINE_STALL: "The input source has stalled. Trying to restart...",
    Fault.SRT_CONNECT_FAILED: "Failed to connect to the SRT server{reason}. Retrying...",
    Fault.SRT_CONNECTION_LOST: "The SRT connection failed. Trying to reconnect...",
}

# Transport faults seen by the encoder are a consequence of a sender fault
SRT_FAULTS = {Fault.SRT_CONNECT_FAILED, Fault.SRT_CONNECTION_LOST}
FAULT_NOTIFICATIONS = {SENDER: "srtla", ENCODER: "encoder"}


def classify(role: str, line: str) -> Optional[Tuple[Fault, str]]:
    for pat_role, pattern, fault in FAULT_PATTERNS:
        if pat_role != role:
            continue
        match = pattern.search(line)
        if match:
            reason = match.group(1) if match.groups() and match.group(1) else None
            msg = FAULT_MESSAGES[fault].format(reason=f" ({reason})" if reason else "")
            return fault, msg
    return None


# ----------------------------------------------------------------------
# validation
# ----------------------------------------------------------------------
class StartError(Exception):
    def __init__(self, msg: str, retry: bool = False):
        super().__init__(msg)
        self.retry = retry


@dataclass(frozen=True)
class StreamTarget:
    pipeline: Pipeline
    addr: str
    port: int
    streamid: str


def _in_range(value: Any, low: int, high: int) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return low <= value <= high


def validate_bitrate(max_br: Any) -> Optional[int]:
    if not _in_range(max_br, MIN_BITRATE, MAX_BITRATE):
        return None
    return int(max_br)


class StreamSupervisor:
    def __init__(
        self,
        setup: Dict[str, Any],
        config: ConfigStore,
        notifications: NotificationCenter,
        interfaces: InterfaceMonitor,
        linklist: LinkListBuilder,
        resolver: DnsCacheResolver,
        pipelines: PipelineCatalog,
        audio: AudioDevices,
        relays: RelayRegistry,
        queue_gateway_check: Callable[[], None] = lambda: None,
        low_mtu: Callable[[], bool] = lambda: False,
        audio_waiter: Optional[AudioWaiter] = None,
        popen: Optional[Callable[..., Any]] = None,
        signal_exe: Callable[[str, int], int] = signal_by_name,
        executor: Optional[Callable[[Callable[[], None]], None]] = None,
        scheduler: Optional[Callable[[float, Callable[[], None]], None]] = None,
    ):
        self.setup = setup
        self.config = config
        self.notifications = notifications
        self.interfaces = interfaces
        self.linklist = linklist
        self.resolver = resolver
        self.pipelines = pipelines
        self.audio = audio
        self.relays = relays
        self.queue_gateway_check = queue_gateway_check
        self.low_mtu = low_mtu
        self.audio_waiter = audio_waiter or AudioWaiter(audio, notifications)
        self.popen = popen
        self.signal_exe = signal_exe
        self.executor = executor or self._thread_executor
        self.scheduler = scheduler or self._timer_scheduler

        self._lock = threading.RLock()
        self._state = StreamState.STOPPED
        self._cancel = threading.Event()
        self._procs: List[SupervisedProcess] = []
        self._remove_listener: Optional[Callable[[], None]] = None
        self._streaming_reported = False
        self._status_listeners: List[Callable[[bool], None]] = []

    @staticmethod
    def _thread_executor(fn: Callable[[], None]) -> None:
        threading.Thread(target=fn, daemon=True).start()

    @staticmethod
    def _timer_scheduler(delay: float, fn: Callable[[], None]) -> None:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def state(self) -> StreamState:
        with self._lock:
            return self._state

    def _transition(self, new: StreamState) -> bool:
        with self._lock:
            if new not in TRANSITIONS[self._state]:
                LOGGER.error("BUG?: illegal stream state transition %s -> %s", self._state.value, new.value)
                return False
            LOGGER.debug("stream state %s -> %s", self._state.value, new.value)
            self._state = new
            return True

    def get_is_streaming(self) -> bool:
        return self.state != StreamState.STOPPED

    def on_status(self, listener: Callable[[bool], None]) -> None:
        self._status_listeners.append(listener)

    def _report_streaming(self, streaming: bool) -> None:
        with self._lock:
            if streaming == self._streaming_reported:
                return
            self._streaming_reported = streaming
        for listener in list(self._status_listeners):
            try:
                listener(streaming)
            except Exception:
                LOGGER.exception("Stream status listener failed")

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------
    def _validate(self, params: Dict[str, Any]) -> StreamTarget:
        if not isinstance(params, dict):
            raise StartError("Invalid config")
        if not _in_range(params.get("delay"), MIN_DELAY, MAX_DELAY):
            raise StartError("Invalid audio delay")

        pid = params.get("pipeline")
        if not isinstance(pid, str):
            raise StartError("Invalid pipeline")
        pipeline = self.pipelines.get(pid)
        if pipeline is None:
            raise StartError("Pipeline not found")

        if pipeline.acodec:
            if not isinstance(params.get("acodec"), str):
                raise StartError("Invalid audio codec")
            if params["acodec"] not in AUDIO_CODECS:
                raise StartError("Audio codec not found")

        if pipeline.asrc:
            asrc = params.get("asrc")
            if not isinstance(asrc, str):
                raise StartError("Invalid audio source")
            if asrc != self.config.get().get("asrc") and self.audio.lookup(asrc) is None:
                raise StartError("Selected audio source not found")

        if validate_bitrate(params.get("max_br")) is None:
            raise StartError(f"Invalid max bitrate: '{params.get('max_br')}'")
        if not _in_range(params.get("srt_latency"), MIN_LATENCY, MAX_LATENCY):
            raise StartError("Invalid SRT latency")

        if params.get("relay_server"):
            server = self.relays.server(params["relay_server"])
            if server is None:
                raise StartError("Invalid relay server")
            addr, port = server["addr"], server["port"]
        else:
            if not isinstance(params.get("srtla_addr"), str) or not params["srtla_addr"].strip():
                raise StartError("Invalid SRTLA address")
            addr = params["srtla_addr"].strip()
            port = validate_port(params.get("srtla_port"))
            if port is None:
                raise StartError(f"Invalid SRTLA port '{params.get('srtla_port')}'")

        if params.get("relay_server") and params.get("relay_account"):
            account = self.relays.account(params["relay_account"])
            if account is None:
                raise StartError("Invalid relay account specified!")
            streamid = account["ingest_key"]
        else:
            if not isinstance(params.get("srt_streamid"), str):
                raise StartError("SRT streamid not specified")
            streamid = params["srt_streamid"]

        return StreamTarget(pipeline, addr, port, streamid)

    def _resolve_endpoint(self, addr: str) -> str:
        result = self.resolver.resolve(addr, "a")
        if result is None or not result.addrs:
            self.queue_gateway_check()
            raise StartError(f"Failed to resolve SRTLA addr {addr}", retry=True)
        if result.from_cache:
            # the route may be what broke DNS
            self.queue_gateway_check()
            return random.choice(result.addrs)
        self.resolver.validate(addr)
        return addr

    def _merged_config(self, params: Dict[str, Any], pipeline: Pipeline) -> Dict[str, Any]:
        cfg = self.config.get()
        for key in ("delay", "pipeline", "max_br", "srt_latency"):
            cfg[key] = params[key]
        cfg["bitrate_overlay"] = bool(params.get("bitrate_overlay"))
        if pipeline.acodec and params.get("acodec"):
            cfg["acodec"] = params["acodec"]
        if pipeline.asrc and params.get("asrc"):
            cfg["asrc"] = params["asrc"]

        if params.get("relay_server"):
            cfg.update(relay_server=params["relay_server"], srtla_addr=None, srtla_port=None)
        else:
            if params.get("srtla_addr") and params.get("srtla_port"):
                cfg.update(srtla_addr=params["srtla_addr"].strip(), srtla_port=validate_port(params["srtla_port"]))
            cfg["relay_server"] = None
        if params.get("relay_account") and params.get("relay_server"):
            cfg.update(relay_account=params["relay_account"], srt_streamid=None)
        else:
            if params.get("srt_streamid"):
                cfg["srt_streamid"] = params["srt_streamid"]
            cfg["relay_account"] = None
        if not params.get("relay_server") or not params.get("relay_account"):
            self.relays.convert_manual(cfg)
        return cfg

    def write_bitrate_file(self, max_br: int) -> bool:
        return write_text_file(self.setup["bitrate_file"], f"{MIN_BITRATE * 1000}\n{max_br * 1000}\n")

    def start(self, params: Dict[str, Any]) -> bool:
        """Validate and launch a stream; False and one notification on failure."""
        try:
            return self._start(params, persist=True)
        except StartError as exc:
            self._start_error(str(exc))
            return False

    def _start(self, params: Dict[str, Any], persist: bool) -> bool:
        with self._lock:
            if self._state != StreamState.STOPPED:
                LOGGER.info("start: ignored, the stream is %s", self._state.value)
                return False
            self._transition(StreamState.STARTING)
            self._cancel = threading.Event()
            cancel = self._cancel
        try:
            target = self._validate(params)
            addr = self._resolve_endpoint(target.addr)
            ips = self.linklist.build(addr)
            if not ips:
                raise StartError(NO_CONNECTIONS_MSG, retry=True)
        except StartError:
            with self._lock:
                if self._state == StreamState.STARTING:
                    self._transition(StreamState.STOPPED)
            raise

        # stop() may have run while the endpoint was resolving
        with self._lock:
            if cancel.is_set() or self._state != StreamState.STARTING:
                LOGGER.info("start: cancelled before launch")
                return False
            if persist:
                cfg = self.config.update(**self._merged_config(params, target.pipeline))
            else:
                cfg = self.config.get()
            self._report_streaming(True)
            if self._remove_listener is not None:
                self._remove_listener()
            self._remove_listener = self.interfaces.on_change(lambda: self._refresh_links(addr))

        asrc = cfg.get("asrc")
        audio_id = self.audio.card_id(asrc) if asrc else None
        pipeline_file = build_pipeline_file(
            target.pipeline,
            Path(self.setup["pipeline_tmp"]),
            audio_id,
            cfg.get("acodec"),
            remove_overlay=not cfg.get("bitrate_overlay"),
        )
        if (
            pipeline_file is None
            or not self.linklist.write(ips)
            or not self.write_bitrate_file(int(cfg["max_br"]))
        ):
            self._abort_start()
            raise StartError("Failed to write the stream configuration files")

        wait_audio = bool(target.pipeline.asrc and asrc and self.audio.lookup(asrc) is None)
        self.executor(lambda: self._launch(target, addr, str(pipeline_file), wait_audio, cancel))
        return True

    def _abort_start(self) -> None:
        with self._lock:
            if self._remove_listener is not None:
                self._remove_listener()
                self._remove_listener = None
            if self._state == StreamState.STARTING:
                self._transition(StreamState.STOPPED)
        self._report_streaming(False)

    def _start_error(self, msg: str) -> None:
        LOGGER.warning("start failed: %s", msg)
        self.notifications.send("start_error", "error", msg, 10)

    def _launch(self, target: StreamTarget, addr: str, pipeline_file: str, wait_audio: bool, cancel: threading.Event) -> None:
        if wait_audio:
            if not self._transition_if(StreamState.STARTING, StreamState.WAITING_FOR_AUDIO, cancel):
                return
            asrc = self.config.get().get("asrc")
            if self.audio_waiter.wait(asrc, cancel) is None:
                return

        port = int(self.setup.get("sender_port", 9000))
        sender = SupervisedProcess(
            SENDER,
            [self.setup["sender_exec"], str(port), addr, str(target.port), str(self.setup["ips_file"])],
            SENDER_COOLDOWN_S,
            on_stderr=lambda line: self._on_fault_line(SENDER, line),
            **self._popen_kwargs(),
        )
        args = [
            self.setup["encoder_exec"], pipeline_file, ENCODER_HOST, str(port),
            "-d", str(int(self.config.get()["delay"])),
            "-b", str(self.setup["bitrate_file"]),
            "-l", str(int(self.config.get()["srt_latency"])),
        ]
        if target.streamid:
            args += ["-s", target.streamid]
        if self.low_mtu():
            args.append("-r")
        encoder = SupervisedProcess(
            ENCODER,
            args,
            ENCODER_COOLDOWN_S,
            on_stderr=lambda line: self._on_fault_line(ENCODER, line),
            **self._popen_kwargs(),
        )
        with self._lock:
            if cancel.is_set() or self._state not in (StreamState.STARTING, StreamState.WAITING_FOR_AUDIO):
                return
            self._procs = [sender, encoder]
            sender.start()
            encoder.start()
            self._transition(StreamState.ACTIVE)
        LOGGER.info("Stream started to %s:%s", addr, target.port)

    def _popen_kwargs(self) -> Dict[str, Any]:
        return {"popen": self.popen} if self.popen is not None else {}

    def _transition_if(self, expected: StreamState, new: StreamState, cancel: threading.Event) -> bool:
        with self._lock:
            if cancel.is_set() or self._state != expected:
                return False
            return self._transition(new)

    def _on_fault_line(self, role: str, line: str) -> None:
        found = classify(role, line)
        if found is None:
            return
        fault, msg = found
        if fault in SRT_FAULTS and self.notifications.exists("srtla"):
            return
        LOGGER.debug("%s fault %s", role, fault.value)
        self.notifications.send(FAULT_NOTIFICATIONS[role], "error", msg, 5, persistent=True, dismissable=False)

    def _refresh_links(self, addr: str) -> None:
        if self.state not in (StreamState.STARTING, StreamState.WAITING_FOR_AUDIO, StreamState.ACTIVE):
            return
        if not self.linklist.rebuild(addr):
            self.notifications.send(
                "no_connections",
                "warning",
                "No available network connections, keeping the previous link list",
                10,
            )

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------
    def stop(self, wait: bool = False) -> bool:
        with self._lock:
            if self._state in (StreamState.STOPPED, StreamState.STOPPING):
                return False
            self._cancel.set()
            if self._remove_listener is not None:
                self._remove_listener()
                self._remove_listener = None
            procs = list(self._procs)
            if self._state == StreamState.WAITING_FOR_AUDIO and not procs:
                self._transition(StreamState.STOPPED)
                stopped = True
            else:
                if self._state == StreamState.WAITING_FOR_AUDIO:
                    LOGGER.error("stop: BUG?: found both an audio wait and running processes")
                self._transition(StreamState.STOPPING)
                stopped = False
        if stopped:
            LOGGER.info("stop: cancelled while waiting for the audio input")
            self._report_streaming(False)
            return True
        if wait:
            self._teardown(procs)
        else:
            self.executor(lambda: self._teardown(procs))
        return True

    def _teardown(self, procs: List[SupervisedProcess]) -> None:
        for proc in procs:
            proc.halt()
        encoder_name = os.path.basename(self.setup["encoder_exec"])
        encoders = [p for p in procs if p.argv and os.path.basename(p.argv[0]) == encoder_name]
        if encoders:
            for proc in encoders:
                proc.stop()
            LOGGER.info("stop: encoder terminated")
        elif not procs:
            LOGGER.info("stop: cancelled before any process was launched")
        else:
            LOGGER.error("stop: BUG?: encoder not found, terminating all processes")
        for proc in procs:
            if proc not in encoders:
                proc.stop()
        with self._lock:
            self._procs = []
            self._transition(StreamState.STOPPED)
        LOGGER.info("stop: all processes terminated")
        self._report_streaming(False)

    def shutdown(self) -> None:
        self.stop(wait=True)

    # ------------------------------------------------------------------
    # settings
    # ------------------------------------------------------------------
    def set_bitrate(self, max_br: Any) -> Optional[int]:
        value = validate_bitrate(max_br)
        if value is None:
            return None
        self.config.update(max_br=value)
        self.write_bitrate_file(value)
        self.signal_exe(self.setup["encoder_exec"], signal.SIGHUP)
        return value

    def set_autostart(self, value: Any) -> bool:
        if not isinstance(value, bool):
            return False
        self.config.update(autostart=value)
        return True

    def check_autostart(self) -> bool:
        """At boot: autostart unless this is a restart after a crash or an update."""
        marker = Path(self.setup["boot_marker"])
        autostart = bool(self.config.get().get("autostart")) and not marker.exists()
        if not write_text_file(marker, ""):
            LOGGER.error("Failed to write the boot marker %s", marker)
        if autostart:
            self.executor(self.autostart)
        return autostart

    def autostart(self) -> None:
        if self.state != StreamState.STOPPED:
            LOGGER.info("autostart aborted")
            return
        # no link yet, the modems may still be coming up
        if not self.linklist.build():
            self.scheduler(AUTOSTART_RETRY_S, self.autostart)
            return
        try:
            if not self._start(self.config.get(), persist=False):
                return
        except StartError as exc:
            if exc.retry:
                LOGGER.info("autostart failed, but will retry: %s", exc)
                self.scheduler(AUTOSTART_RETRY_S, self.autostart)
            else:
                LOGGER.warning("autostart failed: %s", exc)
            return
        LOGGER.info("autostart complete")
