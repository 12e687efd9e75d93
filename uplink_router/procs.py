"""
Child process supervision.

Each ``SupervisedProcess`` owns at most one live child. Output is read by
pump threads and handed to line callbacks; an unexpected exit schedules a
respawn after the cooldown unless the process was stopped.
"""

import contextlib
import logging
import os
import signal
import subprocess
import threading
from typing import Callable, List, Optional

import psutil

LOGGER = logging.getLogger("uplink_router.procs")

TERMINATE_TIMEOUT_S = 5.0

LineCallback = Callable[[str], None]


class SupervisedProcess:
    def __init__(
        self,
        name: str,
        argv: List[str],
        cooldown: float,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
        auto_restart: bool = True,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.name = name
        self.argv = list(argv)
        self.cooldown = cooldown
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_exit = on_exit
        self.auto_restart = auto_restart
        self.popen = popen
        self.lock = threading.Lock()
        self.proc: Optional[subprocess.Popen] = None
        self.restart_timer: Optional[threading.Timer] = None
        self.stopped = True
        self.spawn_count = 0

    @property
    def running(self) -> bool:
        with self.lock:
            return self.proc is not None and self.proc.poll() is None

    @property
    def pid(self) -> Optional[int]:
        with self.lock:
            return self.proc.pid if self.proc is not None else None

    def start(self) -> bool:
        with self.lock:
            self.stopped = False
            if self.restart_timer is not None:
                return False
            if self.proc is not None and self.proc.poll() is None:
                return False
            return self._spawn_locked()

    def _spawn_locked(self) -> bool:
        try:
            proc = self.popen(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if self.on_stdout else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                errors="replace",
            )
        except OSError as exc:
            LOGGER.error("%s: spawn failed: %s", self.name, exc)
            self._schedule_restart_locked()
            return False
        self.proc = proc
        self.spawn_count += 1
        LOGGER.info("%s: started pid %s: %s", self.name, proc.pid, " ".join(map(str, self.argv)))
        if self.on_stdout and proc.stdout is not None:
            threading.Thread(target=self._pump, args=(proc.stdout, self.on_stdout), daemon=True).start()
        threading.Thread(target=self._watch, args=(proc,), daemon=True).start()
        return True

    def _pump(self, stream, callback: LineCallback) -> None:
        with contextlib.suppress(ValueError, OSError):
            for line in stream:
                line = line.rstrip("\r\n")
                if not line:
                    continue
                try:
                    callback(line)
                except Exception:
                    LOGGER.exception("%s: output handler failed", self.name)

    def _watch(self, proc: subprocess.Popen) -> None:
        if proc.stderr is not None:
            self._pump(proc.stderr, self._stderr_line)
        code = proc.wait()
        with self.lock:
            if proc is not self.proc:
                return
            self.proc = None
            stopped = self.stopped
            if not stopped and self.auto_restart:
                self._schedule_restart_locked()
        if stopped:
            LOGGER.info("%s: exited with code %s", self.name, code)
        else:
            LOGGER.warning("%s: exited unexpectedly with code %s", self.name, code)
            if self.on_exit is not None:
                self.on_exit(code)

    def _stderr_line(self, line: str) -> None:
        LOGGER.debug("%s: %s", self.name, line)
        if self.on_stderr is not None:
            self.on_stderr(line)

    def _schedule_restart_locked(self) -> None:
        if self.stopped or not self.auto_restart or self.restart_timer is not None:
            return
        timer = threading.Timer(self.cooldown, self._restart)
        timer.daemon = True
        self.restart_timer = timer
        timer.start()

    def _restart(self) -> None:
        with self.lock:
            self.restart_timer = None
            if self.stopped:
                return
            if self.proc is not None and self.proc.poll() is None:
                return
            self._spawn_locked()

    def halt(self) -> None:
        """Disable respawning without touching the running child."""
        with self.lock:
            self.stopped = True
            if self.restart_timer is not None:
                self.restart_timer.cancel()
                self.restart_timer = None

    def stop(self, timeout: float = TERMINATE_TIMEOUT_S) -> None:
        self.halt()
        with self.lock:
            proc = self.proc
        if proc is None:
            return
        if proc.poll() is None:
            with contextlib.suppress(OSError):
                proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("%s: did not exit after SIGTERM, killing", self.name)
            with contextlib.suppress(OSError):
                proc.kill()
            with contextlib.suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=timeout)
        with self.lock:
            if self.proc is proc:
                self.proc = None

    def signal(self, sig: int = signal.SIGHUP) -> bool:
        with self.lock:
            proc = self.proc
        if proc is None or proc.poll() is not None:
            return False
        try:
            proc.send_signal(sig)
        except OSError as exc:
            LOGGER.error("%s: failed to send signal %s: %s", self.name, sig, exc)
            return False
        return True


# ----------------------------------------------------------------------
# lookup by executable name
# ----------------------------------------------------------------------
def find_processes(exe: str) -> List[psutil.Process]:
    base = os.path.basename(exe)
    found = []
    for proc in psutil.process_iter(["name", "exe"]):
        info = proc.info
        if info.get("name") == base or (info.get("exe") and os.path.basename(info["exe"]) == base):
            found.append(proc)
    return found


def signal_by_name(exe: str, sig: int = signal.SIGHUP) -> int:
    """Signal every process running ``exe``; returns how many were signalled."""
    count = 0
    for proc in find_processes(exe):
        try:
            proc.send_signal(sig)
            count += 1
        except psutil.Error as exc:
            LOGGER.debug("Failed to signal %s (%s): %s", exe, proc.pid, exc)
    return count
