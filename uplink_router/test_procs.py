import sys
import time

from .procs import SupervisedProcess


def wait_for(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.02)
    return False


class TestSupervisedProcess:
    def test_stderr_lines_and_respawn(self):
        lines = []
        proc = SupervisedProcess(
            "crashy",
            [sys.executable, "-c", "import sys; print('Pipeline stall detected', file=sys.stderr); sys.exit(3)"],
            cooldown=0.05,
            on_stderr=lines.append,
        )
        assert proc.start()
        try:
            assert wait_for(lambda: proc.spawn_count >= 2)
            assert "Pipeline stall detected" in lines
        finally:
            proc.stop()

    def test_stop_prevents_respawn(self):
        proc = SupervisedProcess(
            "sleeper",
            [sys.executable, "-c", "import time; time.sleep(30)"],
            cooldown=0.05,
        )
        proc.start()
        assert wait_for(lambda: proc.running)
        proc.stop()
        assert not proc.running
        time.sleep(0.3)
        assert proc.spawn_count == 1
        assert not proc.running

    def test_stdout_lines(self):
        lines = []
        proc = SupervisedProcess(
            "printer",
            [sys.executable, "-c", "print('{\"rtt\": {}}', flush=True); import time; time.sleep(30)"],
            cooldown=1.0,
            on_stdout=lines.append,
        )
        proc.start()
        try:
            assert wait_for(lambda: lines == ['{"rtt": {}}'])
        finally:
            proc.stop()

    def test_exit_callback_without_auto_restart(self):
        exits = []
        proc = SupervisedProcess(
            "oneshot",
            [sys.executable, "-c", "raise SystemExit(7)"],
            cooldown=0.01,
            on_exit=exits.append,
            auto_restart=False,
        )
        proc.start()
        assert wait_for(lambda: exits == [7])
        time.sleep(0.1)
        assert proc.spawn_count == 1

    def test_spawn_failure(self):
        proc = SupervisedProcess("missing", ["/nonexistent/binary"], cooldown=10, auto_restart=False)
        assert not proc.start()
        assert not proc.running

    def test_signal_without_process(self):
        proc = SupervisedProcess("idle", [sys.executable], cooldown=1)
        assert not proc.signal()
