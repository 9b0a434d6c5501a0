"""Fakes shared by the test modules."""

import signal
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from wearable_dock.retry import PollPolicy  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def fast_policy(interval=0.1, timeout=1.0, clock=None) -> PollPolicy:
    clock = clock or FakeClock()
    return PollPolicy(interval=interval, timeout=timeout, clock=clock, sleep=clock.sleep)


class FakeHandle:
    def __init__(self, argv=("helper",), pid=4242, returncode=None):
        self.argv = list(argv)
        self.pid = pid
        self.returncode = returncode
        self.signals: list[int] = []

    @property
    def running(self):
        return self.returncode is None

    def try_wait(self):
        return self.returncode

    def wait(self, timeout=None):
        return self.returncode

    def signal(self, sig):
        self.signals.append(sig)
        if self.returncode is not None:
            return False
        if sig in (signal.SIGTERM, signal.SIGKILL):
            self.returncode = -sig
        return True


class FakeSupervisor:
    """
    Records every command. ``results`` maps argv[0] to the value run() returns
    (default True); ``on_run`` is called with each argv.
    """

    def __init__(self, results=None, capture_output="", on_run=None, helper=None):
        self.results = results or {}
        self.capture_output = capture_output
        self.on_run = on_run
        self.helper = helper
        self.calls: list[list[str]] = []
        self.spawned: list[list[str]] = []
        self.released: list = []
        self.shutdown_requested = False

    def run(self, argv, timeout=None):
        argv = list(argv)
        self.calls.append(argv)
        if self.on_run:
            self.on_run(argv)
        return self.results.get(argv[0], True)

    def capture(self, argv, timeout=None):
        ok = self.run(argv, timeout)
        return ok, self.capture_output if ok else ""

    def spawn(self, argv, foreground=False):
        self.spawned.append(list(argv))
        if self.helper is None:
            self.helper = FakeHandle(argv)
        return self.helper

    def release(self, handle):
        self.released.append(handle)


class FakeFstype:
    """Stand-in for mounted_fstype(); ``value`` is what it reports."""

    def __init__(self, value=None):
        self.value = value
        self.calls = 0

    def __call__(self, mount_point):
        self.calls += 1
        return self.value
