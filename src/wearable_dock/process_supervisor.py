"""
Every external tool the dock drives (dfu-util, mount, umount, the LittleFS
FUSE helper) goes through here.

Short-lived tools are run to completion and waited for. Long-lived helpers are
registered so that a reaper can collect them once they exit, and so that a
SIGINT/SIGTERM reaching the dock is forwarded to the helper currently in the
foreground.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Optional, Sequence


class ProcessHandle:
    """Thin wrapper around a Popen that is never left unwaited."""

    def __init__(self, proc: subprocess.Popen, argv: Sequence[str]):
        self._proc = proc
        self.argv = list(argv)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    def try_wait(self) -> Optional[int]:
        return self._proc.poll()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._proc.wait(timeout)
        except subprocess.TimeoutExpired:
            return None

    def signal(self, sig: int) -> bool:
        if self._proc.poll() is not None:
            return False
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} {self.argv[0]!r}>"


class ProcessSupervisor:
    def __init__(self, popen=subprocess.Popen):
        self._popen = popen
        self._handles: list[ProcessHandle] = []
        self._lock = threading.Lock()
        self._foreground: Optional[ProcessHandle] = None
        # written by signal handlers only; plain assignment is atomic
        self._quit_signal = 0

    # ------------------------------------------------------------------
    # run-to-completion
    # ------------------------------------------------------------------
    def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> bool:
        """Spawn *argv*, wait for it, succeed only on exit status 0."""
        ok, _ = self._run(argv, timeout, capture=False)
        return ok

    def capture(self, argv: Sequence[str], timeout: Optional[float] = None) -> tuple[bool, str]:
        """Like run() but also return the child's stdout."""
        return self._run(argv, timeout, capture=True)

    def _run(self, argv, timeout, capture):
        logging.debug("exec: %s", " ".join(argv))
        try:
            proc = self._popen(
                list(argv),
                stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            logging.error("Failed to launch %s: %s", argv[0], exc)
            return False, ""

        try:
            out, err = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logging.error("%s timed out after %ss, killing", argv[0], timeout)
            proc.kill()
            proc.communicate()
            return False, ""

        if proc.returncode != 0:
            tail = (err or "").strip().splitlines()
            logging.warning(
                "%s exited with %s%s",
                argv[0],
                proc.returncode,
                f" | {tail[-1]}" if tail else "",
            )
            return False, out or ""
        return True, out or ""

    # ------------------------------------------------------------------
    # long-lived helpers
    # ------------------------------------------------------------------
    def spawn(self, argv: Sequence[str], foreground: bool = False) -> ProcessHandle:
        """Start a helper and track it. Raises OSError if it cannot start."""
        logging.debug("spawn: %s", " ".join(argv))
        proc = self._popen(list(argv), stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        handle = ProcessHandle(proc, argv)
        with self._lock:
            self._handles.append(handle)
        if foreground:
            self._foreground = handle
        logging.info("Started %s (pid %d)", argv[0], handle.pid)
        return handle

    def release(self, handle: ProcessHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
        if self._foreground is handle:
            self._foreground = None

    @property
    def foreground(self) -> Optional[ProcessHandle]:
        return self._foreground

    @property
    def outstanding(self) -> list[ProcessHandle]:
        with self._lock:
            return list(self._handles)

    def reap(self) -> int:
        """Collect every tracked child that has already exited."""
        reaped = 0
        for handle in self.outstanding:
            rc = handle.try_wait()
            if rc is None:
                continue
            logging.debug("Reaped %r (exit=%s)", handle, rc)
            self.release(handle)
            reaped += 1
        return reaped

    def drain(self, timeout: float = 5.0) -> None:
        """Terminate, then kill, whatever is still tracked."""
        for handle in self.outstanding:
            if handle.signal(signal.SIGTERM):
                logging.info("Terminating %r", handle)
            if handle.wait(timeout) is None:
                logging.warning("%r ignored SIGTERM, killing", handle)
                handle.signal(signal.SIGKILL)
                handle.wait(timeout)
            self.release(handle)

    # ------------------------------------------------------------------
    # signals
    # ------------------------------------------------------------------
    @property
    def shutdown_requested(self) -> bool:
        return self._quit_signal != 0

    def request_shutdown(self, sig: int = signal.SIGTERM) -> None:
        self._quit_signal = sig

    def _forward_quit(self, sig, _frame) -> None:
        helper = self._foreground
        if helper is not None:
            try:
                os.kill(helper.pid, sig)
            except ProcessLookupError:
                pass
        self._quit_signal = sig

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._forward_quit)
        signal.signal(signal.SIGTERM, self._forward_quit)


class ChildReaper(threading.Thread):
    """Periodically collects helpers that exited without an explicit wait."""

    def __init__(self, supervisor: ProcessSupervisor, interval: float = 0.5):
        super().__init__(daemon=True, name="ChildReaper")
        self._supervisor = supervisor
        self._interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self._interval):
            try:
                self._supervisor.reap()
            except Exception as e:
                logging.error(f"Reaper error: {e}")

    def stop(self):
        self._stop_event.set()
