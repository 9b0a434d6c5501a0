"""
Locate the wearable's flash as a block device, mount it, wait for the log to
settle, and unmount it again without leaving stale mounts or helpers behind.

Two mount backends are supported:

    littlefs   littlefs-fuse helper kept in the foreground for the whole
               access, terminated and reaped afterwards
    kernel     plain ``mount -t <fstype>`` (first partition preferred)
"""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import psutil
import pyudev

from wearable_dock.errors import ExternalToolFailure, IOFailure, ResourceUnavailable, StageTimeout
from wearable_dock.paths import join
from wearable_dock.process_supervisor import ProcessHandle, ProcessSupervisor
from wearable_dock.retry import PollPolicy
from wearable_dock.usb_monitor import DeviceIdentity, sysattr


def mounted_fstype(mount_point: str | os.PathLike) -> Optional[str]:
    """Filesystem type mounted at *mount_point*, or None when nothing is."""
    target = os.path.realpath(mount_point)
    for part in psutil.disk_partitions(all=True):
        if part.mountpoint == target:
            return part.fstype
    return None


def is_fuse(fstype: Optional[str]) -> bool:
    return bool(fstype) and fstype.split(".", 1)[0] in ("fuse", "fuseblk")


# ----------------------------------------------------------------------
# block device discovery
# ----------------------------------------------------------------------
class BlockDeviceLocator:
    """Find ``/dev/sdX`` whose USB parent carries the wearable's VID:PID."""

    def __init__(self, identity: DeviceIdentity, context: Optional[pyudev.Context] = None):
        self.identity = identity
        self._context = context

    @property
    def context(self) -> pyudev.Context:
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    def scan(self) -> Optional[str]:
        for device in self.context.list_devices(subsystem="block", DEVTYPE="disk"):
            usb = device.find_parent("usb", "usb_device")
            if usb is None:
                continue
            if not self.identity.matches_ids(sysattr(usb, "idVendor"), sysattr(usb, "idProduct")):
                continue
            if device.device_node:
                return device.device_node
        return None

    def find(self, policy: PollPolicy) -> str:
        node = policy.until(self.scan)
        if not node:
            raise ResourceUnavailable(
                f"no block device for {self.identity} within {policy.timeout:.0f}s"
            )
        logging.info("Using block device %s", node)
        return node


# ----------------------------------------------------------------------
# mount backends
# ----------------------------------------------------------------------
@dataclass
class MountHandle:
    mount_point: Path
    device_node: str
    helper: Optional[ProcessHandle] = None
    mounted: bool = False


class LittleFsMount:
    name = "littlefs"

    def __init__(self,
                 supervisor: ProcessSupervisor,
                 binary: str,
                 geometry: dict,
                 options: str = "",
                 mount_policy: Optional[PollPolicy] = None,
                 fstype_of: Callable[[Path], Optional[str]] = mounted_fstype):
        self._supervisor = supervisor
        self.binary = binary
        self.geometry = dict(geometry)
        self.options = options
        self.mount_policy = mount_policy or PollPolicy(interval=0.1, timeout=5.0)
        self._fstype = fstype_of

    def argv(self, device_node: str, mount_point: Path) -> list[str]:
        cmd = [self.binary, "-f"]
        if self.options:
            cmd += ["-o", self.options]
        cmd += [f"--{key}={value}" for key, value in self.geometry.items()]
        cmd += [device_node, str(mount_point)]
        return cmd

    def is_live(self, mount_point: Path) -> bool:
        return is_fuse(self._fstype(mount_point))

    def mount(self, device_node: str, mount_point: Path) -> MountHandle:
        try:
            helper = self._supervisor.spawn(self.argv(device_node, mount_point), foreground=True)
        except OSError as exc:
            raise ExternalToolFailure(self.binary, detail=str(exc)) from exc

        handle = MountHandle(mount_point, device_node, helper=helper)

        def _ready():
            if helper.try_wait() is not None:
                return "exited"
            return "mounted" if self.is_live(mount_point) else None

        state = self.mount_policy.until(_ready)
        if state == "mounted":
            handle.mounted = True
            return handle

        rc = helper.try_wait()
        if rc is None:
            helper.signal(signal.SIGTERM)
            helper.wait(1.0)
        self._supervisor.release(helper)
        if state == "exited":
            raise ExternalToolFailure(self.binary, helper.returncode, "helper exited before mounting")
        raise StageTimeout(f"{self.binary} did not mount {mount_point} within {self.mount_policy.timeout}s")


class KernelMount:
    name = "kernel"

    def __init__(self,
                 supervisor: ProcessSupervisor,
                 fstype: str = "vfat",
                 options: str = "",
                 mount_command: str = "mount",
                 fstype_of: Callable[[Path], Optional[str]] = mounted_fstype,
                 exists: Callable[[str], bool] = os.path.exists):
        self._supervisor = supervisor
        self.fstype = fstype
        self.options = options
        self.mount_command = mount_command
        self._fstype = fstype_of
        self._exists = exists

    def pick_node(self, device_node: str) -> str:
        """Prefer the first partition (sda1 / mmcblk0p1) over the whole disk."""
        for candidate in (device_node + "1", device_node + "p1"):
            if self._exists(candidate):
                return candidate
        return device_node

    def argv(self, node: str, mount_point: Path) -> list[str]:
        cmd = [self.mount_command, "-t", self.fstype]
        if self.options:
            cmd += ["-o", self.options]
        return cmd + [node, str(mount_point)]

    def is_live(self, mount_point: Path) -> bool:
        return self._fstype(mount_point) == self.fstype

    def mount(self, device_node: str, mount_point: Path) -> MountHandle:
        node = self.pick_node(device_node)
        if not self._supervisor.run(self.argv(node, mount_point)):
            raise ExternalToolFailure(self.mount_command, detail=f"{node} -> {mount_point}")
        return MountHandle(mount_point, node, mounted=True)


# ----------------------------------------------------------------------
# StorageMounter
# ----------------------------------------------------------------------
class StorageMounter:
    def __init__(self,
                 strategy,
                 supervisor: ProcessSupervisor,
                 mount_point: str | os.PathLike = "/mnt/wearable",
                 marker: str = "imu_log.bin",
                 marker_policy: Optional[PollPolicy] = None,
                 release_policy: Optional[PollPolicy] = None,
                 umount_command: str = "umount",
                 fstype_of: Callable[[Path], Optional[str]] = mounted_fstype):
        self.strategy = strategy
        self._supervisor = supervisor
        self.mount_point = Path(mount_point)
        self.marker = marker
        self.marker_policy = marker_policy or PollPolicy(interval=0.2, timeout=5.0)
        self.release_policy = release_policy or PollPolicy(interval=0.1, timeout=5.0)
        self.umount_command = umount_command
        self._fstype = fstype_of
        self._active: Optional[MountHandle] = None

    @property
    def active(self) -> Optional[MountHandle]:
        return self._active

    # ---------- preparation -------------------------------------------
    def _wait_for_previous(self) -> None:
        prev = self._active
        if prev is None:
            return
        helper = prev.helper
        if helper is not None and helper.try_wait() is None:
            logging.info("Waiting for previous helper %r to exit", helper)
            if not self.release_policy.until(lambda: helper.try_wait() is not None):
                raise StageTimeout(f"previous helper {helper!r} still running")
            self._supervisor.release(helper)
        self._active = None

    def _clear_stale_mount(self) -> None:
        if self._fstype(self.mount_point) is None:
            return
        logging.warning("Stale mount at %s, forcing lazy unmount", self.mount_point)
        # errors ignored: the directory is re-checked below
        self._supervisor.run([self.umount_command, "-l", str(self.mount_point)])
        if not self.release_policy.until(lambda: self._fstype(self.mount_point) is None):
            raise StageTimeout(f"{self.mount_point} still mounted after lazy unmount")

    def _prepare_mount_point(self) -> None:
        mp = self.mount_point
        try:
            if mp.is_symlink() or (mp.exists() and not mp.is_dir()):
                logging.warning("%s is not a directory, recreating it", mp)
                mp.unlink()
            mp.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"cannot prepare mount point {mp}: {exc}") from exc

    # ---------- public API --------------------------------------------
    def mount(self, device_node: str) -> MountHandle:
        self._wait_for_previous()
        self._clear_stale_mount()
        self._prepare_mount_point()

        logging.info("Mounting %s at %s (%s)", device_node, self.mount_point, self.strategy.name)
        handle = self.strategy.mount(device_node, self.mount_point)
        self._active = handle
        return handle

    def wait_for_marker(self, handle: MountHandle) -> Path:
        """
        Block until the marker is readable.

        A directory counts once it exists. A file counts once its size is
        non-zero and unchanged across two consecutive polls, so we never read
        a log the device firmware is still flushing.
        """
        marker = join(handle.mount_point, self.marker)
        previous = None
        for _ in self.marker_policy.ticks():
            try:
                st = marker.stat()
            except OSError:
                previous = None
                continue
            if marker.is_dir():
                return marker
            if st.st_size > 0 and st.st_size == previous:
                logging.info("%s stable at %d bytes", marker.name, st.st_size)
                return marker
            previous = st.st_size
        raise StageTimeout(f"{self.marker} did not settle within {self.marker_policy.timeout:.0f}s")

    def unmount(self, handle: MountHandle) -> bool:
        mp = handle.mount_point
        fstype = self._fstype(mp)
        if fstype is not None:
            if self.strategy.is_live(mp):
                self._supervisor.run([self.umount_command, str(mp)])
            else:
                logging.warning("%s carries an unexpected %s mount, leaving it alone", mp, fstype)

        helper = handle.helper
        if helper is not None:
            if not self.release_policy.until(lambda: helper.try_wait() is not None):
                logging.warning("%r still alive after umount, sending SIGTERM", helper)
                helper.signal(signal.SIGTERM)
                if not self.release_policy.until(lambda: helper.try_wait() is not None):
                    helper.signal(signal.SIGKILL)
                    helper.wait(1.0)
            self._supervisor.release(helper)

        released = self.release_policy.until(lambda: not self.strategy.is_live(mp))
        handle.mounted = not released
        if released:
            logging.info("Unmounted %s", mp)
            if self._active is handle:
                self._active = None
        else:
            logging.error("%s is still mounted", mp)
        return bool(released)
