"""
Reflash the wearable with dfu-util when an image is waiting in the watch
directory.

A flashed image is moved to ``<watch>/archive/YYYYMMDD_HHMMSS.bin`` (or
deleted if the move fails) so the same image is never flashed twice. A failed
flash leaves the image where it is for the next visit.
"""

from __future__ import annotations

import logging
import os
import re
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from wearable_dock.errors import PathTooLongError
from wearable_dock.paths import join, timestamp_name
from wearable_dock.process_supervisor import ProcessSupervisor
from wearable_dock.usb_monitor import DeviceIdentity

_SERIAL = re.compile(r'serial="?([^"\s,]+)"?')


class FirmwareOutcome(Enum):
    NO_IMAGE = "no_image"
    FLASHED = "flashed"
    FAILED = "failed"


class DirectDownload:
    """dfu-util -a <alt> -t <xfer> -D <image>"""

    name = "download"

    def __init__(self, supervisor: ProcessSupervisor, dfu_util: str = "dfu-util",
                 alt: str = "1", transfer_size: Optional[int] = 1024,
                 timeout: Optional[float] = None):
        self._supervisor = supervisor
        self.dfu_util = dfu_util
        self.alt = str(alt)
        self.transfer_size = transfer_size
        self.timeout = timeout

    def flash(self, image: Path) -> bool:
        cmd = [self.dfu_util, "-a", self.alt]
        if self.transfer_size:
            cmd += ["-t", str(self.transfer_size)]
        cmd += ["-D", str(image)]
        if not self._supervisor.run(cmd, self.timeout):
            logging.error("DFU download failed")
            return False
        return True


class DetachThenDownload:
    """
    dfu-util [-s serial] -e, settle, dfu-util [-s serial] -a <alt> -D <image>

    With *lookup_serial* the serial is first read from ``dfu-util -l`` so the
    commands target the wearable even if other DFU devices are attached.
    """

    name = "detach"

    def __init__(self, supervisor: ProcessSupervisor, identity: DeviceIdentity,
                 dfu_util: str = "dfu-util", alt: str = "1",
                 lookup_serial: bool = True, settle: float = 2.0,
                 timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self._supervisor = supervisor
        self.identity = identity
        self.dfu_util = dfu_util
        self.alt = str(alt)
        self.lookup_serial = lookup_serial
        self.settle = settle
        self.timeout = timeout
        self._sleep = sleep

    def find_serial(self) -> Optional[str]:
        ok, out = self._supervisor.capture([self.dfu_util, "-l"], self.timeout)
        if not ok:
            return None
        ids = (self.identity.vendor_id.lower(), self.identity.product_id.lower())
        for line in out.splitlines():
            low = line.lower()
            if ids[0] in low and ids[1] in low:
                m = _SERIAL.search(line)
                if m:
                    return m.group(1)
        return None

    def flash(self, image: Path) -> bool:
        target: list[str] = []
        if self.lookup_serial:
            serial = self.find_serial()
            if not serial:
                logging.error("Can't get DFU serial for %s", self.identity)
                return False
            logging.info("DFU serial %s", serial)
            target = ["-s", serial]

        if not self._supervisor.run([self.dfu_util, *target, "-e"], self.timeout):
            logging.error("DFU detach failed")
            return False

        # wait for re-enumeration in DFU mode
        self._sleep(self.settle)

        if not self._supervisor.run([self.dfu_util, *target, "-a", self.alt, "-D", str(image)], self.timeout):
            logging.error("DFU download failed")
            return False
        return True


class FirmwareUpdater:
    def __init__(self, protocol, watch_dir: str | os.PathLike,
                 extension: str = ".bin", done_suffix: str = ".bin.done",
                 archive_name: str = "archive"):
        self.protocol = protocol
        self.watch_dir = Path(watch_dir)
        self.extension = extension
        self.done_suffix = done_suffix
        self.archive_dir = self.watch_dir / archive_name

    def find_image(self) -> Optional[Path]:
        try:
            names = sorted(os.listdir(self.watch_dir))
        except OSError:
            return None
        for name in names:
            if name.endswith(self.done_suffix) or not name.endswith(self.extension):
                continue
            path = self.watch_dir / name
            if path.is_file():
                return path
        return None

    def _archive_target(self, suffix: str) -> Path:
        """Timestamped name in the archive; never one that is already taken."""
        stem = timestamp_name()
        target = join(self.archive_dir, stem + suffix)
        n = 1
        while os.path.lexists(target):
            target = join(self.archive_dir, f"{stem}_{n}{suffix}")
            n += 1
        return target

    def _retire(self, image: Path) -> None:
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            target = self._archive_target(image.suffix)
            os.rename(image, target)
            logging.info("Firmware archived to %s", target)
        except (OSError, PathTooLongError) as exc:
            logging.error("Archiving %s failed (%s), deleting it", image.name, exc)
            try:
                image.unlink()
            except OSError as exc2:
                logging.error("Could not delete %s: %s", image, exc2)

    def update(self) -> FirmwareOutcome:
        image = self.find_image()
        if image is None:
            return FirmwareOutcome.NO_IMAGE

        logging.info("Firmware %s found, running DFU (%s)", image.name, self.protocol.name)
        if not self.protocol.flash(image):
            logging.error("DFU failed, %s kept for the next visit", image.name)
            return FirmwareOutcome.FAILED

        logging.info("DFU OK, waiting for the device to reboot")
        self._retire(image)
        return FirmwareOutcome.FLASHED
