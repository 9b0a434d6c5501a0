"""
One device visit, start to finish:

    firmware -> locate -> mount -> marker -> session -> extract -> unmount
             -> decode/publish -> archive

Every stage failure is a ``DockError`` (a stray OSError counts as
``IOFailure``); it ends the current visit only. The
flash is always unmounted once it has been mounted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from wearable_dock.archiver import archive_session
from wearable_dock.errors import DockError, ExternalToolFailure, IOFailure, StageTimeout, VisitInterrupted
from wearable_dock.extractor import ExtractionReport
from wearable_dock.firmware_updater import FirmwareOutcome, FirmwareUpdater
from wearable_dock.paths import join, timestamp_name
from wearable_dock.process_supervisor import ProcessSupervisor
from wearable_dock.publisher import MqttPublisher
from wearable_dock.retry import PollPolicy
from wearable_dock.storage_mounter import BlockDeviceLocator, StorageMounter
from wearable_dock.telemetry import RecordLayout, iter_session
from wearable_dock.usb_monitor import Event, HotplugEvent


@dataclass
class VisitReport:
    firmware: Optional[FirmwareOutcome] = None
    device_node: Optional[str] = None
    session: Optional[Path] = None
    extraction: Optional[ExtractionReport] = None
    unmounted: Optional[bool] = None
    published: int = 0
    archived: Optional[Path] = None
    error: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DockController:
    def __init__(self,
                 supervisor: ProcessSupervisor,
                 firmware: FirmwareUpdater,
                 locator: BlockDeviceLocator,
                 locate_policy: PollPolicy,
                 mounter: StorageMounter,
                 extractor,
                 publisher: MqttPublisher,
                 sessions_root: str | Path,
                 archive_name: str = "archive",
                 layout: RecordLayout = RecordLayout.SHORT,
                 extension: str = ".bin",
                 abort_on_firmware_failure: bool = False):
        self.supervisor = supervisor
        self.firmware = firmware
        self.locator = locator
        self.locate_policy = locate_policy
        self.mounter = mounter
        self.extractor = extractor
        self.publisher = publisher
        self.sessions_root = Path(sessions_root)
        self.archive_root = self.sessions_root / archive_name
        self.layout = layout
        self.extension = extension
        self.abort_on_firmware_failure = abort_on_firmware_failure

        self.visit_finished = Event()

    def _checkpoint(self, stage: str) -> None:
        if self.supervisor.shutdown_requested:
            raise VisitInterrupted(f"shutdown requested before {stage}")

    def _new_session(self) -> Path:
        session = join(self.sessions_root, timestamp_name())
        try:
            self.sessions_root.mkdir(parents=True, exist_ok=True)
            # a leftover session of the same name must not be merged into
            session.mkdir()
        except FileExistsError as exc:
            raise IOFailure(f"session {session} already exists") from exc
        except OSError as exc:
            raise IOFailure(f"cannot create session {session}: {exc}") from exc
        logging.info("Session directory %s", session)
        return session

    def handle_device(self, event: Optional[HotplugEvent] = None) -> VisitReport:
        report = VisitReport()
        try:
            self._visit(report)
        except DockError as exc:
            report.error = str(exc)
            logging.error("Visit aborted: %s", exc)
        except OSError as exc:
            failure = IOFailure(str(exc))
            report.error = str(failure)
            logging.error("Visit aborted: %s", failure)
        except Exception as exc:
            report.error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            report.finished_at = timestamp_name()
            self.visit_finished.emit(report)
        return report

    def _visit(self, report: VisitReport) -> None:
        report.firmware = self.firmware.update()
        if report.firmware is FirmwareOutcome.FAILED and self.abort_on_firmware_failure:
            raise ExternalToolFailure("dfu-util", detail="flash failed, skipping extraction")

        self._checkpoint("locating storage")
        report.device_node = self.locator.find(self.locate_policy)

        self._checkpoint("mounting")
        handle = self.mounter.mount(report.device_node)
        try:
            try:
                self.mounter.wait_for_marker(handle)
            except StageTimeout as exc:
                logging.warning("%s, nothing to extract", exc)
                report.error = str(exc)
                return

            self._checkpoint("extraction")
            report.session = self._new_session()
            report.extraction = self.extractor.extract(handle.mount_point, report.session)
        finally:
            report.unmounted = self.mounter.unmount(handle)

        if not report.extraction.copied:
            logging.warning("No telemetry extracted, nothing to publish")
        else:
            self._checkpoint("publishing")
            records = iter_session(report.session, self.layout, self.extension)
            report.published = self.publisher.publish_all(records)

        self._checkpoint("archiving")
        report.archived = archive_session(report.session, self.archive_root)
