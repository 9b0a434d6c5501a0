import argparse
import logging
import os
import sys

from wearable_dock.config_loader import load_settings
from wearable_dock.dock_controller import DockController
from wearable_dock.extractor import PerFileExtractor, WholeTreeExtractor
from wearable_dock.firmware_updater import DetachThenDownload, DirectDownload, FirmwareUpdater
from wearable_dock.logger import configure_logging
from wearable_dock.process_supervisor import ChildReaper, ProcessSupervisor
from wearable_dock.publisher import MqttPublisher
from wearable_dock.retry import PollPolicy
from wearable_dock.status_store import StatusStore
from wearable_dock.storage_mounter import BlockDeviceLocator, KernelMount, LittleFsMount, StorageMounter
from wearable_dock.telemetry import RecordLayout, iter_records
from wearable_dock.usb_monitor import DeviceIdentity, HotplugMonitor, UdevEventSource

SETTINGS_FILE = "/etc/wearable-dock/settings.json"


def setup_logging(debug_mode, settings):
    logging_level = logging.DEBUG if debug_mode else logging.INFO
    log_cfg = settings["logging"]
    return configure_logging(logging_level, log_cfg["dir"], log_cfg["file"])


def build_firmware(settings, supervisor, identity):
    fw = settings["firmware"]
    timeout = fw["timeout"] or None
    if fw["protocol"] == "download":
        protocol = DirectDownload(supervisor, fw["dfu_util"], fw["alt"], fw["transfer_size"], timeout)
    elif fw["protocol"] == "detach":
        protocol = DetachThenDownload(supervisor, identity, fw["dfu_util"], fw["alt"],
                                      lookup_serial=fw["lookup_serial"], settle=float(fw["settle"]),
                                      timeout=timeout)
    else:
        raise ValueError(f"unknown firmware protocol {fw['protocol']!r}")
    return FirmwareUpdater(protocol, fw["dir"], fw["extension"], fw["done_suffix"])


def build_mounter(settings, supervisor):
    st = settings["storage"]
    if st["strategy"] == "littlefs":
        lfs = st["littlefs"]
        strategy = LittleFsMount(supervisor, lfs["binary"], lfs["geometry"], lfs["options"],
                                 mount_policy=PollPolicy.from_settings(st["mount"]))
    elif st["strategy"] == "kernel":
        k = st["kernel"]
        strategy = KernelMount(supervisor, k["fstype"], k["options"], k["command"])
    else:
        raise ValueError(f"unknown storage strategy {st['strategy']!r}")
    return StorageMounter(
        strategy,
        supervisor,
        mount_point=st["mount_point"],
        marker=st["marker"],
        marker_policy=PollPolicy.from_settings(st["marker_wait"]),
        release_policy=PollPolicy.from_settings(st["release"]),
        umount_command=st["umount"],
    )


def build_extractor(settings):
    sessions = settings["sessions"]
    if sessions["extraction"] == "whole_tree":
        return WholeTreeExtractor(wipe_source=sessions["delete_source"])
    if sessions["extraction"] == "per_file":
        return PerFileExtractor(sessions["extension"], delete_source=sessions["delete_source"])
    raise ValueError(f"unknown extraction policy {sessions['extraction']!r}")


def initialize_system(settings, supervisor):
    """Wire every stage of a visit from *settings*."""
    identity = DeviceIdentity(settings["device"]["vendor_id"], settings["device"]["product_id"])
    sessions = settings["sessions"]
    controller = DockController(
        supervisor=supervisor,
        firmware=build_firmware(settings, supervisor, identity),
        locator=BlockDeviceLocator(identity),
        locate_policy=PollPolicy.from_settings(settings["storage"]["locate"]),
        mounter=build_mounter(settings, supervisor),
        extractor=build_extractor(settings),
        publisher=MqttPublisher.from_settings(settings["mqtt"]),
        sessions_root=sessions["root"],
        archive_name=sessions["archive"],
        layout=RecordLayout(settings["telemetry"]["layout"]),
        extension=sessions["extension"],
        abort_on_firmware_failure=settings["firmware"]["abort_on_failure"],
    )
    return identity, controller


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the wearable dock service.")
    parser.add_argument("-debug", action="store_true", help="Enable debug logging level.")
    parser.add_argument("-settings", default=SETTINGS_FILE, help="Path to the JSON settings file.")
    args = parser.parse_args(argv)

    settings = load_settings(args.settings)
    setup_logging(args.debug, settings)

    supervisor = ProcessSupervisor()
    try:
        identity, controller = initialize_system(settings, supervisor)
    except (KeyError, ValueError) as e:
        logging.error(f"Invalid settings: {e}")
        sys.exit(1)

    mon = settings["monitor"]
    source = UdevEventSource(mon["subsystem"], mon["device_type"])
    try:
        source.start()
    except Exception as e:
        logging.error(f"Cannot create udev monitor: {e}")
        sys.exit(1)

    monitor = HotplugMonitor(
        identity,
        controller.handle_device,
        source,
        should_stop=lambda: supervisor.shutdown_requested,
        quiescence=float(mon["quiescence"]),
        poll_timeout=float(mon["poll_timeout"]),
    )

    if settings["status"]["enabled"]:
        status = StatusStore.from_settings(settings["status"])
        monitor.state_changed.subscribe(status.on_state)
        controller.visit_finished.subscribe(status.on_visit)
        status.on_state(monitor.state)

    supervisor.install_signal_handlers()
    reaper = ChildReaper(supervisor, float(mon["reap_interval"]))
    reaper.start()

    try:
        monitor.run()
    finally:
        logging.info("Shutting down components...")
        supervisor.drain()
        reaper.stop()
        reaper.join()


def publish_file(argv=None):
    """Decode one telemetry log and publish its records, outside of any visit."""
    parser = argparse.ArgumentParser(description="Publish one telemetry log to MQTT.")
    parser.add_argument("path", help="Telemetry log, e.g. imu_log.bin")
    parser.add_argument("-debug", action="store_true", help="Enable debug logging level.")
    parser.add_argument("-settings", default=SETTINGS_FILE, help="Path to the JSON settings file.")
    args = parser.parse_args(argv)

    settings = load_settings(args.settings)
    setup_logging(args.debug, settings)

    if not os.path.isfile(args.path):
        logging.error(f"No such telemetry log: {args.path}")
        sys.exit(1)

    layout = RecordLayout(settings["telemetry"]["layout"])
    publisher = MqttPublisher.from_settings(settings["mqtt"])
    try:
        publisher.publish_all(iter_records(args.path, layout))
    except OSError as e:
        logging.error(f"Reading {args.path} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
