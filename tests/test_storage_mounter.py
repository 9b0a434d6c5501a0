import signal
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from helpers import FakeHandle, FakeFstype, FakeSupervisor, fast_policy

from wearable_dock.errors import ExternalToolFailure, ResourceUnavailable, StageTimeout
from wearable_dock.storage_mounter import (
    BlockDeviceLocator,
    KernelMount,
    LittleFsMount,
    MountHandle,
    StorageMounter,
    is_fuse,
    mounted_fstype,
)
from wearable_dock.usb_monitor import DeviceIdentity

GEOMETRY = {"block_count": 1760, "block_size": 4096}


class FstypeTests(unittest.TestCase):
    def test_fuse_detection(self):
        self.assertTrue(is_fuse("fuse"))
        self.assertTrue(is_fuse("fuse.lfs"))
        self.assertFalse(is_fuse("vfat"))
        self.assertFalse(is_fuse(None))

    def test_mounted_fstype_reads_partitions(self):
        parts = [mock.Mock(mountpoint="/", fstype="ext4"), mock.Mock(mountpoint="/mnt/wearable", fstype="fuse.lfs")]
        with mock.patch("wearable_dock.storage_mounter.psutil.disk_partitions", return_value=parts), \
             mock.patch("wearable_dock.storage_mounter.os.path.realpath", side_effect=lambda p: str(p)):
            self.assertEqual(mounted_fstype("/mnt/wearable"), "fuse.lfs")
            self.assertIsNone(mounted_fstype("/mnt/other"))


class FakeUdevDevice:
    def __init__(self, node, vendor=None, product=None):
        self.device_node = node
        self._usb = None
        if vendor:
            self._usb = mock.Mock()
            self._usb.attributes.get.side_effect = {"idVendor": vendor, "idProduct": product}.get

    def find_parent(self, subsystem, device_type=None):
        return self._usb


class LocatorTests(unittest.TestCase):
    def test_finds_wearable_disk(self):
        context = mock.Mock()
        context.list_devices.return_value = [
            FakeUdevDevice("/dev/mmcblk0"),
            FakeUdevDevice("/dev/sda", b"1234", b"0001"),
            FakeUdevDevice("/dev/sdb", b"0483", b"5740"),
        ]
        locator = BlockDeviceLocator(DeviceIdentity("0483", "5740"), context=context)

        self.assertEqual(locator.find(fast_policy()), "/dev/sdb")
        context.list_devices.assert_called_with(subsystem="block", DEVTYPE="disk")

    def test_gives_up_after_policy(self):
        context = mock.Mock()
        context.list_devices.return_value = []
        locator = BlockDeviceLocator(DeviceIdentity("0483", "5740"), context=context)

        with self.assertRaises(ResourceUnavailable):
            locator.find(fast_policy(interval=0.25, timeout=1.0))
        self.assertEqual(context.list_devices.call_count, 5)


class MountStrategyTests(unittest.TestCase):
    def test_littlefs_argv(self):
        lfs = LittleFsMount(FakeSupervisor(), "/usr/local/bin/lfs", GEOMETRY, options="ro")
        self.assertEqual(
            lfs.argv("/dev/sda", Path("/mnt/wearable")),
            ["/usr/local/bin/lfs", "-f", "-o", "ro", "--block_count=1760", "--block_size=4096",
             "/dev/sda", "/mnt/wearable"],
        )

    def test_littlefs_mount_waits_for_fuse(self):
        answers = iter([None, None, "fuse.lfs"])
        supervisor = FakeSupervisor()
        lfs = LittleFsMount(supervisor, "lfs", GEOMETRY, mount_policy=fast_policy(),
                            fstype_of=lambda mp: next(answers))

        handle = lfs.mount("/dev/sda", Path("/mnt/wearable"))

        self.assertTrue(handle.mounted)
        self.assertIs(handle.helper, supervisor.helper)
        self.assertEqual(len(supervisor.spawned), 1)

    def test_littlefs_helper_exit_is_a_tool_failure(self):
        supervisor = FakeSupervisor(helper=FakeHandle(returncode=1))
        lfs = LittleFsMount(supervisor, "lfs", GEOMETRY, mount_policy=fast_policy(), fstype_of=FakeFstype())

        with self.assertRaises(ExternalToolFailure) as ctx:
            lfs.mount("/dev/sda", Path("/mnt/wearable"))
        self.assertEqual(ctx.exception.returncode, 1)
        self.assertEqual(supervisor.released, [supervisor.helper])

    def test_littlefs_mount_timeout_terminates_helper(self):
        supervisor = FakeSupervisor()
        lfs = LittleFsMount(supervisor, "lfs", GEOMETRY, mount_policy=fast_policy(), fstype_of=FakeFstype())

        with self.assertRaises(StageTimeout):
            lfs.mount("/dev/sda", Path("/mnt/wearable"))
        self.assertEqual(supervisor.helper.signals, [signal.SIGTERM])
        self.assertEqual(supervisor.released, [supervisor.helper])

    def test_kernel_prefers_first_partition(self):
        supervisor = FakeSupervisor()
        km = KernelMount(supervisor, "vfat", options="ro", exists=lambda p: p == "/dev/sda1")

        handle = km.mount("/dev/sda", Path("/mnt/wearable"))

        self.assertEqual(supervisor.calls, [["mount", "-t", "vfat", "-o", "ro", "/dev/sda1", "/mnt/wearable"]])
        self.assertEqual(handle.device_node, "/dev/sda1")

    def test_kernel_mount_failure(self):
        km = KernelMount(FakeSupervisor(results={"mount": False}), exists=lambda p: False)
        with self.assertRaises(ExternalToolFailure):
            km.mount("/dev/sda", Path("/mnt/wearable"))


class StorageMounterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.mount_point = Path(self.tmp.name) / "wearable"
        self.check = FakeFstype()
        self.supervisor = FakeSupervisor()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _mounter(self, strategy=None):
        strategy = strategy or KernelMount(self.supervisor, exists=lambda p: False, fstype_of=self.check)
        return StorageMounter(
            strategy,
            self.supervisor,
            mount_point=self.mount_point,
            marker="imu_log.bin",
            marker_policy=fast_policy(interval=0.2, timeout=5.0),
            release_policy=fast_policy(interval=0.1, timeout=1.0),
            fstype_of=self.check,
        )

    def test_mount_point_file_is_replaced_by_directory(self):
        self.mount_point.write_text("junk")

        with self.assertLogs(level="WARNING"):
            self._mounter().mount("/dev/sda")

        self.assertTrue(self.mount_point.is_dir())
        self.assertEqual(self.supervisor.calls, [["mount", "-t", "vfat", "/dev/sda", str(self.mount_point)]])

    def test_stale_mount_is_lazily_unmounted(self):
        self.check.value = "fuse.lfs"

        def umount(argv):
            if argv[0] == "umount":
                self.check.value = None

        self.supervisor.on_run = umount
        with self.assertLogs(level="WARNING"):
            self._mounter().mount("/dev/sda")

        self.assertEqual(self.supervisor.calls[0], ["umount", "-l", str(self.mount_point)])

    def test_stale_mount_that_will_not_go_away(self):
        self.check.value = "fuse.lfs"
        with self.assertRaises(StageTimeout), self.assertLogs(level="WARNING"):
            self._mounter().mount("/dev/sda")

    def test_marker_file_must_be_stable(self):
        self.mount_point.mkdir()
        (self.mount_point / "imu_log.bin").write_bytes(b"x" * 32)
        handle = MountHandle(self.mount_point, "/dev/sda", mounted=True)

        self.assertEqual(self._mounter().wait_for_marker(handle), self.mount_point / "imu_log.bin")

    def test_marker_directory_is_ready_on_sight(self):
        (self.mount_point / "imu_log.bin").mkdir(parents=True)
        handle = MountHandle(self.mount_point, "/dev/sda", mounted=True)
        self.assertTrue(self._mounter().wait_for_marker(handle).is_dir())

    def test_missing_or_empty_marker_times_out(self):
        self.mount_point.mkdir()
        handle = MountHandle(self.mount_point, "/dev/sda", mounted=True)
        with self.assertRaises(StageTimeout):
            self._mounter().wait_for_marker(handle)

        (self.mount_point / "imu_log.bin").write_bytes(b"")
        with self.assertRaises(StageTimeout):
            self._mounter().wait_for_marker(handle)

    def test_unmount_littlefs_reaps_helper(self):
        helper = FakeHandle(["lfs"])
        self.check.value = "fuse.lfs"

        def umount(argv):
            if argv[0] == "umount":
                self.check.value = None
                helper.returncode = 0

        self.supervisor.on_run = umount
        lfs = LittleFsMount(self.supervisor, "lfs", GEOMETRY, fstype_of=self.check)
        mounter = self._mounter(lfs)
        handle = MountHandle(self.mount_point, "/dev/sda", helper=helper, mounted=True)

        self.assertTrue(mounter.unmount(handle))
        self.assertFalse(handle.mounted)
        self.assertEqual(self.supervisor.calls, [["umount", str(self.mount_point)]])
        self.assertEqual(self.supervisor.released, [helper])
        self.assertEqual(helper.signals, [])

    def test_unmount_signals_a_lingering_helper(self):
        helper = FakeHandle(["lfs"])
        lfs = LittleFsMount(self.supervisor, "lfs", GEOMETRY, fstype_of=self.check)
        handle = MountHandle(self.mount_point, "/dev/sda", helper=helper, mounted=True)

        with self.assertLogs(level="WARNING"):
            self.assertTrue(self._mounter(lfs).unmount(handle))
        self.assertEqual(helper.signals, [signal.SIGTERM])
        self.assertEqual(self.supervisor.released, [helper])

    def test_unmount_leaves_foreign_filesystem_alone(self):
        self.check.value = "ext4"
        handle = MountHandle(self.mount_point, "/dev/sda1", mounted=True)

        with self.assertLogs(level="WARNING"):
            self._mounter().unmount(handle)
        self.assertEqual(self.supervisor.calls, [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
