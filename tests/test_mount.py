"""Tests for storage/mount.py - mount helpers and the working tree.

This test suite covers:
- mount(8) and umount(8) argument lists
- Reverse-order release of directories, mounts and callbacks
- Nested scopes released at block exit
- Tolerant cleanup (already unmounted, non-empty, failing callbacks)
- Final sweep of leftover mounts
- Signal handlers raising SessionInterrupted
"""

import os
import signal
from unittest.mock import Mock, patch

import pytest

from persistusb.storage import mount
from persistusb.storage.exceptions import MountError, SessionInterrupted


@pytest.fixture
def mount_calls():
    """Patch mount/umount and track which targets are mounted."""
    mounted = set()
    log = []

    def fake_run(command, error=None, check=True, **kwargs):
        log.append(command)
        if command[0] == "mount":
            mounted.add(command[-1])
        elif command[0] == "umount":
            mounted.discard(command[-1])
        return Mock(ok=True, returncode=0, stdout="", stderr="")

    with patch("persistusb.storage.mount.run_command", side_effect=fake_run), patch(
        "persistusb.storage.mount.is_mountpoint_active",
        side_effect=lambda target: str(target) in mounted,
    ), patch(
        "persistusb.storage.mount.active_mountpoints_under",
        side_effect=lambda root: sorted(mounted, key=lambda mp: mp.count(os.sep), reverse=True),
    ):
        yield log, mounted


class TestMountHelpers:
    @patch("persistusb.storage.mount.run_command")
    def test_mount_device_arguments(self, mock_run):
        mount.mount_device("overlay", "/w/overlay", fstype="overlay", options="lowerdir=/a")

        mock_run.assert_called_once_with(
            ["mount", "-t", "overlay", "-o", "lowerdir=/a", "overlay", "/w/overlay"],
            error=MountError,
        )

    @patch("persistusb.storage.mount.run_command")
    def test_mount_device_plain(self, mock_run):
        mount.mount_device("/dev/sdb1", "/w/live")

        assert mock_run.call_args.args[0] == ["mount", "/dev/sdb1", "/w/live"]

    @patch("persistusb.storage.mount.run_command")
    def test_unmount_failure_is_reported(self, mock_run):
        mock_run.return_value = Mock(ok=False, returncode=32, stderr="target is busy")

        assert mount.unmount_path("/w/live") is False


class TestWorkingTree:
    """Tests for WorkingTree acquisition and release."""

    def test_root_created_and_removed(self, tmp_path, mount_calls):
        with mount.WorkingTree(tmp_path) as tree:
            root = tree.root
            assert root.is_dir()
            assert root.name.startswith("persistusb.")

        assert not root.exists()

    def test_release_in_reverse_order(self, tmp_path, mount_calls):
        log, mounted = mount_calls
        order = []

        with mount.WorkingTree(tmp_path) as tree:
            tree.mount("/dev/sdb1", "live")
            tree.register_callback(lambda: order.append("close"), "close mapping")
            tree.mount("/dev/mapper/persistcrypt", "persistence")

        umounts = [command[-1] for command in log if command[0] == "umount"]
        assert umounts == [str(tree.root / "persistence"), str(tree.root / "live")]
        assert order == ["close"]
        assert not mounted

    def test_callback_runs_between_unmounts(self, tmp_path, mount_calls):
        log, _ = mount_calls
        events = []

        with mount.WorkingTree(tmp_path) as tree:
            tree.mount("/dev/sdb1", "live")
            tree.register_callback(lambda: events.append(len(log)))
            tree.mount("/dev/sdb3", "persistence")

        # persistence unmounted first, then the callback, then live
        assert log[events[0] - 1][0] == "umount"
        assert log[events[0] - 1][-1].endswith("persistence")

    def test_cleanup_on_exception(self, tmp_path, mount_calls):
        _, mounted = mount_calls

        with pytest.raises(MountError):
            with mount.WorkingTree(tmp_path) as tree:
                tree.mount("/dev/sdb1", "live")
                raise MountError("copy failed")

        assert not mounted
        assert not tree.root.exists()

    def test_scope_releases_inner_resources(self, tmp_path, mount_calls):
        _, mounted = mount_calls

        with mount.WorkingTree(tmp_path) as tree:
            tree.mount("/dev/sdb1", "live")
            with tree.scope():
                tree.mount("/w/rootfs.sfs", "rootfs", options="ro,loop")
                assert str(tree.root / "rootfs") in mounted
            assert mounted == {str(tree.root / "live")}
            assert not (tree.root / "rootfs").exists()

    def test_already_unmounted_is_skipped(self, tmp_path, mount_calls):
        log, mounted = mount_calls

        with mount.WorkingTree(tmp_path) as tree:
            tree.mount("/dev/sdb1", "live")
            mounted.clear()

        assert not [command for command in log if command[0] == "umount"]

    def test_non_empty_directory_is_left(self, tmp_path, mount_calls):
        with mount.WorkingTree(tmp_path) as tree:
            keep = tree.make_dir("data")
            (keep / "file").write_text("x")

        assert keep.exists()

    def test_failing_callback_does_not_raise(self, tmp_path, mount_calls):
        def broken():
            raise RuntimeError("cryptsetup vanished")

        with mount.WorkingTree(tmp_path) as tree:
            tree.register_callback(broken, "close mapping")

        assert not tree.active

    def test_final_sweep_unmounts_leftovers(self, tmp_path, mount_calls):
        log, mounted = mount_calls

        with mount.WorkingTree(tmp_path) as tree:
            mounted.add(str(tree.root / "stray"))
            mounted.add(str(tree.root / "stray" / "proc"))

        umounts = [command[-1] for command in log if command[0] == "umount"]
        assert umounts == [str(tree.root / "stray" / "proc"), str(tree.root / "stray")]

    def test_release_is_idempotent(self, tmp_path, mount_calls):
        tree = mount.WorkingTree(tmp_path)
        with tree:
            tree.release()
            tree.release()
        assert not tree.active

    def test_use_after_release(self, tmp_path, mount_calls):
        with mount.WorkingTree(tmp_path) as tree:
            pass

        with pytest.raises(MountError, match="not active"):
            tree.make_dir("late")

    def test_mount_failure_keeps_directory_registered(self, tmp_path):
        with patch("persistusb.storage.mount.run_command", side_effect=MountError("bad fs")):
            with pytest.raises(MountError):
                with mount.WorkingTree(tmp_path) as tree:
                    tree.mount("/dev/sdb1", "live")

        assert not (tree.root / "live").exists()

    def test_unusable_parent(self, tmp_path):
        with pytest.raises(MountError, match="working directory"):
            with mount.WorkingTree(tmp_path / "missing"):
                pass


class TestSignals:
    def test_handlers_installed_and_restored(self, tmp_path, mount_calls):
        before = signal.getsignal(signal.SIGTERM)

        with mount.WorkingTree(tmp_path):
            assert signal.getsignal(signal.SIGTERM) is mount._raise_interrupted

        assert signal.getsignal(signal.SIGTERM) == before

    def test_signal_raises_session_interrupted(self, tmp_path, mount_calls):
        _, mounted = mount_calls

        with pytest.raises(SessionInterrupted) as exc_info:
            with mount.WorkingTree(tmp_path) as tree:
                tree.mount("/dev/sdb1", "live")
                os.kill(os.getpid(), signal.SIGHUP)

        assert exc_info.value.signum == signal.SIGHUP
        assert not mounted

    def test_interrupt_on_signals(self):
        with pytest.raises(SessionInterrupted):
            with mount.interrupt_on_signals():
                signal.raise_signal(signal.SIGTERM)
