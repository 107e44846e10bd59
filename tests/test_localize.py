import os
import stat
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import MemoryStore, read_log, write_mount_scripts  # noqa: E402
from shepherd.config import MountSettings, Strategy  # noqa: E402
from shepherd.errors import LocalIOError, MountError, RemoteError, UnsupportedError  # noqa: E402
from shepherd.localize import (  # noqa: E402
    DirectTransfer,
    MountedTransfer,
    StagingRecords,
    build_strategy,
    upload_files,
)
from shepherd.models import Download, Upload  # noqa: E402


class StagingRecordsTests(unittest.TestCase):
    def test_mtime_oracle(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            target = workdir / "input.txt"
            target.write_text("one", encoding="utf-8")
            records = StagingRecords(workdir)

            records.record("input.txt")
            self.assertTrue(records.was_localized("input.txt"))
            self.assertFalse(records.was_localized("never-staged.txt"))

            current = os.stat(target).st_mtime_ns
            os.utime(target, ns=(current, current + 5_000_000_000))
            self.assertFalse(records.was_localized("input.txt"))

    def test_missing_file_is_not_localized(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            (workdir / "gone").write_text("x", encoding="utf-8")
            records = StagingRecords(workdir)
            records.record("gone")
            (workdir / "gone").unlink()

            self.assertFalse(records.was_localized("gone"))

    def test_equivalent_spellings_share_a_record(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            (workdir / "a").mkdir()
            (workdir / "a" / "b").write_text("x", encoding="utf-8")
            (workdir / "1").write_text("one", encoding="utf-8")
            records = StagingRecords(workdir)

            records.record("./1")
            records.record("a//b")

            self.assertTrue(records.was_localized("1"))
            self.assertTrue(records.was_localized("a/b"))

    def test_record_missing_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaises(LocalIOError):
                StagingRecords(Path(temp_dir)).record("nope")


class DirectTransferTests(unittest.TestCase):
    def test_prepare_downloads_and_records(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir) / "work"
            store = MemoryStore({"gs://bucket/a": b"alpha", "gs://bucket/deep/b": b"beta"})
            localizer = DirectTransfer(workdir, store=store)

            localizer.prepare([Download("gs://bucket/a", "a"), Download("gs://bucket/deep/b", "nested/dir/b")])

            self.assertEqual((workdir / "a").read_bytes(), b"alpha")
            self.assertEqual((workdir / "nested" / "dir" / "b").read_bytes(), b"beta")
            self.assertTrue(localizer.was_localized("a"))
            self.assertTrue(localizer.was_localized("nested/dir/b"))
            self.assertFalse(localizer.was_localized("other"))

    def test_existing_destination_is_not_overwritten(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            (workdir / "a").write_text("local", encoding="utf-8")
            localizer = DirectTransfer(workdir, store=MemoryStore({"gs://bucket/a": b"remote"}))

            with self.assertRaises(LocalIOError) as ctx:
                localizer.prepare([Download("gs://bucket/a", "a")])

            self.assertIn(str(workdir / "a"), str(ctx.exception))
            self.assertEqual((workdir / "a").read_text(encoding="utf-8"), "local")

    def test_failure_aborts_without_rollback(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            store = MemoryStore({"gs://bucket/a": b"alpha"})
            localizer = DirectTransfer(workdir, store=store)

            with self.assertRaises(RemoteError):
                localizer.prepare(
                    [
                        Download("gs://bucket/a", "a"),
                        Download("gs://bucket/missing", "b"),
                        Download("gs://bucket/a", "c"),
                    ]
                )

            self.assertTrue((workdir / "a").exists())
            self.assertFalse((workdir / "c").exists())
            self.assertEqual(store.reads, ["gs://bucket/a", "gs://bucket/missing"])

    def test_executable_bit(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            store = MemoryStore({"gs://bucket/tool": b"#!/bin/sh\n", "gs://bucket/data": b"x"})
            localizer = DirectTransfer(workdir, store=store)

            localizer.prepare([Download("gs://bucket/tool", "tool", executable=True), Download("gs://bucket/data", "data")])

            self.assertTrue(os.stat(workdir / "tool").st_mode & stat.S_IXUSR)
            self.assertFalse(os.stat(workdir / "data").st_mode & stat.S_IXUSR)
            self.assertTrue(localizer.was_localized("tool"))

    def test_upload_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            workdir = Path(temp_dir)
            payload = bytes(range(256)) * 10
            (workdir / "sub").mkdir()
            (workdir / "sub" / "out.bin").write_bytes(payload)
            store = MemoryStore({"gs://bucket/out/sub/out.bin": b"stale"})
            localizer = DirectTransfer(workdir, store=store)

            localizer.upload([Upload("sub/out.bin", "gs://bucket/out/sub/out.bin")])

            with store.open_read("gs://bucket/out/sub/out.bin") as reader:
                self.assertEqual(reader.read(), payload)

    def test_upload_missing_local_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaises(LocalIOError):
                upload_files(MemoryStore(), Path(temp_dir), [Upload("missing", "gs://bucket/missing")])

    def test_clean_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            DirectTransfer(Path(temp_dir), store=MemoryStore()).clean()


class MountedTransferTests(unittest.TestCase):
    def _mounter(self, root: Path, **script_kwargs) -> tuple[MountedTransfer, Path]:
        log_path = root / "calls.log"
        mount, umount = write_mount_scripts(root, log_path, **script_kwargs)
        settings = MountSettings(gcsfuse_executable=str(mount), umount_executable=str(umount))
        return MountedTransfer(root, root / "work", store=MemoryStore(), mount=settings), log_path

    def test_mounts_each_bucket_once(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            localizer, log_path = self._mounter(root)

            localizer.prepare(
                [
                    Download("gs://alpha/something/1", "a1"),
                    Download("gs://alpha/something/1", "copies/a2"),
                    Download("gs://beta/something/1", "b1"),
                ]
            )

            self.assertEqual(read_log(log_path), ["mount alpha", "mount beta"])
            self.assertEqual((root / "work" / "a1").read_text(encoding="utf-8"), "alpha")
            self.assertEqual((root / "work" / "copies" / "a2").read_text(encoding="utf-8"), "alpha")
            self.assertEqual((root / "work" / "b1").read_text(encoding="utf-8"), "beta")
            self.assertFalse((root / "work" / "a1").is_symlink())
            self.assertTrue(localizer.was_localized("copies/a2"))

            localizer.clean()
            self.assertEqual(read_log(log_path)[2:], ["umount alpha", "umount beta"])
            localizer.clean()
            self.assertEqual(len(read_log(log_path)), 4)

    def test_symlink_safe_download_links_into_mount(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            localizer, _log_path = self._mounter(root)

            localizer.prepare([Download("gs://alpha/something/1", "in/link", symlink_safe=True)])

            link = root / "work" / "in" / "link"
            self.assertTrue(link.is_symlink())
            self.assertFalse(os.path.isabs(os.readlink(link)))
            self.assertEqual(link.read_text(encoding="utf-8"), "alpha")
            self.assertTrue(localizer.was_localized("in/link"))
            localizer.clean()

    def test_failed_mount_releases_earlier_mounts(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            localizer, log_path = self._mounter(root, fail_mount=["bad"])

            with self.assertRaises(MountError) as ctx:
                localizer.prepare([Download("gs://good/something/1", "g"), Download("gs://bad/something/1", "b")])

            self.assertIn("bad", str(ctx.exception))
            self.assertEqual(read_log(log_path), ["mount good", "mount bad", "umount good"])
            self.assertEqual(localizer.mounts, [])
            self.assertFalse((root / "work" / "g").exists())

    def test_executable_download_is_unsupported(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            localizer, log_path = self._mounter(root)

            with self.assertRaises(UnsupportedError):
                localizer.prepare([Download("gs://alpha/something/1", "x", executable=True)])

            self.assertEqual(read_log(log_path), [])

    def test_clean_attempts_every_mount_before_failing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            localizer, log_path = self._mounter(root, fail_umount=["alpha"])
            localizer.prepare([Download("gs://alpha/something/1", "a"), Download("gs://beta/something/1", "b")])

            with self.assertRaises(MountError) as ctx:
                localizer.clean()

            self.assertIn("alpha", str(ctx.exception))
            self.assertEqual(read_log(log_path)[2:], ["umount alpha", "umount beta"])

    def test_missing_mount_helper(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            settings = MountSettings(gcsfuse_executable=str(root / "no-such-gcsfuse"))
            localizer = MountedTransfer(root, root / "work", store=MemoryStore(), mount=settings)

            with self.assertRaises(MountError):
                localizer.prepare([Download("gs://alpha/k", "k")])


class BuildStrategyTests(unittest.TestCase):
    def test_tagged_choice(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            store = MemoryStore()
            self.assertIsInstance(build_strategy(Strategy.DOWNLOAD, root, root / "work", store=store), DirectTransfer)
            self.assertIsInstance(build_strategy("gcsfuse", root, root / "work", store=store), MountedTransfer)


if __name__ == "__main__":
    unittest.main()
