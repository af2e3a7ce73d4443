import os
import stat
import doctest
import tempfile
import unittest
from pathlib import Path

import lsync_fs
from lsync_fs import AttrMask, CopyMask, Comparison, FsError, PosixFs, get_adapter

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(lsync_fs))
	return tests

def set_times(path:Path, mtime:float):
	os.utime(path, (mtime, mtime))

class TestFsAdapter(unittest.TestCase):
	def setUp(self):
		self.tmp = tempfile.TemporaryDirectory()
		self.root = Path(self.tmp.name)
		self.fs = get_adapter()

	def tearDown(self):
		self.tmp.cleanup()

	def test_exists(self):
		(self.root / "file").write_text("x")
		(self.root / "dir").mkdir()
		self.assertTrue(self.fs.exists_file(str(self.root / "file")))
		self.assertFalse(self.fs.exists_file(str(self.root / "dir")))
		self.assertFalse(self.fs.exists_file(str(self.root / "missing")))
		self.assertTrue(self.fs.exists_dir(str(self.root / "dir")))
		self.assertFalse(self.fs.exists_dir(str(self.root / "file")))
		self.assertFalse(self.fs.exists_dir(str(self.root / "missing")))

	def test_mkdir_p(self):
		path = self.root / "a" / "b" / "c"
		self.fs.mkdir_p(str(path))
		self.assertTrue(path.is_dir())

		# existing directories and a trailing separator are fine
		self.fs.mkdir_p(str(path) + os.sep)
		self.assertTrue(path.is_dir())

		(self.root / "blocker").write_text("x")
		with self.assertRaises(FsError) as cm:
			self.fs.mkdir_p(str(self.root / "blocker" / "sub"))
		self.assertEqual(cm.exception.op, "mkdir")
		self.assertIn("blocker", str(cm.exception))

		with self.assertRaises(ValueError):
			self.fs.mkdir_p("")

	def test_hardlink_replaces_file(self):
		src = self.root / "src"
		dst = self.root / "dst"
		src.write_text("new")
		dst.write_text("old")
		self.fs.hardlink(str(src), str(dst))
		self.assertTrue(os.path.samefile(src, dst))
		self.assertEqual(dst.read_text(), "new")

		with self.assertRaises(OSError):
			self.fs.hardlink(str(self.root / "missing"), str(self.root / "dst2"))
		self.assertFalse((self.root / "dst2").exists())

	def test_copy_regular_file(self):
		src = self.root / "src"
		dst = self.root / "dst"
		src.write_bytes(os.urandom(100000))
		dst.write_text("old")
		other = self.root / "other"
		os.link(dst, other)

		self.assertTrue(self.fs.copy_file(str(src), str(dst), CopyMask.NONE))
		self.assertEqual(dst.read_bytes(), src.read_bytes())
		# the old inode is replaced, not written through
		self.assertEqual(other.read_text(), "old")

		with self.assertRaises(OSError):
			self.fs.copy_file(str(self.root / "missing"), str(self.root / "dst2"), CopyMask.NONE)

	def test_copy_attrs_none_is_noop(self):
		self.fs.copy_attrs(str(self.root / "missing"), str(self.root / "missing2"), AttrMask.NONE)

	def test_is_newer(self):
		a = self.root / "a"
		b = self.root / "b"
		b.write_text("same")
		a.write_text("same")
		set_times(b, 1000000)
		set_times(a, 2000000)
		self.assertEqual(self.fs.is_newer(str(a), str(b)), Comparison.NOT_NEWER)

		set_times(a, 1000000)
		set_times(b, 2000000)
		self.assertEqual(self.fs.is_newer(str(a), str(b)), Comparison.NEWER)

		b.write_text("different size")
		set_times(b, 1000000)
		set_times(a, 2000000)
		self.assertEqual(self.fs.is_newer(str(a), str(b)), Comparison.NEWER)

		self.assertEqual(self.fs.is_newer(str(self.root / "missing"), str(b)), Comparison.ERROR)
		self.assertEqual(self.fs.is_newer(str(a), str(self.root / "missing")), Comparison.NOT_NEWER)

	def test_is_newer_equal_times(self):
		a = self.root / "a"
		b = self.root / "b"
		b.write_text("same")
		a.write_text("same")
		set_times(b, 1500000)
		set_times(a, 1500000)
		self.assertEqual(self.fs.is_newer(str(a), str(b)), Comparison.NOT_NEWER)

@unittest.skipIf(os.name == "nt", "POSIX adapter")
class TestPosixFs(unittest.TestCase):
	def setUp(self):
		self.tmp = tempfile.TemporaryDirectory()
		self.root = Path(self.tmp.name)
		self.fs = PosixFs()

	def tearDown(self):
		self.tmp.cleanup()

	def test_symlink(self):
		src = self.root / "link"
		dst = self.root / "copy"
		os.symlink("some/target", src)

		self.assertFalse(self.fs.copy_file(str(src), str(dst), CopyMask.DEVICES | CopyMask.SPECIALS))
		self.assertFalse(os.path.lexists(dst))

		self.assertTrue(self.fs.copy_file(str(src), str(dst), CopyMask.LINKS))
		self.assertTrue(dst.is_symlink())
		self.assertEqual(os.readlink(dst), "some/target")

		# rerun replaces the dangling link
		self.assertTrue(self.fs.copy_file(str(src), str(dst), CopyMask.LINKS))
		self.assertEqual(os.readlink(dst), "some/target")

	@unittest.skipUnless(hasattr(os, "mkfifo"), "needs mkfifo")
	def test_fifo(self):
		src = self.root / "fifo"
		dst = self.root / "copy"
		os.mkfifo(src)

		self.assertFalse(self.fs.copy_file(str(src), str(dst), CopyMask.DEVICES | CopyMask.LINKS))
		self.assertFalse(os.path.lexists(dst))

		self.assertTrue(self.fs.copy_file(str(src), str(dst), CopyMask.SPECIALS))
		self.assertTrue(stat.S_ISFIFO(os.lstat(dst).st_mode))

	def test_device_skipped_without_mask(self):
		dst = self.root / "null"
		self.assertFalse(self.fs.copy_file(os.devnull, str(dst), CopyMask.LINKS | CopyMask.SPECIALS))
		self.assertFalse(os.path.lexists(dst))

	@unittest.skipUnless(hasattr(os, "geteuid") and os.geteuid() == 0, "mknod needs root")
	def test_device(self):
		dst = self.root / "null"
		self.assertTrue(self.fs.copy_file(os.devnull, str(dst), CopyMask.DEVICES))
		self.assertTrue(stat.S_ISCHR(os.lstat(dst).st_mode))
		self.assertEqual(os.lstat(dst).st_rdev, os.stat(os.devnull).st_rdev)

	def test_copy_attrs(self):
		src = self.root / "src"
		dst = self.root / "dst"
		src.write_text("x")
		dst.write_text("x")
		os.chmod(src, 0o640)
		os.chmod(dst, 0o600)
		os.utime(src, ns=(1_000_000_123_456_789, 1_100_000_987_654_321))

		self.fs.copy_attrs(str(src), str(dst), AttrMask.ALL)
		src_stat = os.stat(src)
		dst_stat = os.stat(dst)
		self.assertEqual(stat.S_IMODE(dst_stat.st_mode), 0o640)
		self.assertEqual(dst_stat.st_mtime_ns, src_stat.st_mtime_ns)
		self.assertEqual(dst_stat.st_uid, src_stat.st_uid)
		self.assertEqual(dst_stat.st_gid, src_stat.st_gid)

		with self.assertRaises(FsError):
			self.fs.copy_attrs(str(src), str(self.root / "missing"), AttrMask.PERMS)

	def test_copy_attrs_without_perms_keeps_mode(self):
		src = self.root / "src"
		dst = self.root / "dst"
		src.write_text("x")
		dst.write_text("x")
		os.chmod(src, 0o640)
		os.chmod(dst, 0o600)
		self.fs.copy_attrs(str(src), str(dst), AttrMask.GROUP)
		self.assertEqual(stat.S_IMODE(os.stat(dst).st_mode), 0o600)

	def test_make_writable(self):
		path = self.root / "dir"
		path.mkdir()
		os.chmod(path, 0o551)
		self.fs.make_writable(str(path))
		self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o751)

		with self.assertRaises(FsError) as cm:
			self.fs.make_writable(str(self.root / "missing"))
		self.assertEqual(cm.exception.op, "stat")

	def test_copy_attrs_on_symlink(self):
		target = self.root / "target"
		target.write_text("x")
		os.chmod(target, 0o600)
		src = self.root / "link"
		dst = self.root / "copy"
		os.symlink("target", src)
		os.symlink("target", dst)
		self.fs.copy_attrs(str(src), str(dst), AttrMask.ALL)
		self.assertEqual(stat.S_IMODE(os.stat(target).st_mode), 0o600)

	def test_is_newer_change_time(self):
		a = self.root / "a"
		b = self.root / "b"
		a.write_text("same")
		b.write_text("same")
		set_times(b, 1000000)
		set_times(a, 1000000)
		a_stat = os.stat(a)
		b_stat = os.stat(b)
		expected = Comparison.NEWER if b_stat.st_ctime_ns > a_stat.st_ctime_ns else Comparison.NOT_NEWER
		self.assertEqual(self.fs.is_newer(str(a), str(b)), expected)

	def test_error_message(self):
		with self.assertRaises(FsError) as cm:
			self.fs.copy_file(str(self.root / "missing"), str(self.root / "dst"), CopyMask.NONE)
		self.assertEqual(cm.exception.op, "lstat")
		self.assertTrue(str(cm.exception).startswith(str(self.root / "missing") + ":lstat(): "))
		self.assertIsInstance(cm.exception, OSError)

@unittest.skipUnless(os.name == "nt", "Windows adapter")
class TestWindowsFs(unittest.TestCase):
	def setUp(self):
		self.tmp = tempfile.TemporaryDirectory()
		self.root = Path(self.tmp.name)
		self.fs = lsync_fs.WindowsFs()

	def tearDown(self):
		self.tmp.cleanup()

	def test_drive_root_is_noop(self):
		drive = os.path.splitdrive(self.tmp.name)[0]
		self.fs.mkdir_p(drive + "\\")

	def test_copy_link_and_attrs(self):
		src = self.root / "src"
		src.write_text("hello")
		dst = self.root / "sub" / "dst"
		self.fs.mkdir_p(str(dst.parent))
		self.assertTrue(self.fs.copy_file(str(src), str(dst), CopyMask.NONE))
		self.assertEqual(dst.read_text(), "hello")

		self.fs.copy_attrs(str(src), str(dst), AttrMask.PERMS)
		self.assertEqual(os.stat(dst).st_mtime_ns, os.stat(src).st_mtime_ns)

		link = self.root / "link"
		self.fs.hardlink(str(dst), str(link))
		self.assertTrue(os.path.samefile(dst, link))

if __name__ == "__main__":
	unittest.main()
