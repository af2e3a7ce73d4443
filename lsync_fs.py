# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import os
import sys
import stat
import shutil
import logging
from contextlib import contextmanager
from enum import IntEnum, IntFlag
from typing import Iterator

if os.name == "nt":
	import ctypes
	from ctypes import wintypes

logger = logging.getLogger("lsync.fs")

COPY_BUFFER_SIZE = 16384

class AttrMask(IntFlag):
	'''Metadata to transfer from a source entry to its destination.'''

	NONE  = 0x00
	GROUP = 0x01
	OWNER = 0x02
	PERMS = 0x04
	ALL   = GROUP | OWNER | PERMS

class CopyMask(IntFlag):
	'''Non-regular entry kinds to reproduce at the destination.'''

	NONE     = 0x00
	DEVICES  = 0x01
	LINKS    = 0x02
	SPECIALS = 0x04
	ALL      = DEVICES | LINKS | SPECIALS

class Comparison(IntEnum):
	'''Result of `FsAdapter.is_newer()`.'''

	ERROR     = -1
	NOT_NEWER = 0
	NEWER     = 1

class FsError(OSError):
	'''An `OSError` raised by a file system operation, tagged with the operation name.'''

	def __init__(self, op:str, path:str, cause:OSError):
		super().__init__(cause.errno, cause.strerror or str(cause), path)
		self.op = op

	def __str__(self) -> str:
		return f"{self.filename}:{self.op}(): {self.strerror}"

@contextmanager
def _operation(op:str, path:str) -> Iterator[None]:
	try:
		yield
	except FsError:
		raise
	except OSError as e:
		raise FsError(op, path, e) from e

def _path_prefixes(path:str, seps:str, *, drive:bool = False) -> Iterator[str]:
	r'''
	Yields every ancestor prefix of `path` (ending with `path` itself) that `mkdir_p` has to check. Leading separators are kept as part of the first component, and with `drive` a leading `X:\` is treated as a single unit.

	>>> list(_path_prefixes("a/b/c", "/"))
	['a', 'a/b', 'a/b/c']
	>>> list(_path_prefixes("/tmp//x/", "/"))
	['/tmp', '/tmp//x']
	>>> list(_path_prefixes("C:/data/snap", "\\/", drive=True))
	['C:/data', 'C:/data/snap']
	'''

	start = 0
	if drive and len(path) >= 2 and path[1] == ":":
		start = 2
	while start < len(path) and path[start] in seps:
		start += 1
	for i in range(start, len(path)):
		if path[i] in seps and path[i - 1] not in seps:
			yield path[:i]
	if path and path[-1] not in seps:
		yield path

class FsAdapter:
	'''
	Uniform file system operations used by the backup engine. Every mutating operation raises `FsError` on failure.

	Subclasses implement the platform specific parts; `mkdir_p()`, `is_newer()` and the existence checks have portable defaults.
	'''

	path_seps : str = os.sep
	drive_letters : bool = False

	def exists_file(self, path:str) -> bool:
		'''Whether `path` exists and is not a directory. Symlinks are followed.'''

		try:
			return not stat.S_ISDIR(os.stat(path).st_mode)
		except (OSError, ValueError):
			return False

	def exists_dir(self, path:str) -> bool:
		'''Whether `path` exists and is a directory. Symlinks are followed.'''

		try:
			return stat.S_ISDIR(os.stat(path).st_mode)
		except (OSError, ValueError):
			return False

	def mkdir_p(self, path:str) -> None:
		'''Creates `path` and every missing ancestor. A bare drive root is a no-op.'''

		if not path:
			raise ValueError("Cannot create a directory with an empty path")
		if self.drive_letters and len(path) < 4 and path[1:2] == ":":
			return
		for prefix in _path_prefixes(path, self.path_seps, drive=self.drive_letters):
			if self.exists_dir(prefix):
				continue
			with _operation("mkdir", prefix):
				self._mkdir(prefix)
			logger.info(f"Created directory \"{prefix}\".")

	def hardlink(self, src:str, dst:str) -> None:
		'''Creates `dst` as a hard link to `src`, replacing any file already at `dst`.'''

		raise NotImplementedError

	def copy_file(self, src:str, dst:str, mask:CopyMask) -> bool:
		'''
		Copies `src` to `dst`, replacing any file already at `dst`.

		Returns `False` if `src` is a kind of entry that `mask` excludes, in which case nothing is created.
		'''

		raise NotImplementedError

	def copy_attrs(self, src:str, dst:str, mask:AttrMask) -> None:
		'''Transfers the metadata selected by `mask` (plus timestamps) from `src` to `dst`. An empty mask does nothing.'''

		raise NotImplementedError

	def make_writable(self, path:str) -> None:
		'''Gives the owner full access to the directory `path` so its contents can be written.'''

		with _operation("stat", path):
			mode = stat.S_IMODE(os.stat(path).st_mode)
		if mode & stat.S_IRWXU != stat.S_IRWXU:
			with _operation("chmod", path):
				os.chmod(path, mode | stat.S_IRWXU)

	def is_newer(self, a:str, b:str) -> Comparison:
		'''
		Reports whether `b` is newer than `a`: its size differs, or it was modified strictly later.

		Returns `Comparison.ERROR` if `a` cannot be read and `Comparison.NOT_NEWER` if only `b` cannot be read.
		'''

		try:
			a_stat = os.stat(a)
		except (OSError, ValueError) as e:
			logger.debug(f"{a}:stat(): {e}")
			return Comparison.ERROR
		try:
			b_stat = os.stat(b)
		except (OSError, ValueError):
			return Comparison.NOT_NEWER
		if a_stat.st_size != b_stat.st_size:
			return Comparison.NEWER
		return Comparison.NEWER if self._modified_later(a_stat, b_stat) else Comparison.NOT_NEWER

	def _modified_later(self, a_stat:os.stat_result, b_stat:os.stat_result) -> bool:
		return a_stat.st_mtime_ns < b_stat.st_mtime_ns

	def _mkdir(self, path:str) -> None:
		os.mkdir(path)

	def _delete_if_file(self, path:str) -> None:
		'''Removes whatever non-directory entry (including a dangling symlink) sits at `path`.'''

		try:
			st = os.lstat(path)
		except FileNotFoundError:
			return
		if stat.S_ISDIR(st.st_mode):
			return
		with _operation("unlink", path):
			os.unlink(path)

class PosixFs(FsAdapter):
	'''File system adapter built on the POSIX system calls exposed by `os`.'''

	path_seps = "/"

	def hardlink(self, src:str, dst:str) -> None:
		self._delete_if_file(dst)
		with _operation("link", dst):
			if os.link in os.supports_follow_symlinks:
				os.link(src, dst, follow_symlinks=False)
			else:
				os.link(src, dst)
		logger.info(f"Created hardlink \"{dst}\" pointing to \"{src}\".")

	def copy_file(self, src:str, dst:str, mask:CopyMask) -> bool:
		with _operation("lstat", src):
			st = os.lstat(src)
		mode = st.st_mode

		if stat.S_ISCHR(mode) or stat.S_ISBLK(mode) or stat.S_ISSOCK(mode):
			if not mask & CopyMask.DEVICES:
				logger.debug(f"Skipping device \"{src}\".")
				return False
			self._delete_if_file(dst)
			with _operation("mknod", dst):
				os.mknod(dst, mode, st.st_rdev)
			logger.info(f"Copied device \"{src}\" to \"{dst}\".")
			return True

		if stat.S_ISLNK(mode):
			if not mask & CopyMask.LINKS:
				logger.debug(f"Skipping symbolic link \"{src}\".")
				return False
			with _operation("readlink", src):
				target = os.readlink(src)
			self._delete_if_file(dst)
			with _operation("symlink", dst):
				os.symlink(target, dst)
			logger.info(f"Copied symbolic link \"{src}\" to \"{dst}\".")
			return True

		if stat.S_ISFIFO(mode):
			if not mask & CopyMask.SPECIALS:
				logger.debug(f"Skipping fifo \"{src}\".")
				return False
			self._delete_if_file(dst)
			with _operation("mkfifo", dst):
				os.mkfifo(dst)
			logger.info(f"Copied fifo \"{src}\" to \"{dst}\".")
			return True

		self._delete_if_file(dst)
		with _operation("open", src), open(src, "rb") as fin:
			with _operation("open", dst), open(dst, "xb") as fout:
				with _operation("copy", dst):
					shutil.copyfileobj(fin, fout, COPY_BUFFER_SIZE)
		logger.info(f"Copied file \"{src}\" to \"{dst}\".")
		return True

	def copy_attrs(self, src:str, dst:str, mask:AttrMask) -> None:
		if mask == AttrMask.NONE:
			return
		with _operation("lstat", src):
			st = os.lstat(src)
		is_link = stat.S_ISLNK(st.st_mode)

		if mask & (AttrMask.OWNER | AttrMask.GROUP):
			uid = st.st_uid if mask & AttrMask.OWNER else -1
			gid = st.st_gid if mask & AttrMask.GROUP else -1
			with _operation("chown", dst):
				os.chown(dst, uid, gid, follow_symlinks=not is_link)
		if mask & AttrMask.PERMS:
			# Linux cannot change the mode of a symlink itself
			if not is_link or os.chmod in os.supports_follow_symlinks:
				with _operation("chmod", dst):
					os.chmod(dst, stat.S_IMODE(st.st_mode), follow_symlinks=not is_link)
		if not is_link or os.utime in os.supports_follow_symlinks:
			with _operation("utime", dst):
				os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns), follow_symlinks=not is_link)
		logger.info(f"Copied attributes from file \"{src}\" to \"{dst}\".")

	def _modified_later(self, a_stat:os.stat_result, b_stat:os.stat_result) -> bool:
		return a_stat.st_mtime_ns < b_stat.st_mtime_ns or a_stat.st_ctime_ns < b_stat.st_ctime_ns

INVALID_FILE_ATTRIBUTES = 0xFFFFFFFF
FILE_ATTRIBUTE_DIRECTORY = 0x10
ERROR_INSUFFICIENT_BUFFER = 122
ERROR_NOT_ALL_ASSIGNED = 1300

COPY_FILE_COPY_SYMLINK = 0x00000800
COPY_FILE_NO_BUFFERING = 0x00001000

OWNER_SECURITY_INFORMATION  = 0x00000001
GROUP_SECURITY_INFORMATION  = 0x00000002
DACL_SECURITY_INFORMATION   = 0x00000004
BACKUP_SECURITY_INFORMATION = 0x00010000

GENERIC_READ = 0x80000000
FILE_WRITE_ATTRIBUTES = 0x0100
FILE_SHARE_READ = 0x01
FILE_SHARE_WRITE = 0x02
OPEN_EXISTING = 3
FILE_ATTRIBUTE_NORMAL = 0x80
FILE_FLAG_BACKUP_SEMANTICS = 0x02000000

TOKEN_ADJUST_PRIVILEGES = 0x0020
TOKEN_QUERY = 0x0008
SE_PRIVILEGE_ENABLED = 0x00000002
SE_SECURITY_NAME = "SeSecurityPrivilege"

class WindowsFs(FsAdapter):
	'''File system adapter built on the Win32 API through `ctypes`.'''

	path_seps = "\\/"
	drive_letters = True

	# SE_SECURITY_NAME is enabled for the whole process on first use and never dropped
	_has_security_privilege = False

	def __init__(self) -> None:
		self.kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
		self.advapi32 = ctypes.WinDLL("advapi32", use_last_error=True)
		self.kernel32.CreateFileW.restype = wintypes.HANDLE
		self.kernel32.GetCurrentProcess.restype = wintypes.HANDLE
		self.kernel32.GetFileAttributesW.restype = wintypes.DWORD
		# CopyFileEx flags are rejected before Vista
		self.copy_flags_supported = sys.getwindowsversion().major >= 6

	def _check(self, ok:int, op:str, path:str) -> None:
		if not ok:
			raise FsError(op, path, ctypes.WinError(ctypes.get_last_error()))

	def _attributes(self, path:str) -> int:
		return self.kernel32.GetFileAttributesW(wintypes.LPCWSTR(path))

	def exists_file(self, path:str) -> bool:
		attrs = self._attributes(path)
		return attrs != INVALID_FILE_ATTRIBUTES and not attrs & FILE_ATTRIBUTE_DIRECTORY

	def exists_dir(self, path:str) -> bool:
		attrs = self._attributes(path)
		return attrs != INVALID_FILE_ATTRIBUTES and bool(attrs & FILE_ATTRIBUTE_DIRECTORY)

	def _mkdir(self, path:str) -> None:
		self._check(self.kernel32.CreateDirectoryW(wintypes.LPCWSTR(path), None), "CreateDirectory", path)

	def make_writable(self, path:str) -> None:
		# the read-only attribute does not apply to directories
		pass

	def _delete_if_file(self, path:str) -> None:
		if self.exists_file(path):
			self._check(self.kernel32.DeleteFileW(wintypes.LPCWSTR(path)), "DeleteFile", path)

	def hardlink(self, src:str, dst:str) -> None:
		self._delete_if_file(dst)
		self._check(self.kernel32.CreateHardLinkW(wintypes.LPCWSTR(dst), wintypes.LPCWSTR(src), None), "CreateHardLink", dst)
		logger.info(f"Created hardlink \"{dst}\" pointing to \"{src}\".")

	def copy_file(self, src:str, dst:str, mask:CopyMask) -> bool:
		# a directory reaches here only as a symlink or junction
		if self.exists_dir(src) and not mask & CopyMask.LINKS:
			logger.debug(f"Skipping symbolic link \"{src}\".")
			return False
		self._delete_if_file(dst)
		flags = COPY_FILE_NO_BUFFERING
		if mask & CopyMask.LINKS:
			flags |= COPY_FILE_COPY_SYMLINK
		if not self.copy_flags_supported:
			flags = 0
		self._check(
			self.kernel32.CopyFileExW(wintypes.LPCWSTR(src), wintypes.LPCWSTR(dst), None, None, None, wintypes.DWORD(flags)),
			"CopyFileEx", dst
		)
		logger.info(f"Copied file \"{src}\" to \"{dst}\".")
		return True

	def _enable_privilege(self, name:str) -> bool:
		class LUID(ctypes.Structure):
			_fields_ = [("LowPart", wintypes.DWORD), ("HighPart", wintypes.LONG)]

		class LUID_AND_ATTRIBUTES(ctypes.Structure):
			_fields_ = [("Luid", LUID), ("Attributes", wintypes.DWORD)]

		class TOKEN_PRIVILEGES(ctypes.Structure):
			_fields_ = [("PrivilegeCount", wintypes.DWORD), ("Privileges", LUID_AND_ATTRIBUTES * 1)]

		luid = LUID()
		if not self.advapi32.LookupPrivilegeValueW(None, wintypes.LPCWSTR(name), ctypes.byref(luid)):
			return False
		token = wintypes.HANDLE()
		if not self.advapi32.OpenProcessToken(wintypes.HANDLE(self.kernel32.GetCurrentProcess()), TOKEN_QUERY | TOKEN_ADJUST_PRIVILEGES, ctypes.byref(token)):
			return False
		try:
			privileges = TOKEN_PRIVILEGES()
			privileges.PrivilegeCount = 1
			privileges.Privileges[0].Luid = luid
			privileges.Privileges[0].Attributes = SE_PRIVILEGE_ENABLED
			ctypes.set_last_error(0)
			if not self.advapi32.AdjustTokenPrivileges(token, False, ctypes.byref(privileges), ctypes.sizeof(privileges), None, None):
				return False
			return ctypes.get_last_error() != ERROR_NOT_ALL_ASSIGNED
		finally:
			self.kernel32.CloseHandle(token)

	def _security_descriptor(self, path:str, flags:int):
		needed = wintypes.DWORD(0)
		buffer = ctypes.create_string_buffer(4096)
		while not self.advapi32.GetFileSecurityW(wintypes.LPCWSTR(path), wintypes.DWORD(flags), buffer, len(buffer), ctypes.byref(needed)):
			error = ctypes.get_last_error()
			if error != ERROR_INSUFFICIENT_BUFFER or needed.value <= len(buffer):
				raise FsError("GetFileSecurity", path, ctypes.WinError(error))
			buffer = ctypes.create_string_buffer(needed.value)
		return buffer

	def _open(self, path:str, access:int, share:int):
		handle = self.kernel32.CreateFileW(
			wintypes.LPCWSTR(path), wintypes.DWORD(access), wintypes.DWORD(share), None,
			wintypes.DWORD(OPEN_EXISTING), wintypes.DWORD(FILE_ATTRIBUTE_NORMAL), None
		)
		if handle is None or handle == wintypes.HANDLE(-1).value:
			raise FsError("CreateFile", path, ctypes.WinError(ctypes.get_last_error()))
		return wintypes.HANDLE(handle)

	def copy_attrs(self, src:str, dst:str, mask:AttrMask) -> None:
		if mask == AttrMask.NONE:
			return

		if (mask & AttrMask.ALL) == AttrMask.ALL:
			flags = BACKUP_SECURITY_INFORMATION
		else:
			flags = 0
			if mask & AttrMask.GROUP:
				flags |= GROUP_SECURITY_INFORMATION
			if mask & AttrMask.OWNER:
				flags |= OWNER_SECURITY_INFORMATION
			if mask & AttrMask.PERMS:
				flags |= DACL_SECURITY_INFORMATION

		if not WindowsFs._has_security_privilege:
			WindowsFs._has_security_privilege = self._enable_privilege(SE_SECURITY_NAME)
			if not WindowsFs._has_security_privilege:
				logger.debug(f"Could not enable {SE_SECURITY_NAME}.")

		descriptor = self._security_descriptor(src, flags)
		self._check(self.advapi32.SetFileSecurityW(wintypes.LPCWSTR(dst), wintypes.DWORD(flags), descriptor), "SetFileSecurity", dst)

		if not self.exists_dir(src):
			times = (wintypes.FILETIME * 3)()
			handle = self._open(src, GENERIC_READ, FILE_SHARE_READ)
			try:
				self._check(
					self.kernel32.GetFileTime(handle, ctypes.byref(times[0]), ctypes.byref(times[1]), ctypes.byref(times[2])),
					"GetFileTime", src
				)
			finally:
				self.kernel32.CloseHandle(handle)
			handle = self._open(dst, FILE_WRITE_ATTRIBUTES, FILE_SHARE_READ | FILE_SHARE_WRITE)
			try:
				self._check(
					self.kernel32.SetFileTime(handle, ctypes.byref(times[0]), ctypes.byref(times[1]), ctypes.byref(times[2])),
					"SetFileTime", dst
				)
			finally:
				self.kernel32.CloseHandle(handle)
		logger.info(f"Copied attributes from file \"{src}\" to \"{dst}\".")

def get_adapter() -> FsAdapter:
	'''Returns the adapter for the running platform.'''

	if os.name == "nt":
		return WindowsFs()
	return PosixFs()
