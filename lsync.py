# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import os
import signal
import stat
import logging
import threading
import traceback
from dataclasses import dataclass, field
from typing import Sequence

from lsync_fs import AttrMask, CopyMask, Comparison, FsAdapter, get_adapter
from lsync_walk import Status, TraverseOption, traverse

__version__ = "1.0.0"

# Longest destination or reference path the visitor will produce
MAX_PATH_LENGTH = 32768

if os.name == "nt":
	PATH_SEPS = "\\/"
else:
	PATH_SEPS = "/"

logger = logging.getLogger("lsync")
logger.setLevel(logging.DEBUG)

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class LsyncError(Exception):
	'''Base class for errors that end a backup run.'''

class SourceNotFoundError(LsyncError):
	pass

class PathTooLongError(LsyncError):
	pass

class BackupError(LsyncError):
	pass

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = argparse.ArgumentParser(
		prog="lsync",
		usage="%(prog)s [options] <source> ... <destination>",
		description="Copy the given sources into the destination directory, optionally preserving metadata and hard-linking unchanged files against a reference snapshot.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("paths", metavar="path", nargs="*", help="One or more sources followed by the destination directory.")
	parser.add_argument("-a", "--archive", action="store_true", default=False, help="Archive mode (same as -rlpgoD).")
	parser.add_argument("--devices", action="store_true", default=False, help="Preserve device files.")
	parser.add_argument("-D", dest="devices_specials", action="store_true", default=False, help="Same as --devices --specials.")
	parser.add_argument("-g", "--group", action="store_true", default=False, help="Preserve group.")
	parser.add_argument("--link-dest", metavar="reference", type=str, default=None, help="Hardlink to files from reference in destination if unchanged.")
	parser.add_argument("-l", "--links", action="store_true", default=False, help="Copy symlinks as symlinks.")
	parser.add_argument("-o", "--owner", action="store_true", default=False, help="Preserve owner.")
	parser.add_argument("-p", "--perms", action="store_true", default=False, help="Preserve permissions.")
	parser.add_argument("-r", "--recursive", action="store_true", default=False, help="Traverse the given directories recursively.")
	parser.add_argument("--specials", action="store_true", default=False, help="Preserve special files.")
	parser.add_argument("-v", "--verbose", dest="v", action="count", default=0, help="Increase verbosity. May be repeated.")
	parser.add_argument("--log", metavar="path", type=str, default=None, help="The path of a log file to write. It must not exist yet.")
	parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}", help="Output the program version.")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		if not parsed_args.paths:
			_ArgParser.parser.error("Missing source and destination path.")
		if len(parsed_args.paths) < 2:
			_ArgParser.parser.error("Missing destination path.")
		parsed_args.sources     = parsed_args.paths[:-1]
		parsed_args.destination = parsed_args.paths[-1]
		parsed_args.devices     = parsed_args.devices or parsed_args.devices_specials
		parsed_args.specials    = parsed_args.specials or parsed_args.devices_specials
		parsed_args.verbose     = parsed_args.v + 1
		del parsed_args.paths, parsed_args.devices_specials, parsed_args.v
		return parsed_args

@dataclass(frozen=True)
class Options:
	'''Read-only configuration of a backup run.'''

	sources     : tuple[str, ...]
	destination : str
	attr_mask   : AttrMask = AttrMask.NONE
	copy_mask   : CopyMask = CopyMask.NONE
	recursive   : bool = False
	verbose     : int = 1
	link_dest   : str | None = None
	log         : str | None = None

@dataclass
class RunState:
	'''Mutable state of a single backup run.'''

	source_index : int = 0
	cancelled    : bool = False
	max_path     : int = MAX_PATH_LENGTH
	# (source, destination) directories whose timestamps are restored after their contents are written
	dirs         : list[tuple[str, str]] = field(default_factory=list)

	def cancel(self, signum, frame) -> None:
		# runs as a signal handler, so it only sets the flag
		self.cancelled = True

class Results:
	'''Various statistics and other information returned by `backup()`.'''

	def __init__(self) -> None:
		self.success   : bool      = False
		self.cancelled : bool      = False
		self.errors    : list[str] = []
		self.log_file  : str | None = None

		self.dirs           = 0
		self.copied         = 0
		self.linked         = 0
		self.skipped        = 0
		self.attrs          = 0
		self.attr_errors    = 0
		self.link_fallbacks = 0

	@property
	def err_count(self) -> int:
		return len(self.errors)

	@property
	def exit_code(self) -> int:
		return 0 if self.success else 1

def _source_parts(root:str, path:str) -> tuple[str, str]:
	'''
	Splits `path`, which lies inside the source argument `root`, into the basename of `root` and the path relative to `root`.

	>>> _source_parts("data/photos", "data/photos/2024/a.jpg")
	('photos', '2024/a.jpg')
	>>> _source_parts("data/photos/", "data/photos/a.jpg")
	('', 'a.jpg')
	>>> _source_parts("notes.txt", "notes.txt")
	('notes.txt', '')
	'''

	sep = max(root.rfind(s) for s in PATH_SEPS)
	base = root[sep + 1:]
	start = len(root)
	if len(path) > start and root[-1] not in PATH_SEPS:
		start += 1
	return base, path[start:]

def _is_link(path:str) -> bool:
	if os.path.islink(path):
		return True
	isjunction = getattr(os.path, "isjunction", None)
	return bool(isjunction and isjunction(path))

def _is_regular_file(path:str) -> bool:
	try:
		return stat.S_ISREG(os.lstat(path).st_mode)
	except OSError:
		return False

class _BackupVisitor:
	'''Decides, for every entry reported by the traverser, whether to create, copy, hard-link or skip it.'''

	def __init__(self, options:Options, state:RunState, fs:FsAdapter, results:Results):
		self.options = options
		self.state   = state
		self.fs      = fs
		self.results = results

	def _format(self, root_dir:str, src:str) -> str:
		base, rel = _source_parts(self.options.sources[self.state.source_index], src)
		if rel:
			path = os.path.join(root_dir, base, rel)
		else:
			path = os.path.join(root_dir, base)
		if len(path) >= self.state.max_path:
			raise PathTooLongError(f"Path \"{path[:80]}...\" is too long ({len(path)} characters).")
		return path

	def _fail(self, msg:str) -> Status:
		logger.error(msg)
		self.results.errors.append(msg)
		return Status.FAILED

	def __call__(self, src:str, item:str | None, ext:str | None, is_dir:bool, level:int) -> Status:
		if self.state.cancelled:
			return Status.ABORTED

		# a symlinked directory below a source is an entry of its own, gated by the copy mask
		if is_dir and item is not None and _is_link(src):
			is_dir = False

		try:
			dst = self._format(self.options.destination, src)
			if is_dir:
				self.fs.mkdir_p(dst)
				self.results.dirs += 1
				produced = True
			else:
				produced = self._backup_file(src, dst)
		except (PathTooLongError, OSError) as e:
			return self._fail(f"Error: {e}")

		if not produced:
			return Status.OK
		if not is_dir:
			self._copy_attrs(src, dst, self.options.attr_mask)
			return Status.OK

		# permissions of a directory are applied once its contents are written
		self._copy_attrs(src, dst, self.options.attr_mask & ~AttrMask.PERMS)
		if self.options.attr_mask & AttrMask.PERMS:
			try:
				self.fs.make_writable(dst)
			except OSError as e:
				return self._fail(f"Error: {e}")
		if self.options.attr_mask:
			self.state.dirs.append((src, dst))
		return Status.OK

	def _backup_file(self, src:str, dst:str) -> bool:
		'''Backs up a non-directory entry. Returns whether `dst` holds a copy of `src` afterwards.'''

		# only regular files are compared; links, devices and fifos are always recreated
		if not _is_regular_file(src):
			return self._copy(src, dst)

		if self.options.link_dest is None:
			if self.fs.is_newer(dst, src) == Comparison.NOT_NEWER:
				return self._skip(src)
			return self._copy(src, dst)

		ref = self._format(self.options.link_dest, src)
		if self.fs.is_newer(ref, src) == Comparison.NOT_NEWER:
			try:
				self.fs.hardlink(ref, dst)
				self.results.linked += 1
				return True
			except OSError as e:
				logger.warning(f"Warning: Hardlink at \"{dst}\" failed ({e}). Falling back to copy.")
				self.results.link_fallbacks += 1
				return self._copy(src, dst)

		# reference missing or outdated; only copy if dst is missing or older than src
		if self.fs.is_newer(dst, src) != Comparison.NOT_NEWER:
			return self._copy(src, dst)
		return self._skip(src)

	def _copy(self, src:str, dst:str) -> bool:
		if self.fs.copy_file(src, dst, self.options.copy_mask):
			self.results.copied += 1
			return True
		self.results.skipped += 1
		return False

	def _skip(self, src:str) -> bool:
		logger.debug(f"Unchanged, skipping \"{src}\".")
		self.results.skipped += 1
		return True

	def _copy_attrs(self, src:str, dst:str, mask:AttrMask) -> None:
		# best effort: failures are reported but never fail the entry
		try:
			self.fs.copy_attrs(src, dst, mask)
			if mask:
				self.results.attrs += 1
		except OSError as e:
			logger.warning(f"Warning: {e}")
			self.results.attr_errors += 1

	def restore_dir_attrs(self) -> None:
		'''Applies the full attribute mask, including permissions and times, to directories once their contents are written, deepest first.'''

		while self.state.dirs:
			src, dst = self.state.dirs.pop()
			self._copy_attrs(src, dst, self.options.attr_mask)

def backup_cmd(args:list[str], *, fs:FsAdapter | None = None) -> Results:
	'''Run `backup()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return backup(
		parsed_args.sources,
		parsed_args.destination,
		link_dest = parsed_args.link_dest,
		archive   = parsed_args.archive,
		devices   = parsed_args.devices,
		specials  = parsed_args.specials,
		links     = parsed_args.links,
		group     = parsed_args.group,
		owner     = parsed_args.owner,
		perms     = parsed_args.perms,
		recursive = parsed_args.recursive,
		verbose   = parsed_args.verbose,
		log       = parsed_args.log,
		fs        = fs,
	)

def backup(
		sources     : Sequence[str | os.PathLike[str]],
		destination : str | os.PathLike[str],
		*,
		link_dest   : str | os.PathLike[str] | None = None,
		archive     : bool = False,
		devices     : bool = False,
		specials    : bool = False,
		links       : bool = False,
		group       : bool = False,
		owner       : bool = False,
		perms       : bool = False,
		recursive   : bool = False,
		verbose     : int  = 1,
		log         : str | os.PathLike[str] | None = None,
		fs          : FsAdapter | None = None,
	) -> Results:
	'''
	Copies every path in `sources` into its own subtree of `destination`: a source `path/to/name` ends up as `destination/name`. A source given with a trailing separator has its contents copied directly into `destination`.

	Args
		sources (list)                 : The files and directories to back up, processed in order.
		destination (str or PathLike)  : The directory to back up into. It is created if needed.
		link_dest (str or PathLike)    : A previous backup of the same sources. Files that are unchanged compared to it (same size, not modified since) are hard-linked from there instead of being copied. (Defaults to `None`.)
		archive (bool)                 : Shorthand for all of `devices`, `specials`, `links`, `group`, `owner`, `perms` and `recursive`.
		devices (bool)                 : Recreate character devices, block devices and sockets.
		specials (bool)                : Recreate named pipes.
		links (bool)                   : Recreate symlinks as symlinks. Otherwise they are skipped.
		group (bool)                   : Preserve the group.
		owner (bool)                   : Preserve the owner.
		perms (bool)                   : Preserve permission bits.
		recursive (bool)               : Descend into directory sources. Otherwise only the top directory is created.
		verbose (int)                  : 0 is silent, 1 prints errors, 2 also prints every change, 3 adds debug output. (Defaults to 1.)
		log (str or PathLike)          : The path of a log file to write. It must not exist yet. (Defaults to `None`.)
		fs (FsAdapter)                 : The file system adapter to use. (Defaults to the one for this platform.)

	Returns
		A `Results` object containing various statistics.
	'''
	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	handler_stdout = None
	handler_stderr = None
	handler_file   = None
	handler_null   = None
	state          = RunState(max_path=MAX_PATH_LENGTH)
	old_handlers   = {}

	if isinstance(verbose, int) and verbose >= 2:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if verbose >= 3:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if isinstance(verbose, int) and verbose >= 1:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)
	else:
		handler_null = logging.NullHandler()
		logger.addHandler(handler_null)

	try:
		if isinstance(sources, (str, os.PathLike)) or not isinstance(sources, Sequence):
			msg = f"Bad type for arg 'sources' (expected a sequence of str or PathLike): {sources}"
			raise TypeError(msg)
		for src in sources:
			if not isinstance(src, (str, os.PathLike)):
				msg = f"Bad type for source (expected str or PathLike): {src}"
				raise TypeError(msg)
		if not isinstance(destination, (str, os.PathLike)):
			msg = f"Bad type for arg 'destination' (expected str or PathLike): {destination}"
			raise TypeError(msg)
		if link_dest is not None and not isinstance(link_dest, (str, os.PathLike)):
			msg = f"Bad type for arg 'link_dest' (expected str or PathLike): {link_dest}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)
		if not isinstance(verbose, int) or verbose < 0:
			msg = f"Bad value for arg 'verbose' (expected a non-negative int): {verbose}"
			raise TypeError(msg)
		if fs is not None and not isinstance(fs, FsAdapter):
			msg = f"Bad type for arg 'fs' (expected FsAdapter): {fs}"
			raise TypeError(msg)

		if not sources:
			raise ValueError("Missing source and destination path.")
		if not os.fspath(destination):
			raise ValueError("Missing destination path.")

		log_file = os.fspath(log) if log is not None else None
		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)
		results.log_file = log_file

		if archive:
			devices = specials = links = group = owner = perms = recursive = True

		options = Options(
			sources     = tuple(os.fspath(src) for src in sources),
			destination = os.fspath(destination),
			attr_mask   = (AttrMask.GROUP if group else AttrMask.NONE) | (AttrMask.OWNER if owner else AttrMask.NONE) | (AttrMask.PERMS if perms else AttrMask.NONE),
			copy_mask   = (CopyMask.DEVICES if devices else CopyMask.NONE) | (CopyMask.LINKS if links else CopyMask.NONE) | (CopyMask.SPECIALS if specials else CopyMask.NONE),
			recursive   = bool(recursive),
			verbose     = verbose,
			link_dest   = os.fspath(link_dest) if link_dest is not None else None,
			log         = log_file,
		)

		if log_file is not None:
			handler_file = logging.FileHandler(log_file, encoding="utf-8")
			handler_file.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
			handler_file.setLevel(logging.DEBUG if verbose >= 3 else logging.INFO)
			logger.addHandler(handler_file)

		logger.debug(f"Starting backup: {options=}")

		if fs is None:
			fs = get_adapter()
		visitor = _BackupVisitor(options, state, fs, results)

		# signal handlers can only be installed from the main thread
		if threading.current_thread() is threading.main_thread():
			for signum in (signal.SIGINT, signal.SIGTERM):
				old_handlers[signum] = signal.signal(signum, state.cancel)

		fs.mkdir_p(options.destination)

		for index, src in enumerate(options.sources):
			if state.cancelled:
				break
			state.source_index = index

			if fs.exists_file(src):
				status = visitor(src, None, None, False, 0)
				if status is Status.FAILED or (status is Status.ABORTED and not state.cancelled):
					raise BackupError(f"Failed to backup \"{src}\".")
			elif fs.exists_dir(src):
				status = visitor(src, None, None, True, 0)
				if status is Status.FAILED or (status is Status.ABORTED and not state.cancelled):
					raise BackupError(f"Failed creating destination path for \"{src}\".")
				if options.recursive and status is Status.OK:
					status = traverse(src, -1, TraverseOption.DIRECTORY | TraverseOption.ITEM, visitor)
					if status is Status.FAILED or (status is Status.ABORTED and not state.cancelled):
						raise BackupError(f"Failed to backup \"{src}\".")
				if not state.cancelled:
					visitor.restore_dir_attrs()
			else:
				raise SourceNotFoundError(f"Could not find source \"{src}\".")

			if not state.cancelled:
				logger.info(f"Finished backing up \"{src}\".")

		if state.cancelled:
			logger.warning("Received signal. Stopped after the current operation.")
		results.cancelled = state.cancelled
		results.success = True

	except KeyboardInterrupt:
		logger.critical("Cancelled by user.")
	except LsyncError as e:
		msg = f"Error: {e}"
		logger.critical(msg)
		results.errors.append(msg)
	except OSError as e:
		msg = f"Error: {e}"
		logger.critical(msg)
		results.errors.append(msg)
	except (TypeError, ValueError) as e:
		msg = f"Input Error: {e}"
		logger.critical(msg)
		results.errors.append(msg)
	except Exception as e:
		logger.critical(f"Unexpected error: {type(e).__name__}: {e}")
		logger.critical(traceback.format_exc())
		results.errors.append(f"{type(e).__name__}: {e}")

	finally:
		for signum, old_handler in old_handlers.items():
			signal.signal(signum, old_handler)

		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(f"Directories: {results.dirs}")
		logger.info(f"Copied: {results.copied}" + (f" / Link Fallbacks: {results.link_fallbacks}" if results.link_fallbacks else ""))
		logger.info(f"Linked: {results.linked}")
		logger.info(f"Skipped: {results.skipped}")
		if results.attr_errors:
			logger.info(f"Attribute Errors: {results.attr_errors}")
		if results.cancelled:
			logger.info("The backup was cancelled before it completed.")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_null:
			logger.removeHandler(handler_null)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()

	return results

def main() -> None:
	results = backup_cmd(sys.argv[1:])
	sys.exit(results.exit_code)

if __name__ == "__main__":
	main()
