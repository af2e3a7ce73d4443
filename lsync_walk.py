# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import os
import logging
from enum import Enum, IntFlag
from typing import Callable

logger = logging.getLogger("lsync.walk")

class TraverseOption(IntFlag):
	'''Selects which entries `traverse()` reports and whether it descends into symlinked directories.'''

	DIRECTORY    = 0x01
	ITEM         = 0x02
	FOLLOW_LINKS = 0x04
	ALL          = DIRECTORY | ITEM | FOLLOW_LINKS

class Status(Enum):
	'''Outcome of a visitor call or of a whole traversal.'''

	OK      = 1
	ABORTED = 0
	FAILED  = -1

# visitor(path, item, ext, is_dir, level) -> Status
Visitor = Callable[[str, str | None, str | None, bool, int], Status]

def _extension(name:str) -> str:
	'''
	Returns the part of `name` starting at its last dot, or an empty string.

	>>> _extension("archive.tar.gz")
	'.gz'
	>>> _extension("Makefile")
	''
	'''

	i = name.rfind(".")
	return name[i:] if i >= 0 else ""

def _is_link(entry:os.DirEntry) -> bool:
	if entry.is_symlink():
		return True
	is_junction = getattr(entry, "is_junction", None)
	return bool(is_junction and is_junction())

def traverse(path:str, max_level:int, options:TraverseOption, visitor:Visitor) -> Status:
	'''
	Walks the directory `path` in pre-order and reports its entries to `visitor`.

	Args
		path (str)                : The directory to walk. The directory itself is not reported.
		max_level (int)           : The deepest level to report, where the entries of `path` are level 0. A negative value means no limit.
		options (TraverseOption)  : `DIRECTORY` reports directories, `ITEM` reports everything else, `FOLLOW_LINKS` descends into symlinked directories (which are otherwise reported but not entered).
		visitor (Visitor)         : Called as `visitor(full_path, item_name, extension, is_dir, level)`. Any result other than `Status.OK` stops the walk and is returned.

	Entries are reported in the order the operating system lists them, and a directory is always reported before its contents.

	Returns
		`Status.OK` once everything was visited, `Status.ABORTED` if the visitor asked to stop, or `Status.FAILED` if a directory could not be listed.
	'''

	options = TraverseOption(options) & TraverseOption.ALL
	if not options & (TraverseOption.DIRECTORY | TraverseOption.ITEM):
		raise ValueError(f"Nothing to report with traverse options: {options!r}")

	visited : set[tuple[int, int]] | None = None
	if options & TraverseOption.FOLLOW_LINKS:
		visited = set()
	return _traverse(os.fspath(path), max_level, 0, options, visitor, visited)

def _traverse(path:str, max_level:int, level:int, options:TraverseOption, visitor:Visitor, visited:set[tuple[int, int]] | None) -> Status:
	if max_level >= 0 and level > max_level:
		return Status.OK

	try:
		if visited is not None:
			st = os.stat(path)
			key = (st.st_dev, st.st_ino)
			if key in visited:
				logger.error(f"{path}: Symlink circular reference.")
				return Status.FAILED
			visited.add(key)
		with os.scandir(path) as it:
			entries = list(it)
	except OSError as e:
		logger.error(f"{path}:scandir(): {e.strerror or e}")
		return Status.FAILED

	logger.debug(f"scanning: {path}")

	try:
		for entry in entries:
			name = entry.name
			full_path = os.path.join(path, name)
			try:
				is_dir = entry.is_dir()
			except OSError:
				is_dir = False

			if is_dir:
				if options & TraverseOption.DIRECTORY:
					status = visitor(full_path, name, _extension(name), True, level)
					if status is not Status.OK:
						return status
				if not _is_link(entry) or options & TraverseOption.FOLLOW_LINKS:
					status = _traverse(full_path, max_level, level + 1, options, visitor, visited)
					if status is not Status.OK:
						return status
			elif options & TraverseOption.ITEM:
				status = visitor(full_path, name, _extension(name), False, level)
				if status is not Status.OK:
					return status
	finally:
		if visited is not None:
			visited.discard(key)

	return Status.OK
