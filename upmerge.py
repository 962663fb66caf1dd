# Copyright (c) 2025 upmerge contributors
# GNU General Public License v3.0

import sys
import argparse
import os
import stat
import shutil
import logging
import traceback
from pathlib import Path
from collections import Counter
from typing import NamedTuple, Callable, Iterator

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

BACKUP_SUFFIX = ".upmerge~"
IGNORE_SUFFIX = "~"

DEFAULT_SRC_ROOT = "/usr/local/upmerge/etc"
DEFAULT_DST_ROOT = "/etc"

EXIT_OK    = 0
EXIT_USAGE = 1
EXIT_ERROR = 2

# observation tags
MKDIR  = "MKDIR"
IGNORE = "IGNORE"
COPY   = "COPY"
OK     = "OK"
CHECK  = "CHECK"
MOVE   = "MOVE"

Observer = Callable[..., None]

class RefuseError(Exception):
	'''Raised when replacing a destination file would discard a backup that has not been reviewed.'''

	def __init__(self, backup_path:Path) -> None:
		super().__init__(f"refusing to overwrite backup: {backup_path}")
		self.backup_path = backup_path

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _UsageParser(argparse.ArgumentParser):
	'''`ArgumentParser` that exits with `EXIT_USAGE` instead of argparse's default of 2.'''

	def error(self, message):
		self.print_usage(sys.stderr)
		self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = _UsageParser(
		prog="upmerge",
		description=f"Maintain local overrides to a system configuration directory. Each file in the source directory is copied over its counterpart in the destination directory. A replaced file is kept once, next to the original, with the suffix \"{BACKUP_SUFFIX}\". Source files ending in \"{IGNORE_SUFFIX}\" are ignored.",
		epilog="Only one instance may run against a destination directory at a time.",
	)

	parser.add_argument("-n", "--dry-run", action="store_true", default=False, help="Don't try making any changes. Changes that would have occurred are still reported with -v.")
	parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Report every directory created and every file ignored, copied, found up to date or moved to a backup.")
	parser.add_argument("-s", "--src", metavar="dir", default=DEFAULT_SRC_ROOT, help=f"Use dir as the source. (Defaults to {DEFAULT_SRC_ROOT}.)")
	parser.add_argument("-d", "--dest", metavar="dir", default=DEFAULT_DST_ROOT, help=f"Use dir as the destination. (Defaults to {DEFAULT_DST_ROOT}.)")
	parser.add_argument("--debug", action="store_true", default=False, help="Print debug messages.")
	parser.add_argument("-q", "--quiet", action="store_true", default=False, help="Forgo printing errors to stderr.")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		return _ArgParser.parser.parse_args(args)

class Config(NamedTuple):
	'''Settings for one call to `reconcile()`. Built once by the caller.'''

	src_root : Path
	dst_root : Path
	dry_run  : bool = False

class Results:
	'''Observations and outcome of a run, returned by `reconcile()` and `upmerge()`.'''

	def __init__(self) -> None:
		self.success : bool                 = False
		self.dry_run : bool                 = False
		self.error   : BaseException | None = None

		self.events : list[tuple[str, tuple[Path, ...]]] = []
		self.counts : Counter[str]                        = Counter()

	def add(self, tag:str, *paths:Path) -> None:
		self.events.append((tag, paths))
		self.counts[tag] += 1

	@property
	def refused(self) -> bool:
		return isinstance(self.error, RefuseError)

	@property
	def exit_code(self) -> int:
		return EXIT_OK if self.success else EXIT_ERROR

def upmerge_cmd(args:list[str]) -> Results:
	'''Run `upmerge()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return upmerge(
		parsed_args.src,
		parsed_args.dest,
		dry_run = parsed_args.dry_run,
		verbose = parsed_args.verbose,
		debug   = parsed_args.debug,
		quiet   = parsed_args.quiet,
	)

def upmerge(
		src     : str | os.PathLike[str] = DEFAULT_SRC_ROOT,
		dst     : str | os.PathLike[str] = DEFAULT_DST_ROOT,
		*,
		dry_run : bool = False,
		verbose : bool = False,
		debug   : bool = False,
		quiet   : bool = False,
	) -> Results:
	'''
	Copies every file under `src` onto the same relative path under `dst`, creating missing directories on the way. A file that already exists in `dst` with different contents is first renamed to a backup (its path plus `BACKUP_SUFFIX`), then replaced. Only one backup is ever kept per file: if a backup already exists and no longer matches the file it would be made from, nothing is touched and the run stops with a `RefuseError`, so that the old backup can be reviewed by hand. Files ending in `IGNORE_SUFFIX` are never copied. Nothing is ever deleted.

	The run stops at the first error. Everything done up to that point stays done, and running again picks up where the previous run stopped.

	Two runs against the same `dst` must not overlap; nothing guards against it.

	Args
		src (str or PathLike) : The root directory holding the overrides. (Defaults to `DEFAULT_SRC_ROOT`.)
		dst (str or PathLike) : The root directory to apply the overrides to. (Defaults to `DEFAULT_DST_ROOT`.)
		dry_run (bool)        : Whether to hold off performing any operation that would make a file system change. Changes that would have occurred are still reported. (Defaults to `False`.)
		verbose (bool)        : Whether to print one line per observation to stdout. (Defaults to `False`.)
		debug (bool)          : Whether to also print debug messages to stdout. (Defaults to `False`.)
		quiet (bool)          : Whether to forgo printing errors to stderr. (Defaults to `False`.)

	Example Console Output
		MKDIR:	/etc/ssh
		COPY:	/etc/ssh/sshd_config <- /usr/local/upmerge/etc/ssh/sshd_config
		OK:	/etc/hosts <- /usr/local/upmerge/etc/hosts
		CHECK:	/etc/hosts.upmerge~
		MOVE:	/etc/pf.conf.upmerge~ <- /etc/pf.conf
		COPY:	/etc/pf.conf <- /usr/local/upmerge/etc/pf.conf
		IGNORE:	/usr/local/upmerge/etc/pf.conf~

		Summary
		-------
		Dirs Created: 1
		Copied: 2
		Moved to Backup: 1
		Already OK: 1
		Needs Check: 1
		Ignored: 1

	Returns
		A `Results` object holding the observations and, if the run failed, the error that stopped it.
	'''
	results = Results()
	results.dry_run = dry_run

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	handler_stdout = None
	handler_stderr = None

	if verbose or debug:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not quiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	try:
		if not isinstance(src, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {src}"
			raise TypeError(msg)
		if not isinstance(dst, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {dst}"
			raise TypeError(msg)
		if not isinstance(dry_run, bool):
			msg = f"Bad type for arg 'dry_run' (expected bool): {dry_run}"
			raise TypeError(msg)

		config = Config(
			src_root = Path(src),
			dst_root = Path(dst),
			dry_run  = dry_run,
		)

		if config.src_root.resolve() == config.dst_root.resolve():
			msg = f"Chosen 'src' and 'dst' point to the same directory"
			raise ValueError(msg)

		logger.debug(f"Starting upmerge: {config=} {debug=} {quiet=}")

		reconcile(config, observe=_log_observation, results=results)

		results.success = True

	except KeyboardInterrupt as e:
		results.error = e
		logger.critical(f"Cancelled by user.")
	except RefuseError as e:
		results.error = e
		logger.error(f"ERROR:\t{e}")
		logger.error(f"Review {e.backup_path}, then remove it before running again.")
	except (TypeError, ValueError) as e:
		results.error = e
		logger.critical(f"Input Error: {e}")
	except OSError as e:
		results.error = e
		logger.error(f"{_ArgParser.parser.prog}: {e}")
	except Exception as e:
		results.error = e
		logger.critical("Unexpected error: " + _error_summary(e))
		logger.critical(traceback.format_exc())

	finally:
		if dry_run:
			logger.info("")
			logger.info("*** DRY RUN ***")
		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(f"Dirs Created: {results.counts[MKDIR]}")
		logger.info(f"Copied: {results.counts[COPY]}")
		logger.info(f"Moved to Backup: {results.counts[MOVE]}")
		logger.info(f"Already OK: {results.counts[OK]}")
		logger.info(f"Needs Check: {results.counts[CHECK]}")
		logger.info(f"Ignored: {results.counts[IGNORE]}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

	return results

def reconcile(config:Config, *, observe:Observer | None = None, results:Results | None = None) -> Results:
	'''
	Walks `config.src_root` once and brings `config.dst_root` in line with it.

	Every observation is added to `results` and passed on to `observe(tag, *paths)`, if given. Tags are `MKDIR`, `IGNORE`, `COPY`, `OK`, `CHECK` and `MOVE`; observations are made the same way in a dry run.

	Raises `RefuseError` if a file cannot be replaced without losing an unreviewed backup, and `OSError` on any file system error. Either stops the walk; `results` keeps whatever was observed before that.
	'''
	if results is None:
		results = Results()
	results.dry_run = config.dry_run

	def note(tag:str, *paths:Path) -> None:
		results.add(tag, *paths)
		if observe is not None:
			observe(tag, *paths)

	src_root = Path(config.src_root)
	dst_root = Path(config.dst_root)

	for src_path, is_dir in _walk(src_root):
		dst_path = dst_root / src_path.relative_to(src_root)
		if is_dir:
			if _make_dir(src_path, dst_path, dry_run=config.dry_run):
				note(MKDIR, dst_path)
		else:
			_reconcile_file(src_path, dst_path, note, dry_run=config.dry_run)

	return results

def _reconcile_file(src_path:Path, dst_path:Path, note:Observer, *, dry_run:bool = False) -> None:
	'''Decides what to do with one source file, and does it unless `dry_run` is set.'''

	if _is_ignored(src_path):
		note(IGNORE, src_path)
		return

	try:
		dst_path.stat()
	except FileNotFoundError:
		if not dry_run:
			_create_from(src_path, dst_path)
		note(COPY, dst_path, src_path)
		return

	backup_path = _backup_path(dst_path)

	if _identical(src_path, dst_path):
		note(OK, dst_path, src_path)
		if _stale_backup(dst_path, backup_path) is not False:
			note(CHECK, backup_path)
		return

	stale = _stale_backup(dst_path, backup_path)
	if not dry_run:
		if stale is not False:
			raise RefuseError(backup_path)
		dst_path.replace(backup_path)
	elif stale is not False:
		logger.warning(f"Backup would block this update: {backup_path}")
	note(MOVE, backup_path, dst_path)

	if not dry_run:
		_create_from(src_path, dst_path)
	note(COPY, dst_path, src_path)

def _walk(root:Path) -> Iterator[tuple[Path, bool]]:
	'''
	Depth-first, pre-order walk yielding `(path, is_dir)` for `root` and everything under it. Within a directory, files are yielded (sorted) before subdirectories are descended into (sorted). Symlinks are never descended into and are yielded as files. Any error listing a directory is raised.
	'''

	for dir, subdirnames, filenames in os.walk(root, onerror=_raise):
		yield Path(dir), True

		subdirnames.sort()
		i = 0
		while i < len(subdirnames):
			# symlinks to dirs are listed here but they aren't followed
			subdirname = subdirnames[i]
			if os.path.islink(os.path.join(dir, subdirname)):
				filenames.append(subdirname)
				del subdirnames[i]
				continue
			i += 1

		for filename in sorted(filenames):
			yield Path(dir) / filename, False

def _raise(e:OSError) -> None:
	raise e

def _make_dir(src_dir:Path, dst_dir:Path, *, dry_run:bool = False) -> bool:
	'''Create `dst_dir` with the permission bits of `src_dir`. Returns `False` if `dst_dir` already exists.'''

	mode = stat.S_IMODE(src_dir.stat().st_mode)
	if dry_run:
		return not os.path.lexists(dst_dir)
	try:
		dst_dir.mkdir(mode=mode)
	except FileExistsError:
		return False
	return True

def _create_from(src:Path, dst:Path) -> None:
	'''
	Copy `src` into a new file `dst`, giving it the permission bits of `src` (less the umask). `dst` is opened with `O_EXCL`, so a `FileExistsError` is raised if it already exists, even if it appeared a moment ago. If the copy fails midway, `dst` is left partly written.
	'''

	mode = stat.S_IMODE(os.stat(src).st_mode)
	with open(src, "rb") as fr:
		fd = os.open(dst, os.O_CREAT | os.O_EXCL | os.O_WRONLY | getattr(os, "O_BINARY", 0), mode)
		with os.fdopen(fd, "wb") as fw:
			shutil.copyfileobj(fr, fw)

def _identical(path1:str | os.PathLike[str], path2:str | os.PathLike[str]) -> bool:
	'''
	Whether the files at `path1` and `path2` have the same contents. Files of different sizes are reported as different without being read. Errors are raised rather than reported as a difference.
	'''

	if os.stat(path1).st_size != os.stat(path2).st_size:
		return False
	return Path(path1).read_bytes() == Path(path2).read_bytes()

def _stale_backup(dst_path:Path, backup_path:Path) -> bool | None:
	'''
	Whether `backup_path` exists with contents different from `dst_path`. `False` if there is no backup. `None` if the two could not be compared.
	'''

	if not os.path.lexists(backup_path):
		return False
	try:
		return not _identical(dst_path, backup_path)
	except OSError as e:
		logger.debug(f"Could not compare with backup: {_error_summary(e)}")
		return None

def _backup_path(path:Path) -> Path:
	'''
	>>> _backup_path(Path("etc", "hosts")).name
	'hosts.upmerge~'
	'''

	return path.with_name(path.name + BACKUP_SUFFIX)

def _is_ignored(path:Path) -> bool:
	'''
	>>> _is_ignored(Path("etc", "pf.conf~"))
	True
	>>> _is_ignored(Path("etc", "pf.conf.upmerge~"))
	True
	>>> _is_ignored(Path("etc", "pf.conf"))
	False
	'''

	return str(path).endswith(IGNORE_SUFFIX)

def _log_observation(tag:str, *paths:Path) -> None:
	'''Observer used by `upmerge()`: logs one line per observation, e.g. "COPY:	dst <- src".'''

	logger.info(f"{tag}:\t" + " <- ".join(str(p) for p in paths))

def _error_summary(e):
	'''Get a one-line summary of an Error.'''

	if isinstance(e, OSError):
		error_type = type(e).__name__
		affected_file = getattr(e, "filename", "N/A")
		msg = f"{error_type}: {affected_file}"
	else:
		error_type = type(e).__name__
		error_message = str(e) or "Unknown error"
		msg = f"{error_type}: {error_message}"
	return msg

def main() -> None:
	results = upmerge_cmd(sys.argv[1:])
	sys.exit(results.exit_code)

if __name__ == "__main__":
	main()
