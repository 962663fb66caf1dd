import io
import os
import stat
import contextlib
import tempfile
import unittest
import doctest
from pathlib import Path
from unittest import mock

import upmerge

def snapshot(root:Path) -> dict[str, bytes | str | None]:
	'''Maps every relative path under `root` to its contents (`None` for directories, the target for symlinks).'''
	tree : dict[str, bytes | str | None] = {}
	for dir, dirnames, filenames in os.walk(root):
		for dirname in dirnames:
			tree[os.path.relpath(os.path.join(dir, dirname), root)] = None
		for filename in filenames:
			file_path = os.path.join(dir, filename)
			if os.path.islink(file_path):
				tree[os.path.relpath(file_path, root)] = os.readlink(file_path)
				continue
			with open(file_path, "rb") as f:
				tree[os.path.relpath(file_path, root)] = f.read()
	return tree

def create_file_structure(root_dir:Path, structure:dict):
	'''Recursively creates a directory structure with files.'''
	root_dir.mkdir(parents=True, exist_ok=True)
	for name, content in structure.items():
		file_path = root_dir / name
		if isinstance(content, Path):
			# create symlink
			os.symlink(content, file_path)
		elif isinstance(content, dict):
			# create dir
			create_file_structure(file_path, content)
		elif isinstance(content, (tuple, list)):
			# Create file with content and permission bits
			file_path.write_text(content[0] or "")
			os.chmod(file_path, content[1])
		elif content is None:
			# Create an empty file
			file_path.touch()
		else:
			# Create a file with content
			file_path.write_text(content)

def current_umask() -> int:
	umask = os.umask(0)
	os.umask(umask)
	return umask

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(upmerge))
	return tests

class TestPrimitives(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name)

	def tearDown(self):
		self._tmp.cleanup()

	def test_identical(self):
		create_file_structure(self.root, {
			"a": "hosts file",
			"b": "hosts file",
			"c": "hosts filE",
			"d": "hosts file\n",
			"e": None,
			"f": None,
		})
		self.assertTrue(upmerge._identical(self.root / "a", self.root / "b"))
		self.assertFalse(upmerge._identical(self.root / "a", self.root / "c"))
		self.assertFalse(upmerge._identical(self.root / "c", self.root / "a"))
		self.assertFalse(upmerge._identical(self.root / "a", self.root / "d"))
		self.assertTrue(upmerge._identical(self.root / "e", self.root / "f"))

	def test_identical_skips_reading_when_sizes_differ(self):
		create_file_structure(self.root, {
			"short": "abc",
			"long": "abcdef",
		})
		with mock.patch.object(Path, "read_bytes", side_effect=AssertionError("contents were read")):
			self.assertFalse(upmerge._identical(self.root / "short", self.root / "long"))

	def test_identical_raises_on_missing_file(self):
		create_file_structure(self.root, {"a": "x"})
		with self.assertRaises(FileNotFoundError):
			upmerge._identical(self.root / "a", self.root / "missing")
		with self.assertRaises(FileNotFoundError):
			upmerge._identical(self.root / "missing", self.root / "a")

	def test_create_from(self):
		create_file_structure(self.root, {
			"src": ("#!/bin/sh\necho hi\n", 0o750),
		})
		src = self.root / "src"
		dst = self.root / "dst"
		upmerge._create_from(src, dst)
		self.assertEqual(dst.read_bytes(), src.read_bytes())
		self.assertEqual(stat.S_IMODE(dst.stat().st_mode), 0o750 & ~current_umask())

	def test_create_from_never_overwrites(self):
		create_file_structure(self.root, {
			"src": "new",
			"dst": "old",
		})
		with self.assertRaises(FileExistsError):
			upmerge._create_from(self.root / "src", self.root / "dst")
		self.assertEqual((self.root / "dst").read_text(), "old")

	def test_stale_backup(self):
		create_file_structure(self.root, {
			"hosts": "current",
			"hosts.upmerge~": "current",
			"pf.conf": "current",
			"pf.conf.upmerge~": "older",
			"motd": "current",
		})
		self.assertIs(upmerge._stale_backup(self.root / "hosts", self.root / "hosts.upmerge~"), False)
		self.assertIs(upmerge._stale_backup(self.root / "pf.conf", self.root / "pf.conf.upmerge~"), True)
		self.assertIs(upmerge._stale_backup(self.root / "motd", self.root / "motd.upmerge~"), False)

	def test_stale_backup_inconclusive(self):
		create_file_structure(self.root, {
			"hosts": "current",
			"hosts.upmerge~": self.root / "nowhere",
		})
		# a dangling symlink in place of the backup cannot be compared
		self.assertIsNone(upmerge._stale_backup(self.root / "hosts", self.root / "hosts.upmerge~"))

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestReconcile(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name)
		self.src = self.root / "src"
		self.dst = self.root / "dst"

	def tearDown(self):
		self._tmp.cleanup()

	def reconcile(self, dry_run:bool = False) -> upmerge.Results:
		return upmerge.reconcile(upmerge.Config(self.src, self.dst, dry_run=dry_run))

	def tags(self, results:upmerge.Results) -> list[str]:
		return [tag for tag, _ in results.events]

	def test_new_file(self):
		create_file_structure(self.root, {
			"src": {
				"ssh": {
					"sshd_config": ("PermitRootLogin no\n", 0o600),
				},
			},
			"dst": {},
		})
		results = self.reconcile()
		dst_file = self.dst / "ssh" / "sshd_config"
		self.assertEqual(dst_file.read_text(), "PermitRootLogin no\n")
		self.assertEqual(stat.S_IMODE(dst_file.stat().st_mode), 0o600 & ~current_umask())
		self.assertEqual(results.events, [
			(upmerge.MKDIR, (self.dst / "ssh",)),
			(upmerge.COPY, (dst_file, self.src / "ssh" / "sshd_config")),
		])
		self.assertFalse(os.path.lexists(upmerge._backup_path(dst_file)))

	def test_new_file_dry_run(self):
		create_file_structure(self.root, {
			"src": {
				"ssh": {
					"sshd_config": "PermitRootLogin no\n",
				},
				"hosts": "127.0.0.1 localhost\n",
			},
			"dst": {},
		})
		dry = self.reconcile(dry_run=True)
		self.assertEqual(snapshot(self.dst), {})
		self.assertTrue(dry.dry_run)

		real = self.reconcile()
		self.assertEqual(dry.events, real.events)
		self.assertEqual(self.tags(real), [upmerge.COPY, upmerge.MKDIR, upmerge.COPY])

	def test_ignore_suffix(self):
		create_file_structure(self.root, {
			"src": {
				"pf.conf~": "editor leftover",
				"hosts.upmerge~": "stray backup",
				"new.conf~": "editor leftover",
			},
			"dst": {
				"pf.conf~": "something else entirely",
			},
		})
		before = snapshot(self.dst)
		with mock.patch.object(upmerge, "_identical", side_effect=AssertionError("compared")):
			results = self.reconcile()
		self.assertEqual(snapshot(self.dst), before)
		self.assertEqual(self.tags(results), [upmerge.IGNORE] * 3)
		self.assertEqual(results.events[0], (upmerge.IGNORE, (self.src / "hosts.upmerge~",)))

	def test_safe_replacement(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "old",
			},
		})
		results = self.reconcile()
		self.assertEqual((self.dst / "hosts").read_text(), "new")
		self.assertEqual((self.dst / "hosts.upmerge~").read_text(), "old")
		self.assertEqual(results.events, [
			(upmerge.MOVE, (self.dst / "hosts.upmerge~", self.dst / "hosts")),
			(upmerge.COPY, (self.dst / "hosts", self.src / "hosts")),
		])

	def test_safe_replacement_dry_run(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "old",
			},
		})
		before = snapshot(self.dst)
		results = self.reconcile(dry_run=True)
		self.assertEqual(snapshot(self.dst), before)
		self.assertEqual(self.tags(results), [upmerge.MOVE, upmerge.COPY])

	def test_refusal(self):
		create_file_structure(self.root, {
			"src": {
				"a.conf": "new a",
				"hosts": "new",
			},
			"dst": {
				"hosts": "current",
				"hosts.upmerge~": "older, not yet reviewed",
			},
		})
		before = snapshot(self.dst)
		results = upmerge.Results()
		with self.assertRaises(upmerge.RefuseError) as cm:
			upmerge.reconcile(upmerge.Config(self.src, self.dst), results=results)
		self.assertEqual(cm.exception.backup_path, self.dst / "hosts.upmerge~")
		self.assertNotIsInstance(cm.exception, OSError)

		# work done before the refusal stays done
		after = snapshot(self.dst)
		self.assertEqual(after.pop("a.conf"), b"new a")
		self.assertEqual(after, before)
		self.assertEqual(self.tags(results), [upmerge.COPY])

	def test_refusal_is_only_reported_in_dry_run(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "current",
				"hosts.upmerge~": "older, not yet reviewed",
			},
		})
		before = snapshot(self.dst)
		with self.assertLogs(upmerge.logger, level="WARNING"):
			results = self.reconcile(dry_run=True)
		self.assertEqual(snapshot(self.dst), before)
		self.assertEqual(self.tags(results), [upmerge.MOVE, upmerge.COPY])

	def test_refusal_when_backup_cannot_be_compared(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "current",
				"hosts.upmerge~": self.root / "nowhere",
			},
		})
		before = snapshot(self.dst)
		with self.assertRaises(upmerge.RefuseError):
			self.reconcile()
		self.assertEqual(snapshot(self.dst), before)

	def test_backup_regeneration(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "current",
				"hosts.upmerge~": "current",
			},
		})
		results = self.reconcile()
		self.assertEqual((self.dst / "hosts").read_text(), "new")
		self.assertEqual((self.dst / "hosts.upmerge~").read_text(), "current")
		self.assertEqual(self.tags(results), [upmerge.MOVE, upmerge.COPY])

	def test_already_ok(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "same",
				"pf.conf": "same",
			},
			"dst": {
				"hosts": "same",
				"pf.conf": "same",
				"pf.conf.upmerge~": "original",
			},
		})
		before = snapshot(self.dst)
		results = self.reconcile()
		self.assertEqual(snapshot(self.dst), before)
		self.assertEqual(results.events, [
			(upmerge.OK, (self.dst / "hosts", self.src / "hosts")),
			(upmerge.OK, (self.dst / "pf.conf", self.src / "pf.conf")),
			(upmerge.CHECK, (self.dst / "pf.conf.upmerge~",)),
		])

	def test_already_ok_with_unreadable_backup(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "same",
			},
			"dst": {
				"hosts": "same",
				"hosts.upmerge~": self.root / "nowhere",
			},
		})
		results = self.reconcile()
		# an existing backup that cannot be verified still asks for a review
		self.assertEqual(results.events, [
			(upmerge.OK, (self.dst / "hosts", self.src / "hosts")),
			(upmerge.CHECK, (self.dst / "hosts.upmerge~",)),
		])

	def test_idempotence(self):
		create_file_structure(self.root, {
			"src": {
				"a": {
					"b": {
						"c.conf": "c",
					},
				},
				"hosts": "hosts",
			},
		})
		self.reconcile()
		before = snapshot(self.dst)
		results = self.reconcile()
		self.assertEqual(snapshot(self.dst), before)
		self.assertEqual(self.tags(results), [upmerge.OK, upmerge.OK])

	def test_idempotence_after_replacement(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "old",
			},
		})
		self.reconcile()
		before = snapshot(self.dst)
		results = self.reconcile()
		self.assertEqual(snapshot(self.dst), before)
		# the backup of the replaced file still asks for a review
		self.assertEqual(self.tags(results), [upmerge.OK, upmerge.CHECK])

	def test_directory_mirroring(self):
		create_file_structure(self.root, {
			"src": {
				"a": {
					"aa": {
						"aaa": {},
					},
					"ab": {},
				},
				"b": {
					"ba": {
						"1.conf": None,
					},
				},
				"c": {},
			},
			"dst": {
				"b": {
					"existing.conf": "untouched",
				},
			},
		})
		os.chmod(self.src / "c", 0o700)
		results = self.reconcile()
		for rel in ["a", "a/aa", "a/aa/aaa", "a/ab", "b", "b/ba", "c"]:
			self.assertTrue((self.dst / rel).is_dir(), rel)
		self.assertEqual((self.dst / "b" / "existing.conf").read_text(), "untouched")
		self.assertEqual(stat.S_IMODE((self.dst / "c").stat().st_mode), 0o700 & ~current_umask())
		created = [paths[0] for tag, paths in results.events if tag == upmerge.MKDIR]
		self.assertEqual(created, [
			self.dst / "a",
			self.dst / "a" / "aa",
			self.dst / "a" / "aa" / "aaa",
			self.dst / "a" / "ab",
			self.dst / "b" / "ba",
			self.dst / "c",
		])

	def test_missing_destination_root_is_created(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
			},
		})
		results = self.reconcile()
		self.assertEqual(results.events[0], (upmerge.MKDIR, (self.dst,)))
		self.assertEqual((self.dst / "hosts").read_text(), "hosts")

	def test_missing_source_root(self):
		create_file_structure(self.root, {
			"dst": {},
		})
		with self.assertRaises(FileNotFoundError):
			self.reconcile()

	def test_directory_creation_error_aborts(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
			},
		})
		self.dst = self.root / "missing" / "dst"
		results = upmerge.Results()
		with self.assertRaises(FileNotFoundError):
			upmerge.reconcile(upmerge.Config(self.src, self.dst), results=results)
		self.assertEqual(results.events, [])
		self.assertFalse((self.root / "missing").exists())

	def test_copy_error_aborts(self):
		create_file_structure(self.root, {
			"src": {
				"b.conf": "b",
				"c.conf": "c",
			},
			"dst": {
				# looks missing to stat(), but O_EXCL refuses to create over it
				"b.conf": self.root / "nowhere",
			},
		})
		results = upmerge.Results()
		with self.assertRaises(FileExistsError):
			upmerge.reconcile(upmerge.Config(self.src, self.dst), results=results)
		self.assertEqual(results.events, [])
		self.assertTrue((self.dst / "b.conf").is_symlink())
		self.assertFalse(os.path.lexists(self.dst / "c.conf"))

	def test_rename_error_aborts(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
				"motd": "motd",
			},
			"dst": {
				"hosts": "old",
			},
		})
		before = snapshot(self.dst)
		results = upmerge.Results()
		with mock.patch.object(Path, "replace", side_effect=PermissionError("read-only")):
			with self.assertRaises(PermissionError):
				upmerge.reconcile(upmerge.Config(self.src, self.dst), results=results)
		self.assertEqual(results.events, [])
		self.assertEqual(snapshot(self.dst), before)

	def test_symlink_in_source_is_copied_as_file(self):
		create_file_structure(self.root, {
			"target": "linked contents",
			"src": {},
			"dst": {},
		})
		create_file_structure(self.src, {
			"link.conf": self.root / "target",
		})
		self.reconcile()
		dst_file = self.dst / "link.conf"
		self.assertFalse(dst_file.is_symlink())
		self.assertEqual(dst_file.read_text(), "linked contents")

	def test_observer(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
			},
			"dst": {},
		})
		seen = []
		results = upmerge.reconcile(
			upmerge.Config(self.src, self.dst),
			observe = lambda tag, *paths: seen.append((tag, paths)),
		)
		self.assertEqual(seen, results.events)
		self.assertEqual(results.counts[upmerge.COPY], 1)

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestUpmerge(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name)
		self.src = self.root / "src"
		self.dst = self.root / "dst"

	def tearDown(self):
		self._tmp.cleanup()

	def test_success(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
			},
			"dst": {},
		})
		results = upmerge.upmerge(self.src, self.dst, quiet=True)
		self.assertTrue(results.success)
		self.assertIsNone(results.error)
		self.assertEqual(results.exit_code, upmerge.EXIT_OK)

	def test_refusal(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "new",
			},
			"dst": {
				"hosts": "current",
				"hosts.upmerge~": "older",
			},
		})
		stderr = io.StringIO()
		with contextlib.redirect_stderr(stderr):
			results = upmerge.upmerge(self.src, self.dst)
		self.assertFalse(results.success)
		self.assertTrue(results.refused)
		self.assertEqual(results.exit_code, upmerge.EXIT_ERROR)
		self.assertIn(str(self.dst / "hosts.upmerge~"), stderr.getvalue())

	def test_filesystem_error(self):
		results = upmerge.upmerge(self.src, self.dst, quiet=True)
		self.assertFalse(results.success)
		self.assertFalse(results.refused)
		self.assertIsInstance(results.error, FileNotFoundError)
		self.assertEqual(results.exit_code, upmerge.EXIT_ERROR)

	def test_input_errors(self):
		create_file_structure(self.root, {
			"src": {},
		})
		results = upmerge.upmerge(self.src, self.src, quiet=True)
		self.assertIsInstance(results.error, ValueError)
		results = upmerge.upmerge(self.src, self.dst, dry_run="yes", quiet=True)
		self.assertIsInstance(results.error, TypeError)
		self.assertFalse(self.dst.exists())

	def test_verbose_output(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
				"hosts~": "hosts",
			},
		})
		stdout = io.StringIO()
		with contextlib.redirect_stdout(stdout):
			results = upmerge.upmerge(self.src, self.dst, dry_run=True, verbose=True)
		self.assertTrue(results.success)
		lines = stdout.getvalue().splitlines()
		self.assertIn(f"MKDIR:\t{self.dst}", lines)
		self.assertIn(f"COPY:\t{self.dst / 'hosts'} <- {self.src / 'hosts'}", lines)
		self.assertIn(f"IGNORE:\t{self.src / 'hosts~'}", lines)
		self.assertIn("*** DRY RUN ***", lines)
		self.assertIn("Copied: 1", lines)
		self.assertFalse(self.dst.exists())

	def test_silent_without_verbose(self):
		create_file_structure(self.root, {
			"src": {
				"hosts": "hosts",
			},
		})
		stdout = io.StringIO()
		with contextlib.redirect_stdout(stdout):
			upmerge.upmerge(self.src, self.dst, quiet=True)
		self.assertEqual(stdout.getvalue(), "")

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestCommandLine(unittest.TestCase):
	def test_help(self):
		stdout = io.StringIO()
		with contextlib.redirect_stdout(stdout), self.assertRaises(SystemExit) as cm:
			upmerge.upmerge_cmd(["-h"])
		self.assertEqual(cm.exception.code, upmerge.EXIT_OK)
		self.assertIn("--dry-run", stdout.getvalue())

	def test_usage_errors(self):
		for args in (["-x"], ["stray"], ["-s"], ["-n", "extra", "args"]):
			with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as cm:
				upmerge.upmerge_cmd(args)
			self.assertEqual(cm.exception.code, upmerge.EXIT_USAGE, args)

	def test_defaults(self):
		args = upmerge._ArgParser.parse([])
		self.assertEqual(args.src, upmerge.DEFAULT_SRC_ROOT)
		self.assertEqual(args.dest, upmerge.DEFAULT_DST_ROOT)
		self.assertFalse(args.dry_run)
		self.assertFalse(args.verbose)

	def test_run(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"hosts": "new",
				},
				"dst": {
					"hosts": "old",
				},
			})
			src = str(test_root / "src")
			dst = str(test_root / "dst")

			results = upmerge.upmerge_cmd(["-n", "-q", "-s", src, "-d", dst])
			self.assertEqual(results.exit_code, upmerge.EXIT_OK)
			self.assertEqual((test_root / "dst" / "hosts").read_text(), "old")

			results = upmerge.upmerge_cmd(["-q", "-s", src, "-d", dst])
			self.assertEqual(results.exit_code, upmerge.EXIT_OK)
			self.assertEqual((test_root / "dst" / "hosts").read_text(), "new")

			results = upmerge.upmerge_cmd(["-q", "-s", str(test_root / "missing"), "-d", dst])
			self.assertEqual(results.exit_code, upmerge.EXIT_ERROR)

	def test_main_exit_code(self):
		with mock.patch("sys.argv", ["upmerge", "-q", "-s", "/nonexistent/upmerge/src", "-d", "/nonexistent/upmerge/dst"]):
			with self.assertRaises(SystemExit) as cm:
				upmerge.main()
		self.assertEqual(cm.exception.code, upmerge.EXIT_ERROR)

if __name__ == "__main__":
	unittest.main()
