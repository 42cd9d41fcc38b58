# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Version history assembly.

Every stripped version of a module is committed, in ascending version order,
into one fresh git repository per module. The package manager addresses a
version by the tree hash of its commit, so that hash is what ends up in the
registry's `Versions.toml`.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Mapping

from pkgbundler.environment import parse_version
from pkgbundler.errors import HistoryAssemblyError

_LOG = logging.getLogger(__name__)

GIT_USER_NAME = "PackageBundler"
BINARY_PATTERNS = ("*.pyser binary", "*.sign binary")
_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)


def ensure_binary_gitattributes(root: Path) -> Path:
	"""
	Make sure `.gitattributes` in `root` marks payloads and signatures as binary.

	Without this, checking out a history on a platform with line-ending
	conversion could rewrite payload bytes and invalidate their signatures.
	"""
	path = root / ".gitattributes"
	lines = path.read_text(encoding="utf-8").splitlines() if path.is_file() else []
	missing = [p for p in BINARY_PATTERNS if p not in lines]
	if missing or not path.is_file():
		path.write_text("\n".join([*lines, *missing]) + "\n", encoding="utf-8")
	return path


def _git_object_id(kind: str, data: bytes) -> bytes:
	return hashlib.sha1(f"{kind} {len(data)}\0".encode("ascii") + data).digest()


def _tree_sort_key(entry: tuple[str, str, bytes]) -> bytes:
	mode, name, _ = entry
	return (name + "/" if mode == "40000" else name).encode("utf-8")


def _tree_object(root: Path) -> bytes | None:
	entries: list[tuple[str, str, bytes]] = []
	for item in os.scandir(root):
		if item.name == ".git":
			continue
		if item.is_symlink():
			target = os.readlink(item.path).encode("utf-8")
			entries.append(("120000", item.name, _git_object_id("blob", target)))
		elif item.is_dir():
			sub = _tree_object(Path(item.path))
			if sub is not None:
				entries.append(("40000", item.name, sub))
		else:
			data = Path(item.path).read_bytes()
			executable = os.name != "nt" and bool(item.stat().st_mode & 0o100)
			entries.append(("100755" if executable else "100644", item.name, _git_object_id("blob", data)))
	if not entries:
		return None
	body = b"".join(f"{mode} {name}".encode("utf-8") + b"\0" + oid for mode, name, oid in sorted(entries, key=_tree_sort_key))
	return _git_object_id("tree", body)


def git_tree_hash(root: Path) -> str:
	"""Git tree hash of a working directory, computed without git (`.git` is ignored)."""
	oid = _tree_object(Path(root))
	return (oid or _git_object_id("tree", b"")).hex()


def _git(repo: Path, *args: str, env: Mapping[str, str] | None = None) -> str:
	argv = ["git", *args]
	try:
		res = subprocess.run(
			argv,
			cwd=repo,
			check=False,
			capture_output=True,
			text=True,
			env={**os.environ, **env} if env else None,
		)
	except FileNotFoundError as err:
		raise HistoryAssemblyError(reason_code="GIT_NOT_FOUND", message="git executable not found on PATH") from err
	if res.returncode != 0:
		raise HistoryAssemblyError(
			reason_code="GIT_FAILED",
			message=f"`{' '.join(argv)}` exited with {res.returncode}",
			path=str(repo),
			details=[line for line in res.stderr.splitlines() if line.strip()],
		)
	return res.stdout.strip()


def _pinned_env(index: int) -> dict[str, str]:
	stamp = (_EPOCH + timedelta(seconds=index)).strftime("%Y-%m-%dT%H:%M:%S+0000")
	return {"GIT_AUTHOR_DATE": stamp, "GIT_COMMITTER_DATE": stamp}


def _clear_worktree(repo: Path) -> None:
	for item in repo.iterdir():
		if item.name == ".git":
			continue
		if item.is_dir() and not item.is_symlink():
			shutil.rmtree(item)
		else:
			item.unlink()


def _copy_fresh(src: str, dst: str) -> str:
	# copies get the current mtime, never the source's
	shutil.copyfile(src, dst)
	shutil.copymode(src, dst)
	return dst


def _init_repo(repo: Path) -> None:
	if (repo / ".git").exists():
		raise HistoryAssemblyError(
			reason_code="HISTORY_EXISTS",
			message="refusing to assemble history into an existing repository",
			path=str(repo),
		)
	_git(repo, "init", "-q")
	_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
	for key, value in (
		("user.name", GIT_USER_NAME),
		("user.email", ""),
		("core.autocrlf", "false"),
		("commit.gpgsign", "false"),
		("tag.gpgsign", "false"),
	):
		_git(repo, "config", key, value)


def assemble_history(name: str, versions: Mapping[str, Path], *, scratch: Path) -> dict[str, str]:
	"""
	Replace `packages/<name>/` with a git history of all its stripped versions.

	`versions` maps a version string to its stripped tree, which must all live
	in the same `packages/<name>/` directory. Returns version -> tree hash.
	"""
	if not versions:
		return {}
	parents = {Path(p).resolve().parent for p in versions.values()}
	if len(parents) != 1:
		raise HistoryAssemblyError(
			reason_code="HISTORY_SPLIT",
			message="stripped versions of one package must share a directory",
			package=name,
			details=sorted(str(p) for p in parents),
		)
	package_dir = parents.pop()

	repo = Path(tempfile.mkdtemp(prefix=f"{name}-history-", dir=scratch))
	_init_repo(repo)

	out: dict[str, str] = {}
	for index, version in enumerate(sorted(versions, key=parse_version)):
		_clear_worktree(repo)
		shutil.copytree(versions[version], repo, dirs_exist_ok=True, copy_function=_copy_fresh)
		message = f"Set version to {version}"
		env = _pinned_env(index)
		_git(repo, "read-tree", "--empty")
		_git(repo, "add", "-A", ".")
		_git(repo, "commit", "-q", "--no-verify", "-m", message, env=env)
		_git(repo, "tag", "-a", f"v{version}", "-m", message, env=env)

		commit = _git(repo, "rev-parse", "HEAD")
		tree = _git(repo, "rev-parse", f"{commit}^{{tree}}")
		computed = git_tree_hash(repo)
		if computed != tree:
			_LOG.warning("%s %s: computed tree hash %s differs from git's %s; using git's", name, version, computed, tree)
		out[version] = tree
		_LOG.info("committed %s %s (tree %s)", name, version, tree)

	shutil.rmtree(package_dir)
	shutil.copytree(repo, package_dir)
	shutil.rmtree(repo, ignore_errors=True)
	return out
