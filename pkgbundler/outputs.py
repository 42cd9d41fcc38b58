# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import gzip
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path

from pkgbundler.crypto import sha256_file_hex
from pkgbundler.history import git_tree_hash
from pkgbundler.tomlfile import read_toml, write_toml

_LOG = logging.getLogger(__name__)

ARTIFACTS_FILE = "Artifacts.toml"
TARBALL_SUFFIX = ".tar.gz"


def output_kind(target: Path) -> str:
	if target.name == ARTIFACTS_FILE:
		return "artifacts"
	if target.name.endswith(TARBALL_SUFFIX):
		return "tarball"
	return "directory"


def _reset_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
	info.uid = info.gid = 0
	info.uname = info.gname = ""
	info.mtime = 0
	return info


def write_tarball(root: Path, target: Path) -> Path:
	"""
	Write `root` as a gzip-compressed tarball with normalized metadata.

	Owners and timestamps are zeroed so the same bundle always yields the same
	archive bytes.
	"""
	target.parent.mkdir(parents=True, exist_ok=True)
	partial = target.with_name(target.name + ".partial")
	with open(partial, "wb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
		with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
			for item in sorted(root.iterdir()):
				tar.add(item, arcname=item.name, filter=_reset_tarinfo)
	os.replace(partial, target)
	return target


def _replace_file(src: str, dst: str) -> str:
	# git object files are read-only
	if os.path.lexists(dst):
		os.unlink(dst)
	return shutil.copy2(src, dst)


def write_directory(root: Path, target: Path, *, clean: bool = False) -> Path:
	"""
	Copy the bundle to `target`.

	With `clean` an existing directory is removed first; otherwise the bundle
	is merged over it.
	"""
	target.parent.mkdir(parents=True, exist_ok=True)
	if target.exists() and not clean:
		shutil.copytree(root, target, dirs_exist_ok=True, copy_function=_replace_file)
		return target
	stage = Path(tempfile.mkdtemp(prefix=f".{target.name}-", dir=target.parent))
	try:
		shutil.copytree(root, stage, dirs_exist_ok=True)
		if target.exists():
			_LOG.warning("cleaning output directory %s", target)
			shutil.rmtree(target)
		stage.rename(target)
	finally:
		if stage.exists():
			shutil.rmtree(stage, ignore_errors=True)
	return target


def write_artifacts(root: Path, target: Path, *, name: str) -> Path:
	"""
	Write `<name>.tar.gz` next to `target` and record it in the artifacts file.

	The entry carries the git tree hash of the bundle contents and a download
	entry pointing at the tarball by file name.
	"""
	tarball = write_tarball(root, target.with_name(f"{name}{TARBALL_SUFFIX}"))
	artifacts = read_toml(target) if target.is_file() else {}
	artifacts[name] = {
		"git-tree-sha1": git_tree_hash(root),
		"download": [{"url": tarball.name, "sha256": sha256_file_hex(tarball)}],
	}
	write_toml(target, artifacts)
	return target


def materialize(root: Path, targets: list[Path], *, name: str, clean: bool = False) -> list[Path]:
	written: list[Path] = []
	for target in targets:
		kind = output_kind(target)
		_LOG.info("writing %s bundle %s", kind, target)
		if kind == "artifacts":
			written.append(write_artifacts(root, target, name=name))
		elif kind == "tarball":
			written.append(write_tarball(root, target))
		else:
			written.append(write_directory(root, target, clean=clean))
	return written
