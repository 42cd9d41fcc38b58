# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Module stripping: prepare module trees, run the batch worker, copy results out.

Preparation happens in the bundler process. The actual rewriting of source
files happens in `pkgbundler.worker`, started once per runtime channel under
the interpreter selected for that channel.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from pkgbundler import worker
from pkgbundler.errors import (
	BundlerError,
	ConfigurationError,
	ContentNotFoundError,
	OutputConflictError,
	ParseOrSerializeError,
	ProjectFileMissingError,
)
from pkgbundler.history import ensure_binary_gitattributes
from pkgbundler.keygen import KeyPair
from pkgbundler.remap import replace_uuids
from pkgbundler.runtime import Runtime
from pkgbundler.sign import PUBLIC_KEY_NAME, sign_file, sign_tree
from pkgbundler.sniff import SniffedPackage
from pkgbundler.tomlfile import read_toml, write_toml

_LOG = logging.getLogger(__name__)

WORKER_SCRIPT = Path(worker.__file__).resolve()

NON_RUNTIME_DIRS = frozenset(
	{
		".git",
		".github",
		".gitlab",
		".circleci",
		".ci",
		".vscode",
		"test",
		"tests",
		"doc",
		"docs",
		"benchmark",
		"benchmarks",
		"__pycache__",
	}
)
NON_RUNTIME_FILES = frozenset(
	{
		".gitignore",
		".editorconfig",
		".pre-commit-config.yaml",
		".flake8",
		"ruff.toml",
		".readthedocs.yaml",
	}
)


@dataclass(frozen=True)
class SourceFile:
	relative_path: str
	entry_point: str | None = None

	def to_request(self) -> dict[str, Any]:
		return {
			"relative_path": self.relative_path,
			"entry_point": self.entry_point or "",
		}


@dataclass
class WorkItem:
	name: str
	uuid: str
	version: str
	channel: str
	temp_directory: Path
	project: dict[str, Any]
	files: list[SourceFile] = field(default_factory=list)

	def to_request(self) -> dict[str, Any]:
		return {
			"package_name": self.name,
			"package_version": self.version,
			"temp_directory": str(self.temp_directory),
			"files": [f.to_request() for f in self.files],
		}


@dataclass(frozen=True)
class StrippedModule:
	name: str
	uuid: str
	version: str
	path: Path
	project: dict[str, Any]


def _make_writable(root: Path) -> None:
	for dirpath, dirnames, filenames in os.walk(root):
		for name in [*dirnames, *filenames]:
			p = Path(dirpath) / name
			if not p.is_symlink():
				p.chmod(p.stat().st_mode | stat.S_IWUSR)
	root.chmod(root.stat().st_mode | stat.S_IWUSR)


def remove_non_runtime(root: Path) -> list[str]:
	"""Delete version-control metadata, tests, docs and tooling config from a module tree."""
	removed: list[str] = []
	for item in sorted(root.iterdir()):
		if item.is_dir() and item.name in NON_RUNTIME_DIRS:
			shutil.rmtree(item)
			removed.append(item.name)
		elif item.is_file() and item.name in NON_RUNTIME_FILES:
			item.unlink()
			removed.append(item.name)
	for dirpath, dirnames, _ in os.walk(root):
		for name in list(dirnames):
			if name == "__pycache__":
				shutil.rmtree(Path(dirpath) / name)
				dirnames.remove(name)
				removed.append((Path(dirpath) / name).relative_to(root).as_posix())
	return removed


def _python_files(root: Path, base: Path) -> list[str]:
	if not base.is_dir():
		return []
	return sorted(p.relative_to(root).as_posix() for p in base.rglob("*.py") if p.is_file())


def collect_source_files(root: Path, name: str, project: Mapping[str, Any]) -> list[SourceFile]:
	"""
	List every source file to strip, tagging entry points.

	The module's own entry point is `src/<name>.py` or `src/<name>/__init__.py`.
	Extensions declared under `[extensions]` have entry points `ext/<ext>.py` or
	`ext/<ext>/__init__.py`. Every other `*.py` under `src/` and `ext/` is an
	ordinary source file.
	"""
	candidates = [f"src/{name}.py", f"src/{name}/__init__.py"]
	entry = next((c for c in candidates if (root / c).is_file()), None)
	if entry is None:
		raise ContentNotFoundError(
			reason_code="ENTRY_POINT_MISSING",
			message=f"no entry point found (expected {' or '.join(candidates)})",
			package=name,
			path=str(root),
		)

	ext_entries: dict[str, str] = {}
	for ext_name in project.get("extensions") or {}:
		ext_entries[f"ext/{ext_name}.py"] = ext_name
		ext_entries[f"ext/{ext_name}/__init__.py"] = ext_name

	files = [SourceFile(entry, name)]
	files.extend(SourceFile(rel) for rel in _python_files(root, root / "src") if rel != entry)
	files.extend(SourceFile(rel, ext_entries.get(rel)) for rel in _python_files(root, root / "ext"))
	return files


def prepare_package(
	pkg: SniffedPackage,
	scratch: Path,
	keys: KeyPair,
	*,
	channel: str,
	uuid_map: Mapping[str, str] | None = None,
) -> WorkItem:
	"""
	Copy one module version into scratch space and get it ready for the worker.

	The copy is stripped of non-runtime content, its `Project.toml` is
	re-serialized (with remapped UUIDs when `uuid_map` is given) and signed, and
	the public key and a binary `.gitattributes` are placed next to it.
	"""
	temp = Path(tempfile.mkdtemp(prefix=f"{pkg.name}-", dir=scratch))
	shutil.copytree(pkg.path, temp, dirs_exist_ok=True, symlinks=False)
	_make_writable(temp)
	removed = remove_non_runtime(temp)
	if removed:
		_LOG.debug("%s %s: removed %s", pkg.name, pkg.version, ", ".join(removed))

	project_file = temp / "Project.toml"
	if not project_file.is_file():
		raise ProjectFileMissingError(
			reason_code="PROJECT_FILE_MISSING",
			message="project file not found",
			package=pkg.name,
			version=pkg.version,
			path=str(pkg.path / "Project.toml"),
		)
	project = read_toml(project_file)
	if project.get("name") != pkg.name:
		raise ConfigurationError(
			reason_code="PROJECT_MISMATCH",
			message=f"project name {project.get('name')!r} does not match manifest name",
			package=pkg.name,
			path=str(pkg.path),
		)
	version = str(project.get("version") or pkg.version or "")
	if not version:
		raise ConfigurationError(reason_code="PROJECT_MISMATCH", message="project has no version", package=pkg.name, path=str(pkg.path))
	if uuid_map:
		project = replace_uuids(project, uuid_map)
	write_toml(project_file, project)
	sign_file(project_file, keys.private)
	shutil.copyfile(keys.public, temp / PUBLIC_KEY_NAME)
	ensure_binary_gitattributes(temp)

	return WorkItem(
		name=pkg.name,
		uuid=pkg.uuid,
		version=version,
		channel=channel,
		temp_directory=temp,
		project=project,
		files=collect_source_files(temp, pkg.name, project),
	)


def copy_out(item: WorkItem, output_dir: Path) -> Path:
	"""
	Copy a finished module tree to `packages/<name>/<version>/`.

	The same version may already have been copied out by another channel; files
	present in both must be byte-identical.
	"""
	dest = output_dir / "packages" / item.name / item.version
	for dirpath, _, filenames in os.walk(item.temp_directory):
		rel_dir = Path(dirpath).relative_to(item.temp_directory)
		for filename in sorted(filenames):
			src = Path(dirpath) / filename
			dst = dest / rel_dir / filename
			if dst.is_file():
				if dst.read_bytes() != src.read_bytes():
					raise OutputConflictError(
						reason_code="OUTPUT_CONFLICT",
						message="identical file paths with mismatched content",
						package=item.name,
						version=item.version,
						path=str(dst),
					)
				continue
			dst.parent.mkdir(parents=True, exist_ok=True)
			shutil.copyfile(src, dst)
	return dest


def _batch_failures(items: list[WorkItem], reason_code: str, message: str) -> list[BundlerError]:
	return [
		ParseOrSerializeError(reason_code=reason_code, message=message, package=item.name, version=item.version)
		for item in items
	]


def run_batch(
	items: list[WorkItem],
	runtime: Runtime,
	keys: KeyPair,
	output_dir: Path,
	*,
	scratch: Path,
	handlers: Mapping[str, str] | None = None,
	timeout: float | None = None,
) -> tuple[list[StrippedModule], list[BundlerError]]:
	"""
	Strip every work item of one runtime channel in a single worker process.

	Modules the worker could not strip are returned as failures; everything else
	is signed and copied into `output_dir`. Scratch copies of all items are
	removed before returning, whatever the outcome.
	"""
	batch_dir = Path(tempfile.mkdtemp(prefix="batch-", dir=scratch))
	try:
		if not items:
			return [], []
		result_path = batch_dir / "result.json"
		request = {
			"format": worker.REQUEST_FORMAT,
			"version": worker.FORMAT_VERSION,
			"handlers": dict(handlers or {}),
			"packages": [item.to_request() for item in items],
			"result_path": str(result_path),
		}
		request_path = batch_dir / "request.json"
		request_path.write_text(json.dumps(request, sort_keys=True, indent=2), encoding="utf-8")

		_LOG.info("stripping %d package(s) with runtime %s", len(items), runtime.channel)
		try:
			res = runtime.run(["-I", "-S", str(WORKER_SCRIPT), str(request_path)], timeout=timeout)
		except subprocess.TimeoutExpired:
			_LOG.error("worker for runtime %s timed out after %ss", runtime.channel, timeout)
			return [], _batch_failures(items, "WORKER_TIMEOUT", f"worker timed out after {timeout}s")

		if res.returncode not in (0, 1) or not result_path.is_file():
			raise ParseOrSerializeError(
				reason_code="WORKER_FAILED",
				message=f"worker for runtime {runtime.channel} exited with {res.returncode}",
				details=[line for line in (res.stderr or "").splitlines() if line.strip()],
			)
		result = json.loads(result_path.read_text(encoding="utf-8"))
		if result.get("format") != worker.RESULT_FORMAT:
			raise ParseOrSerializeError(reason_code="WORKER_FAILED", message="worker wrote an unexpected result document")

		failed = {(f["package_name"], f["package_version"]): f for f in result.get("failed", [])}
		stripped: list[StrippedModule] = []
		failures: list[BundlerError] = []
		for item in items:
			failure = failed.get((item.name, item.version))
			if failure is not None:
				failures.append(
					ParseOrSerializeError(
						reason_code=str(failure.get("reason_code") or "PARSE_OR_SERIALIZE_FAILED"),
						message=str(failure.get("message") or "stripping failed"),
						package=item.name,
						version=item.version,
					)
				)
				continue
			sign_tree(item.temp_directory, keys.private)
			path = copy_out(item, output_dir)
			stripped.append(StrippedModule(name=item.name, uuid=item.uuid, version=item.version, path=path, project=item.project))
			_LOG.info("stripped %s %s (%s)", item.name, item.version, result.get("cache_tag"))
		return stripped, failures
	finally:
		for item in items:
			shutil.rmtree(item.temp_directory, ignore_errors=True)
		shutil.rmtree(batch_dir, ignore_errors=True)
