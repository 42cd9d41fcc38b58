# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Environments: a `Project.toml` plus the `Manifest.toml` that pins it.

The loaders here are strict in the same way the lockfile loaders are: anything
the bundler relies on must be present and well-typed, otherwise the
environment is rejected before any work is done on it.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from semantic_version import Version

from pkgbundler.crypto import canonical_json_bytes
from pkgbundler.errors import ConfigurationError, ManifestFileMissingError, ProjectFileMissingError
from pkgbundler.tomlfile import read_toml, write_toml

ENV_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_\-.+~@]+$")
ENV_CONFIG_NAME = "PackageBundler.toml"


@dataclass(frozen=True)
class ManifestEntry:
	name: str
	uuid: str
	version: str | None
	tree_hash: str | None
	deps: list[str]

	@property
	def is_stdlib(self) -> bool:
		return self.tree_hash is None


@dataclass(frozen=True)
class Environment:
	path: Path
	project: dict[str, Any]
	manifest: dict[str, Any]
	entries: list[ManifestEntry]
	python_version: str
	channel: str

	@property
	def project_file(self) -> Path:
		return self.path / "Project.toml"

	@property
	def manifest_file(self) -> Path:
		return self.path / "Manifest.toml"


def parse_version(text: str) -> Version:
	try:
		return Version(text)
	except ValueError:
		return Version.coerce(text)


def require_env_files(path: Path) -> tuple[Path, Path]:
	project_file = path / "Project.toml"
	manifest_file = path / "Manifest.toml"
	if not project_file.is_file():
		raise ProjectFileMissingError(
			reason_code="PROJECT_FILE_MISSING",
			message="project file not found",
			environment=str(path),
			path=str(project_file),
		)
	if not manifest_file.is_file():
		raise ManifestFileMissingError(
			reason_code="MANIFEST_FILE_MISSING",
			message="manifest file not found",
			environment=str(path),
			path=str(manifest_file),
		)
	return project_file, manifest_file


def manifest_entries(manifest: dict[str, Any], *, where: str) -> list[ManifestEntry]:
	deps = manifest.get("deps")
	if deps is None:
		return []
	if not isinstance(deps, dict):
		raise ConfigurationError(reason_code="MANIFEST_INVALID", message="manifest deps must be a table", path=where)

	out: list[ManifestEntry] = []
	for name, raw in deps.items():
		if not isinstance(raw, list) or len(raw) != 1 or not isinstance(raw[0], dict):
			raise ConfigurationError(
				reason_code="MANIFEST_INVALID",
				message=f"manifest must contain exactly one entry for '{name}'",
				path=where,
			)
		entry = raw[0]
		uuid = entry.get("uuid")
		if not isinstance(uuid, str) or not uuid:
			raise ConfigurationError(reason_code="MANIFEST_INVALID", message=f"manifest entry '{name}' is missing uuid", path=where)
		version = entry.get("version")
		tree_hash = entry.get("git-tree-sha1")
		dep_names = entry.get("deps") or []
		if isinstance(dep_names, dict):
			dep_names = list(dep_names.keys())
		out.append(
			ManifestEntry(
				name=str(name),
				uuid=uuid,
				version=str(version) if version is not None else None,
				tree_hash=str(tree_hash) if tree_hash is not None else None,
				deps=[str(d) for d in dep_names],
			)
		)
	return sorted(out, key=lambda e: e.name)


def load_environment(path: Path) -> Environment:
	project_file, manifest_file = require_env_files(path)
	project = read_toml(project_file)
	manifest = read_toml(manifest_file)
	python_version = manifest.get("python_version")
	if not isinstance(python_version, str) or not python_version:
		raise ConfigurationError(
			reason_code="MANIFEST_INVALID",
			message="manifest is missing python_version",
			environment=str(path),
			path=str(manifest_file),
		)

	channel = python_version
	env_config = path / ENV_CONFIG_NAME
	if env_config.is_file():
		runtime = read_toml(env_config).get("runtime") or {}
		if isinstance(runtime, dict) and isinstance(runtime.get("channel"), str):
			channel = runtime["channel"]

	return Environment(
		path=path,
		project=project,
		manifest=manifest,
		entries=manifest_entries(manifest, where=str(manifest_file)),
		python_version=python_version,
		channel=channel,
	)


def environment_name(root: Path, path: Path) -> str:
	"""
	Normalized bundle name of an environment directory.

	The path relative to `root` loses its first component (usually
	`environments/`) and the remaining parts are joined with `_`.
	"""
	try:
		rel = Path(path).resolve().relative_to(Path(root).resolve())
	except ValueError as err:
		raise ConfigurationError(
			reason_code="ENV_NAME_INVALID",
			message=f"environment is not inside the bundle root {root}",
			environment=str(path),
		) from err
	name = "_".join(rel.parts[1:])
	if not ENV_NAME_RE.match(name):
		raise ConfigurationError(
			reason_code="ENV_NAME_INVALID",
			message=f"invalid environment name: {name!r}",
			environment=str(path),
		)
	return name


def project_resolve_hash(project: dict[str, Any]) -> str:
	"""
	Hash of the resolver-relevant parts of a project.

	Pinned scheme: sha1 over the canonical JSON of deps, weakdeps, compat and
	extras (missing sections are empty tables).
	"""
	obj = {key: project.get(key) or {} for key in ("deps", "weakdeps", "compat", "extras")}
	return hashlib.sha1(canonical_json_bytes(obj)).hexdigest()


def _exact_compat(version: str) -> str:
	v = parse_version(version)
	return f"= {v.major}.{v.minor}.{v.patch}"


def lock_environment(path: Path) -> None:
	"""
	Pin every package of an environment to the version it currently resolves to.

	Every manifest entry gets an exact `compat` bound; unversioned stdlib entries
	get `< 0.0.1, = <python>` so the resolver accepts them. Entries that are not
	direct dependencies are listed in `extras` so compat can name them. The
	manifest's `project_hash` is recomputed afterwards.
	"""
	env = load_environment(path)
	project = dict(env.project)
	compat = dict(project.pop("compat", None) or {})
	extras = dict(project.pop("extras", None) or {})
	direct = project.get("deps") or {}

	for entry in env.entries:
		pinned = _exact_compat(entry.version if entry.version is not None else env.python_version)
		compat[entry.name] = pinned if entry.version is not None else f"< 0.0.1, {pinned}"
		if entry.name not in direct:
			extras[entry.name] = entry.uuid
	compat["python"] = f"= {env.python_version}"

	project["compat"] = compat
	project["extras"] = extras
	write_toml(env.project_file, project)

	manifest = dict(env.manifest)
	manifest["project_hash"] = project_resolve_hash(project)
	write_toml(env.manifest_file, manifest)
