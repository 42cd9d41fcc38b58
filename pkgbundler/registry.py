# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Stripped registry generation.

The output registry lists only the stripped versions. Auxiliary per-package
files (dependencies, compat bounds, ...) are copied from whichever reachable
registry vouches for each version; `Versions.toml` is rebuilt from the
assembled histories and `Package.toml` points its repo at a placeholder that
is filled in at install time.
"""

from __future__ import annotations

import copy
import logging
import uuid as uuidlib
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

from pkgbundler.depot import PackageStore, RegistryInfo
from pkgbundler.errors import AmbiguousRegistryMatchError, ConfigurationError, RegistryMatchNotFoundError
from pkgbundler.remap import replace_uuids
from pkgbundler.tomlfile import write_toml

_LOG = logging.getLogger(__name__)

REGISTRY_DIR = "registry"
DESCRIPTION = "Stripped readonly registry."
PACKAGES_PLACEHOLDER = "{{PACKAGES}}"
SCRIPT_TEMPLATES = ("install.py", "remove.py")


@dataclass(frozen=True)
class StrippedVersion:
	name: str
	uuid: str
	version: str
	tree_hash: str


def read_template(name: str) -> str:
	return resources.files("pkgbundler").joinpath("templates", f"{name}.tmpl").read_text(encoding="utf-8")


def _owning_registry(entry: StrippedVersion, registries: list[RegistryInfo]) -> RegistryInfo:
	matches = [reg for reg in registries if reg.has_version(entry.uuid, entry.version)]
	if len(matches) > 1:
		raise AmbiguousRegistryMatchError(
			reason_code="REGISTRY_AMBIGUOUS",
			message="package version found in multiple registries",
			package=entry.name,
			version=entry.version,
			details=[f"{reg.name} ({reg.uuid})" for reg in matches],
		)
	if not matches:
		raise RegistryMatchNotFoundError(
			reason_code="REGISTRY_NOT_FOUND",
			message="package version not found in any registry",
			package=entry.name,
			version=entry.version,
		)
	return matches[0]


def registry_contents(
	entries: list[StrippedVersion],
	store: PackageStore,
	*,
	name: str,
	uuid: str,
	uuid_map: Mapping[str, str] | None = None,
) -> dict[str, Any]:
	"""
	Build the in-memory registry: `Registry.toml` plus `<pkg path>/<file>` tables.

	Keys are posix paths relative to the registry root.
	"""
	if not name.isidentifier():
		raise ConfigurationError(reason_code="REGISTRY_NAME_INVALID", message=f"invalid registry name: {name!r}")
	reg_uuid = str(uuidlib.UUID(str(uuid)))

	packages: dict[str, dict[str, str]] = {}
	per_package: dict[str, dict[str, dict[str, Any]]] = {}
	registries = store.registries()
	for entry in sorted(entries, key=lambda e: (e.name, e.version)):
		reg = _owning_registry(entry, registries)
		reg_pkg = reg.packages[entry.uuid]
		files = per_package.setdefault(reg_pkg.path, {})
		for file_name, data in reg_pkg.files.items():
			if file_name != "Versions.toml":
				files[file_name] = copy.deepcopy(data)
		files.setdefault("Versions.toml", {})[entry.version] = {"git-tree-sha1": entry.tree_hash}
		files.setdefault("Package.toml", {})["repo"] = f"{PACKAGES_PLACEHOLDER}/{entry.name}"
		packages[entry.uuid] = {"name": reg_pkg.name, "path": reg_pkg.path}
		_LOG.debug("registry: %s %s from %s", entry.name, entry.version, reg.name)

	contents: dict[str, Any] = {
		"Registry.toml": {
			"name": name,
			"uuid": reg_uuid,
			"description": DESCRIPTION,
			"packages": packages,
		}
	}
	for pkg_path, files in per_package.items():
		for file_name, data in files.items():
			contents[f"{pkg_path}/{file_name}"] = data
	if uuid_map:
		contents = {key: replace_uuids(data, uuid_map) for key, data in contents.items()}
		contents["Registry.toml"]["uuid"] = reg_uuid
	return contents


def write_registry(root: Path, contents: Mapping[str, Any]) -> Path:
	root.mkdir(parents=True, exist_ok=True)
	for rel, data in sorted(contents.items()):
		write_toml(root / rel, data)
	for script in SCRIPT_TEMPLATES:
		(root / script).write_text(read_template(script), encoding="utf-8")
	return root


def generate_registry(
	output_dir: Path,
	entries: list[StrippedVersion],
	store: PackageStore,
	*,
	name: str,
	uuid: str,
	uuid_map: Mapping[str, str] | None = None,
) -> Path:
	contents = registry_contents(entries, store, name=name, uuid=uuid, uuid_map=uuid_map)
	root = write_registry(output_dir / REGISTRY_DIR, contents)
	_LOG.info("generated registry %s with %d package(s)", name, len(contents["Registry.toml"]["packages"]))
	return root
