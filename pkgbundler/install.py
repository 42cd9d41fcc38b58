# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Installing a bundle into a consumer's depot, and removing it again.

The bundled registry cannot name the location of its packages until the
bundle has been unpacked, so `Package.toml` files carry a `{{PACKAGES}}`
placeholder that is filled in here. The installed `remove.py` records what
the installation added so that a later install (or an explicit removal) can
undo it completely.
"""

from __future__ import annotations

import ast
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from pkgbundler.depot import DepotStore, PackageStore, default_depots
from pkgbundler.errors import InstallError
from pkgbundler.registry import PACKAGES_PLACEHOLDER
from pkgbundler.tomlfile import read_toml, write_toml

_LOG = logging.getLogger(__name__)

REMOVE_SCRIPT = "remove.py"
_REMOVE_FIELDS = {"ENVIRONMENTS": "{{ENVIRONMENTS}}", "REGISTRY_UUID": "{{REGISTRY_UUID}}", "ARTIFACTS": "{{ARTIFACTS}}"}


@dataclass(frozen=True)
class InstallOptions:
	bundle_dir: Path
	depot: Path | None = None
	assume_yes: bool = False
	input_fn: Callable[[str], str] = input
	store: PackageStore | None = None


@dataclass(frozen=True)
class InstallReport:
	registry: str
	environments: list[str]
	skipped_versions: dict[str, list[str]] = field(default_factory=dict)
	aborted: bool = False

	def to_dict(self) -> dict[str, Any]:
		return {
			"registry": self.registry,
			"environments": sorted(self.environments),
			"skipped_versions": {k: sorted(v) for k, v in sorted(self.skipped_versions.items())},
			"aborted": self.aborted,
		}


@dataclass(frozen=True)
class RemoveMetadata:
	environments: list[str]
	registry_uuid: str
	artifacts: str


def portable_path(path: Path) -> str:
	"""Forward-slash path without a drive letter, as used inside registry files."""
	_, rest = os.path.splitdrive(str(path))
	return "/".join(rest.replace("\\", "/").split("/"))


def read_remove_metadata(script: Path) -> RemoveMetadata:
	try:
		tree = ast.parse(script.read_text(encoding="utf-8"), filename=str(script))
		values: dict[str, Any] = {}
		for node in tree.body:
			if isinstance(node, ast.Assign) and len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
				if node.targets[0].id in _REMOVE_FIELDS:
					values[node.targets[0].id] = ast.literal_eval(node.value)
	except (OSError, SyntaxError, ValueError) as err:
		raise InstallError(reason_code="REMOVE_SCRIPT_INVALID", message=f"unreadable remove script: {err}", path=str(script)) from err
	envs = values.get("ENVIRONMENTS")
	uuid = values.get("REGISTRY_UUID")
	artifacts = values.get("ARTIFACTS")
	if not isinstance(envs, list) or not isinstance(uuid, str) or not isinstance(artifacts, str):
		raise InstallError(reason_code="REMOVE_SCRIPT_INVALID", message="remove script is missing its install metadata", path=str(script))
	return RemoveMetadata(environments=[str(e) for e in envs], registry_uuid=uuid, artifacts=artifacts)


def render_remove_script(text: str, *, environments: list[str], registry_uuid: str, artifacts: str) -> str:
	values = {"ENVIRONMENTS": environments, "REGISTRY_UUID": registry_uuid, "ARTIFACTS": artifacts}
	for key, placeholder in _REMOVE_FIELDS.items():
		text = text.replace(placeholder, json.dumps(values[key]))
	return text


def remove_bundle(registry_dir: Path, *, depot: Path | None = None) -> list[str]:
	"""
	Undo an installation: delete its environments and the registry directory.

	Returns the names of the environments that were removed.
	"""
	registry_dir = Path(registry_dir).resolve()
	script = registry_dir / REMOVE_SCRIPT
	if not script.is_file():
		raise InstallError(reason_code="REMOVE_SCRIPT_MISSING", message="remove script not found", path=str(script))
	meta = read_remove_metadata(script)
	depot = Path(depot) if depot is not None else registry_dir.parent.parent

	removed: list[str] = []
	for name in meta.environments:
		env_dir = depot / "environments" / name
		if env_dir.is_dir():
			shutil.rmtree(env_dir)
			removed.append(name)
		else:
			_LOG.warning("environment not found: %s", name)
	shutil.rmtree(registry_dir)
	_LOG.info("removed registry %s (%s)", registry_dir.name, meta.registry_uuid)
	return removed


def _validate_bundle(bundle: Path) -> tuple[Path, Path, Path]:
	envs, packages, registry = bundle / "environments", bundle / "packages", bundle / "registry"
	for d in (envs, packages, registry):
		if not d.is_dir():
			raise InstallError(reason_code="BUNDLE_INVALID", message=f"`{d.name}` not found in bundle", path=str(d))
	if not (registry / "Registry.toml").is_file():
		raise InstallError(reason_code="BUNDLE_INVALID", message="bundle registry has no Registry.toml", path=str(bundle))
	return envs, packages, registry


def _render_registry(
	registry: Path,
	dest: Path,
	*,
	packages: Path,
	environments: list[str],
	registry_uuid: str,
	artifacts: Path,
) -> None:
	for dirpath, _, filenames in os.walk(registry):
		rel_dir = Path(dirpath).relative_to(registry)
		for filename in filenames:
			src = Path(dirpath) / filename
			dst = dest / rel_dir / filename
			dst.parent.mkdir(parents=True, exist_ok=True)
			if filename.endswith(".toml"):
				text = src.read_text(encoding="utf-8").replace(PACKAGES_PLACEHOLDER, portable_path(packages))
				dst.write_text(text, encoding="utf-8")
			elif filename == REMOVE_SCRIPT:
				text = render_remove_script(
					src.read_text(encoding="utf-8"),
					environments=environments,
					registry_uuid=registry_uuid,
					artifacts=portable_path(artifacts),
				)
				dst.write_text(text, encoding="utf-8")
			else:
				shutil.copyfile(src, dst)


def _drop_duplicate_versions(staged: Path, registry_uuid: str, store: PackageStore) -> dict[str, list[str]]:
	"""
	Remove versions that another registry already offers.

	A source-available version always takes precedence over a stripped one.
	"""
	reg_toml = read_toml(staged / "Registry.toml")
	skipped: dict[str, list[str]] = {}
	others = [reg for reg in store.registries() if reg.uuid != registry_uuid]
	for pkg_uuid, info in sorted((reg_toml.get("packages") or {}).items()):
		versions_file = staged / info["path"] / "Versions.toml"
		if not versions_file.is_file():
			continue
		versions = read_toml(versions_file)
		dropped: list[str] = []
		for reg in others:
			other = reg.packages.get(pkg_uuid)
			if other is None:
				continue
			for version in other.versions:
				if version in versions:
					del versions[version]
					dropped.append(version)
		if dropped:
			_LOG.info("skipping duplicate versions of %s: %s", info.get("name"), ", ".join(sorted(dropped)))
			skipped[str(info.get("name"))] = dropped
			write_toml(versions_file, versions)
	return skipped


def install_bundle(opts: InstallOptions) -> InstallReport:
	"""
	Install the bundle at `opts.bundle_dir` into a depot.

	Installing is idempotent: a registry of the same name installed earlier is
	removed first (through its recorded `remove.py` metadata). Existing
	environments that do not belong to that earlier installation are only
	overwritten after confirmation, unless `assume_yes` is set.
	"""
	bundle = Path(opts.bundle_dir).resolve()
	envs_dir, packages_dir, registry_dir = _validate_bundle(bundle)
	depot = Path(opts.depot) if opts.depot is not None else default_depots()[0]

	reg_toml = read_toml(registry_dir / "Registry.toml")
	reg_name = str(reg_toml.get("name", ""))
	reg_uuid = str(reg_toml.get("uuid", ""))
	if not reg_name or not reg_uuid:
		raise InstallError(reason_code="BUNDLE_INVALID", message="Registry.toml must name the registry and its uuid", path=str(registry_dir))

	current = depot / "registries" / reg_name
	previous: RemoveMetadata | None = None
	if current.exists():
		if not (current / REMOVE_SCRIPT).is_file():
			raise InstallError(
				reason_code="REGISTRY_EXISTS",
				message=f"a registry named {reg_name!r} that was not installed from a bundle already exists",
				path=str(current),
			)
		previous = read_remove_metadata(current / REMOVE_SCRIPT)

	new_envs = sorted(d.name for d in envs_dir.iterdir() if d.is_dir())
	depot_envs = depot / "environments"
	existing = sorted(d.name for d in depot_envs.iterdir() if d.is_dir()) if depot_envs.is_dir() else []
	owned = set(previous.environments) if previous is not None else set()
	replaced = sorted((set(new_envs) & set(existing)) - owned)
	if replaced and not opts.assume_yes:
		_LOG.warning("installing named environments overwrites existing ones: %s", ", ".join(replaced))
		try:
			answer = opts.input_fn("Overwrite environments " + ", ".join(replaced) + "? [Y/n] ")
		except EOFError:
			answer = ""
		if answer.strip() != "Y":
			_LOG.info("aborting installation")
			return InstallReport(registry=reg_name, environments=[], aborted=True)

	store = opts.store if opts.store is not None else DepotStore([depot])
	if previous is not None:
		_LOG.info("removing existing registry %s", current)
		remove_bundle(current, depot=depot)

	with tempfile.TemporaryDirectory(prefix="pkgbundler-install-") as tmp:
		staged = Path(tmp) / reg_name
		_render_registry(
			registry_dir,
			staged,
			packages=packages_dir,
			environments=new_envs,
			registry_uuid=reg_uuid,
			artifacts=bundle,
		)
		skipped = _drop_duplicate_versions(staged, reg_uuid, store)

		_LOG.info("installing environments: %s", ", ".join(new_envs))
		for name in new_envs:
			dest = depot_envs / name
			if dest.exists():
				shutil.rmtree(dest)
			shutil.copytree(envs_dir / name, dest)
		current.parent.mkdir(parents=True, exist_ok=True)
		shutil.copytree(staged, current)

	return InstallReport(registry=reg_name, environments=new_envs, skipped_versions=skipped)
