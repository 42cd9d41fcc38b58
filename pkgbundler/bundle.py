# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Bundle orchestration.

A bundle is assembled in a single run-scoped temporary directory and only
copied to its output targets once every stage has succeeded:

1. load and validate the configuration;
2. sniff every environment (all of them, before anything is stripped);
3. copy, lock and sign the environments;
4. strip the selected packages, one worker process per runtime channel;
5. assemble one version history per package;
6. generate the stripped registry;
7. materialize the output targets.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pkgbundler.config import DEFAULT_CONFIG, BundleConfig, load_config, merge_packages, packages_from_registries
from pkgbundler.depot import DepotStore, PackageStore
from pkgbundler.environment import Environment, environment_name, load_environment, lock_environment
from pkgbundler.errors import (
	BatchFailureError,
	BundlerError,
	ConfigurationError,
	ContentNotFoundError,
	ManifestFileMissingError,
	ProjectFileMissingError,
)
from pkgbundler.history import assemble_history
from pkgbundler.hooks import HookRegistry
from pkgbundler.outputs import materialize
from pkgbundler.registry import StrippedVersion, generate_registry
from pkgbundler.remap import remap_table, replace_env_uuids
from pkgbundler.runtime import Runtime, select_runtime
from pkgbundler.sign import PUBLIC_KEY_NAME, sign_tree
from pkgbundler.sniff import SniffedPackage, sniff_versions
from pkgbundler.strip import StrippedModule, WorkItem, prepare_package, run_batch

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class BundleReport:
	name: str
	uuid: str
	environments: list[str]
	packages: dict[str, dict[str, str]]
	outputs: list[Path]

	def to_dict(self) -> dict[str, Any]:
		return {
			"name": self.name,
			"uuid": self.uuid,
			"environments": sorted(self.environments),
			"packages": {name: dict(sorted(v.items())) for name, v in sorted(self.packages.items())},
			"outputs": [str(p) for p in self.outputs],
		}


@dataclass(frozen=True)
class _SniffedEnvironment:
	env: Environment
	packages: dict[str, SniffedPackage]


def select_packages(
	sniffed: _SniffedEnvironment,
	selected: Mapping[str, str],
	*,
	explicit: set[str],
	registries: Mapping[str, str],
) -> list[SniffedPackage]:
	"""
	Packages of one environment that should be stripped.

	Explicitly listed packages are always stripped. Packages that are only
	selected through a listed registry are stripped when the environment's
	version is owned by one of the listed registries.
	"""
	out: list[SniffedPackage] = []
	for uuid, name in sorted(selected.items(), key=lambda kv: kv[1]):
		pkg = sniffed.packages.get(uuid)
		if pkg is None:
			continue
		if pkg.name != name:
			raise ConfigurationError(
				reason_code="PACKAGE_NAME_MISMATCH",
				message=f"configured name {name!r} does not match manifest name {pkg.name!r}",
				package=uuid,
				environment=str(sniffed.env.path),
			)
		if uuid not in explicit and pkg.registry not in registries:
			_LOG.debug("skipping %s %s: not owned by a listed registry", pkg.name, pkg.version)
			continue
		out.append(pkg)
	return out


def _bundle_environment(env: Environment, dest: Path, config: BundleConfig, uuid_map: Mapping[str, str]) -> None:
	shutil.copytree(env.path, dest, ignore=shutil.ignore_patterns(".git", "__pycache__", "*.sign"))
	lock_environment(dest)
	if uuid_map:
		replace_env_uuids(dest, uuid_map)
	shutil.copyfile(config.keys.public, dest / PUBLIC_KEY_NAME)
	sign_tree(dest, config.keys.private)


def _combined_hooks(config: BundleConfig, handlers: Mapping[str, str] | None) -> HookRegistry:
	hooks = HookRegistry()
	hooks.update(config.hooks)
	if handlers:
		hooks.update(HookRegistry.from_mapping(handlers, base_dir=Path.cwd()))
	hooks.validate()
	return hooks


def bundle(
	config_path: Path | str = DEFAULT_CONFIG,
	*,
	clean: bool = False,
	handlers: Mapping[str, str] | None = None,
	store: PackageStore | None = None,
) -> BundleReport:
	"""
	Build the bundle described by `config_path` and write it to every output target.

	`handlers` adds or overrides stripping hooks from the configuration (paths
	relative to the current directory). Raises `BatchFailureError` naming every
	package that could not be stripped; nothing is written to the outputs then.
	"""
	config = load_config(config_path)
	clean = clean or config.clean
	hooks = _combined_hooks(config, handlers)
	store = store if store is not None else DepotStore(config.depots)

	derived = packages_from_registries(config.registries, store)
	selected = merge_packages(config.packages, derived)
	explicit = set(config.packages)

	with tempfile.TemporaryDirectory(prefix="pkgbundler-") as tmp:
		out = Path(tmp) / "bundle"
		scratch = Path(tmp) / "scratch"
		out.mkdir()
		scratch.mkdir()

		runtimes: dict[str, Runtime] = {}
		sniffed: list[_SniffedEnvironment] = []
		for env_path in config.environments:
			env = load_environment(env_path)
			if env.channel not in runtimes:
				runtimes[env.channel] = select_runtime(config.multiplexers, env.channel)
			_LOG.info("sniffing environment %s (runtime %s)", env_path, env.channel)
			sniffed.append(_SniffedEnvironment(env, sniff_versions(env, store, runtimes[env.channel])))

		plan = [
			(entry.env, pkg)
			for entry in sniffed
			for pkg in select_packages(entry, selected, explicit=explicit, registries=config.registries)
		]
		uuid_map = remap_table(sorted({pkg.uuid for _, pkg in plan})) if config.remap_uuids else {}

		env_names: list[str] = []
		for entry in sniffed:
			name = environment_name(config.root, entry.env.path)
			if name in env_names:
				raise ConfigurationError(reason_code="ENV_NAME_DUPLICATE", message=f"duplicate environment name: {name!r}", environment=str(entry.env.path))
			env_names.append(name)
			_bundle_environment(entry.env, out / "environments" / name, config, uuid_map)

		failures: list[BundlerError] = []
		items: dict[str, list[WorkItem]] = {}
		seen: set[tuple[str, str | None, str]] = set()
		for env, pkg in plan:
			key = (pkg.uuid, pkg.version, env.channel)
			if key in seen:
				continue
			seen.add(key)
			try:
				item = prepare_package(pkg, scratch, config.keys, channel=env.channel, uuid_map=uuid_map)
			except (ProjectFileMissingError, ManifestFileMissingError, ContentNotFoundError) as err:
				failures.append(err)
				continue
			items.setdefault(env.channel, []).append(item)

		stripped: list[StrippedModule] = []
		for channel in sorted(items):
			ok, failed = run_batch(
				items[channel],
				runtimes[channel],
				config.keys,
				out,
				scratch=scratch,
				handlers=hooks.to_request(),
				timeout=config.worker_timeout,
			)
			stripped.extend(ok)
			failures.extend(failed)
		if failures:
			raise BatchFailureError(failures)
		if not stripped:
			_LOG.warning("no configured package was found in any environment")

		versions: dict[str, dict[str, Path]] = {}
		uuids: dict[str, str] = {}
		for module in stripped:
			versions.setdefault(module.name, {})[module.version] = module.path
			uuids[module.name] = module.uuid
		trees: dict[str, dict[str, str]] = {}
		for name in sorted(versions):
			trees[name] = assemble_history(name, versions[name], scratch=scratch)

		entries = [
			StrippedVersion(name=name, uuid=uuids[name], version=version, tree_hash=tree)
			for name, by_version in trees.items()
			for version, tree in by_version.items()
		]
		generate_registry(out, entries, store, name=config.name, uuid=config.uuid, uuid_map=uuid_map)

		written = materialize(out, config.outputs, name=config.name, clean=clean)

	return BundleReport(name=config.name, uuid=config.uuid, environments=env_names, packages=trees, outputs=written)
