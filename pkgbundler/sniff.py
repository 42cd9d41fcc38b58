# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pkgbundler.depot import PackageStore
from pkgbundler.environment import Environment, load_environment
from pkgbundler.errors import ContentNotFoundError, MissingRequiredDependencyError

_LOG = logging.getLogger(__name__)

# The loader shim unpickles payloads, so every bundled environment must resolve
# the serialization support module.
REQUIRED_DEPS: dict[str, str] = {"pickle": "5b8c1d2e-7a4f-5e61-9c3d-0f2a6b7e8d91"}


class StdlibLocator(Protocol):
	def stdlib_dir(self) -> Path: ...


@dataclass(frozen=True)
class SniffedPackage:
	name: str
	uuid: str
	version: str | None
	path: Path
	registry: str | None
	runtime_version: str


def _stdlib_candidate(stdlib: Path, name: str) -> Path | None:
	for candidate in (stdlib / name, stdlib / f"{name}.py"):
		if candidate.exists():
			return candidate
	return None


def sniff_versions(
	environment: Path | Environment,
	store: PackageStore,
	runtime: StdlibLocator,
) -> dict[str, SniffedPackage]:
	"""
	Resolve every manifest entry of an environment to its on-disk content.

	Entries without a content hash are stdlib modules and are looked up in the
	runtime's own stdlib directory; everything else is searched for in the
	depots by its content-addressed path. The owning registry is the first
	reachable registry that lists the exact version.
	"""
	env = environment if isinstance(environment, Environment) else load_environment(Path(environment))
	registries = store.registries()
	stdlib: Path | None = None

	out: dict[str, SniffedPackage] = {}
	for entry in env.entries:
		if entry.is_stdlib:
			if stdlib is None:
				stdlib = runtime.stdlib_dir()
			path = _stdlib_candidate(stdlib, entry.name)
		else:
			path = store.content_path(entry.name, entry.uuid, entry.tree_hash or "")
		if path is None:
			raise ContentNotFoundError(
				reason_code="CONTENT_NOT_FOUND",
				message="failed to locate package content in any depot" if not entry.is_stdlib else "failed to locate stdlib module",
				package=entry.name,
				version=entry.version,
				environment=str(env.path),
			)

		registry: str | None = None
		if entry.version is not None:
			for reg in registries:
				if reg.has_version(entry.uuid, entry.version):
					registry = reg.uuid
					break

		out[entry.uuid] = SniffedPackage(
			name=entry.name,
			uuid=entry.uuid,
			version=entry.version,
			path=path,
			registry=registry,
			runtime_version=env.python_version,
		)
		_LOG.debug("sniffed %s %s at %s", entry.name, entry.version or "(stdlib)", path)

	check_required_deps(out, environment=str(env.path))
	return out


def check_required_deps(deps: dict[str, SniffedPackage], *, environment: str) -> None:
	for name, uuid in REQUIRED_DEPS.items():
		entry = deps.get(uuid)
		if entry is None or entry.name != name:
			raise MissingRequiredDependencyError(
				reason_code="REQUIRED_DEP_MISSING",
				message=f"`{name}` dependency missing from environment",
				package=name,
				environment=environment,
			)
