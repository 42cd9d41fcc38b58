# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Read-only view of the local package-manager state.

A depot holds content-addressed module trees under `packages/<Name>/<slug>/`
and registry trees under `registries/<Name>/`. The bundler only ever reads from
depots; everything it writes goes into its own temporary directory.
"""

from __future__ import annotations

import hashlib
import os
import uuid as uuidlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

from pkgbundler.tomlfile import read_toml

DEPOT_PATH_ENV = "PKGBUNDLER_DEPOT_PATH"
SLUG_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
SLUG_LENGTH = 5


def version_slug(uuid: str | uuidlib.UUID, tree_hash: str, length: int = SLUG_LENGTH) -> str:
	"""
	Content-addressed directory name for `(uuid, tree_hash)`.

	Pinned scheme: 32-bit big-endian prefix of sha256(uuid bytes + tree hash
	bytes), written in base 62 least-significant digit first.
	"""
	u = uuid if isinstance(uuid, uuidlib.UUID) else uuidlib.UUID(str(uuid))
	digest = hashlib.sha256(u.bytes + bytes.fromhex(tree_hash)).digest()
	x = int.from_bytes(digest[:4], "big")
	n = len(SLUG_ALPHABET)
	out: list[str] = []
	for _ in range(length):
		x, d = divmod(x, n)
		out.append(SLUG_ALPHABET[d])
	return "".join(out)


def default_depots(environ: dict[str, str] | None = None) -> list[Path]:
	env = os.environ if environ is None else environ
	raw = env.get(DEPOT_PATH_ENV, "")
	paths = [Path(p) for p in raw.split(os.pathsep) if p]
	if paths:
		return paths
	return [Path.home() / ".pkgdepot"]


@dataclass
class RegistryPackage:
	uuid: str
	name: str
	path: str
	files: dict[str, dict[str, Any]] = field(default_factory=dict)

	@property
	def versions(self) -> dict[str, Any]:
		return self.files.get("Versions.toml", {})


@dataclass
class RegistryInfo:
	uuid: str
	name: str
	root: Path
	packages: dict[str, RegistryPackage]

	def has_version(self, uuid: str, version: str) -> bool:
		pkg = self.packages.get(uuid)
		return pkg is not None and version in pkg.versions


class PackageStore(Protocol):
	"""Read-only package-manager state consulted by the sniffer and registry generator."""

	def registries(self) -> list[RegistryInfo]: ...

	def content_path(self, name: str, uuid: str, tree_hash: str) -> Path | None: ...


def load_registry(root: Path) -> RegistryInfo:
	"""
	Load a registry directory into memory.

	Only package folders (those with a `Package.toml`) are kept; every TOML file
	inside a package folder is parsed, keyed by file name.
	"""
	reg_toml = read_toml(root / "Registry.toml")
	packages: dict[str, RegistryPackage] = {}
	for uuid, raw in (reg_toml.get("packages") or {}).items():
		if not isinstance(raw, dict):
			raise ValueError(f"registry {root}: package entry for {uuid} must be a table")
		rel = str(raw.get("path", ""))
		pkg_dir = root / rel
		if not rel or not (pkg_dir / "Package.toml").is_file():
			continue
		files: dict[str, dict[str, Any]] = {}
		for item in sorted(pkg_dir.iterdir()):
			if item.is_file() and item.suffix == ".toml":
				files[item.name] = read_toml(item)
		packages[str(uuid)] = RegistryPackage(uuid=str(uuid), name=str(raw.get("name", "")), path=rel, files=files)
	return RegistryInfo(
		uuid=str(reg_toml.get("uuid", "")),
		name=str(reg_toml.get("name", root.name)),
		root=root,
		packages=packages,
	)


class DepotStore:
	"""`PackageStore` backed by an ordered list of depot directories."""

	def __init__(self, depots: Iterable[Path] | None = None) -> None:
		self.depots: list[Path] = [Path(d) for d in depots] if depots is not None else default_depots()
		self._registries: list[RegistryInfo] | None = None

	def registries(self) -> list[RegistryInfo]:
		if self._registries is None:
			found: list[RegistryInfo] = []
			seen: set[str] = set()
			for depot in self.depots:
				reg_root = depot / "registries"
				if not reg_root.is_dir():
					continue
				for candidate in sorted(reg_root.iterdir()):
					if not (candidate / "Registry.toml").is_file():
						continue
					info = load_registry(candidate)
					if info.uuid in seen:
						continue
					seen.add(info.uuid)
					found.append(info)
			self._registries = found
		return self._registries

	def content_path(self, name: str, uuid: str, tree_hash: str) -> Path | None:
		slug = version_slug(uuid, tree_hash)
		for depot in self.depots:
			candidate = depot / "packages" / name / slug
			if candidate.is_dir():
				return candidate
		return None
