# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Bundle configuration (`PackageBundler.toml`).

```toml
name = "PackageBundle"                        # default: "PackageBundle"
uuid = "00000000-0000-0000-0000-000000000000" # required
environments = ["environments/env1"]          # required
outputs = "PackageBundle"                     # default: same as `name`
key = "key"                                   # default: "key"
clean = false                                 # default: false
multiplexers = ["uv", "pyenv"]                # default: []
remap_uuids = false                           # default: false
worker_timeout = 600                          # default: no timeout

[packages]
"<uuid>" = "<name>"

[registries]
"<uuid>" = "<name>"

[handlers]
code_transformer = "hooks/transform.py"
```

Every path is relative to the directory holding the configuration file.
Validation is strict: unknown fields and wrongly typed values are rejected
before any work is done.
"""

from __future__ import annotations

import tomllib
import uuid as uuidlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pkgbundler.depot import PackageStore
from pkgbundler.environment import require_env_files
from pkgbundler.errors import ConfigurationError
from pkgbundler.hooks import HookRegistry
from pkgbundler.keygen import KeyPair
from pkgbundler.runtime import validate_multiplexers
from pkgbundler.tomlfile import read_toml

DEFAULT_CONFIG = "PackageBundler.toml"
DEFAULT_NAME = "PackageBundle"

_ALLOWED_FIELDS = {
	"name",
	"uuid",
	"environments",
	"packages",
	"registries",
	"outputs",
	"key",
	"clean",
	"multiplexers",
	"depots",
	"handlers",
	"remap_uuids",
	"worker_timeout",
}


@dataclass(frozen=True)
class BundleConfig:
	path: Path
	name: str
	uuid: str
	environments: list[Path]
	packages: dict[str, str]
	registries: dict[str, str]
	outputs: list[Path]
	keys: KeyPair
	clean: bool = False
	multiplexers: list[str] = field(default_factory=list)
	depots: list[Path] | None = None
	hooks: HookRegistry = field(default_factory=HookRegistry)
	remap_uuids: bool = False
	worker_timeout: float | None = None

	@property
	def root(self) -> Path:
		return self.path.parent


def _invalid(message: str, path: Path) -> ConfigurationError:
	return ConfigurationError(reason_code="CONFIG_INVALID", message=message, path=str(path))


def _string_list(value: Any, *, what: str, path: Path) -> list[str]:
	items = [value] if isinstance(value, str) else value
	if not isinstance(items, list) or any((not isinstance(v, str) or not v) for v in items):
		raise _invalid(f"'{what}' must be a string or a list of strings", path)
	return list(items)


def _uuid_table(value: Any, *, what: str, path: Path) -> dict[str, str]:
	if value is None:
		return {}
	if not isinstance(value, dict):
		raise _invalid(f"'{what}' must be a table of uuid = name", path)
	out: dict[str, str] = {}
	for key, name in value.items():
		try:
			canonical = str(uuidlib.UUID(key))
		except ValueError as err:
			raise _invalid(f"'{what}' key {key!r} is not a uuid", path) from err
		if not isinstance(name, str) or not name:
			raise _invalid(f"'{what}' entry {key!r} must name the package", path)
		out[canonical] = name
	return out


def load_config(path: Path | str = DEFAULT_CONFIG) -> BundleConfig:
	config_path = Path(path).resolve()
	if config_path.suffix != ".toml":
		raise _invalid("config file must be a TOML file", config_path)
	if not config_path.is_file():
		raise ConfigurationError(reason_code="CONFIG_NOT_FOUND", message="config file not found", path=str(config_path))
	try:
		data = read_toml(config_path)
	except tomllib.TOMLDecodeError as err:
		raise _invalid(f"config file is not valid TOML: {err}", config_path) from err

	unknown = sorted(set(data.keys()) - _ALLOWED_FIELDS)
	if unknown:
		raise _invalid(f"config has unknown top-level fields: {', '.join(unknown)}", config_path)

	root = config_path.parent
	name = data.get("name", DEFAULT_NAME)
	if not isinstance(name, str) or not name.isidentifier():
		raise _invalid(f"'name' must be a valid identifier, got {name!r}", config_path)

	raw_uuid = data.get("uuid")
	if not isinstance(raw_uuid, str) or not raw_uuid:
		raise _invalid("'uuid' must be specified", config_path)
	try:
		bundle_uuid = str(uuidlib.UUID(raw_uuid))
	except ValueError as err:
		raise _invalid(f"'uuid' is not a valid uuid: {raw_uuid!r}", config_path) from err

	if "environments" not in data:
		raise _invalid("'environments' must be specified", config_path)
	environments = [(root / p).resolve() for p in _string_list(data["environments"], what="environments", path=config_path)]
	if not environments:
		raise _invalid("no environments specified", config_path)
	for env in environments:
		if not env.is_dir():
			raise ConfigurationError(reason_code="ENV_NOT_FOUND", message="environment directory not found", environment=str(env))
		require_env_files(env)

	outputs = _string_list(data.get("outputs", name), what="outputs", path=config_path) or [name]

	key = data.get("key", "key")
	if not isinstance(key, str) or not key:
		raise _invalid("'key' must be a non-empty string", config_path)
	keys = KeyPair(private=root / f"{key}.pem", public=root / f"{key}.pub")
	for key_file, what in ((keys.private, "private"), (keys.public, "public")):
		if not key_file.is_file():
			raise ConfigurationError(reason_code="KEY_NOT_FOUND", message=f"{what} key not found", path=str(key_file))

	for flag in ("clean", "remap_uuids"):
		if not isinstance(data.get(flag, False), bool):
			raise _invalid(f"'{flag}' must be a boolean", config_path)

	multiplexers = validate_multiplexers(_string_list(data.get("multiplexers", []), what="multiplexers", path=config_path))

	depots = None
	if "depots" in data:
		depots = [(root / p).resolve() for p in _string_list(data["depots"], what="depots", path=config_path)]

	handlers = data.get("handlers") or {}
	if not isinstance(handlers, dict) or any(not isinstance(v, str) for v in handlers.values()):
		raise _invalid("'handlers' must be a table of hook = path", config_path)

	timeout = data.get("worker_timeout")
	if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
		raise _invalid("'worker_timeout' must be a positive number of seconds", config_path)

	return BundleConfig(
		path=config_path,
		name=name,
		uuid=bundle_uuid,
		environments=environments,
		packages=_uuid_table(data.get("packages"), what="packages", path=config_path),
		registries=_uuid_table(data.get("registries"), what="registries", path=config_path),
		outputs=[(root / o) for o in outputs],
		keys=keys,
		clean=bool(data.get("clean", False)),
		multiplexers=multiplexers,
		depots=depots,
		hooks=HookRegistry.from_mapping(handlers, base_dir=root),
		remap_uuids=bool(data.get("remap_uuids", False)),
		worker_timeout=float(timeout) if timeout is not None else None,
	)


def packages_from_registries(registries: dict[str, str], store: PackageStore) -> dict[str, str]:
	"""Every package (uuid -> name) of the listed registries."""
	packages: dict[str, str] = {}
	if not registries:
		return packages
	found: set[str] = set()
	for reg in store.registries():
		expected = registries.get(reg.uuid)
		if expected is None:
			continue
		if reg.name != expected:
			raise ConfigurationError(
				reason_code="REGISTRY_NAME_MISMATCH",
				message=f"registry name mismatch: {reg.name!r} != {expected!r}",
				path=str(reg.root),
			)
		found.add(reg.uuid)
		for pkg in reg.packages.values():
			packages[pkg.uuid] = pkg.name
	missing = sorted(set(registries) - found)
	if missing:
		raise ConfigurationError(
			reason_code="REGISTRY_NOT_REACHABLE",
			message="listed registries are not reachable from any depot",
			details=[f"{registries[u]} ({u})" for u in missing],
		)
	return packages


def merge_packages(explicit: dict[str, str], derived: dict[str, str]) -> dict[str, str]:
	merged = dict(explicit)
	for uuid, name in derived.items():
		if uuid in merged and merged[uuid] != name:
			raise ConfigurationError(
				reason_code="PACKAGE_NAME_CONFLICT",
				message=f"duplicate package id with different names: {merged[uuid]!r} and {name!r}",
				package=uuid,
			)
		merged[uuid] = name
	if not merged:
		raise ConfigurationError(reason_code="NO_PACKAGES", message="no packages specified")
	return merged
