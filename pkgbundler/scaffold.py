# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import sys
import uuid as uuidlib
from pathlib import Path

from pkgbundler.config import DEFAULT_CONFIG
from pkgbundler.environment import project_resolve_hash
from pkgbundler.errors import ConfigurationError
from pkgbundler.keygen import keypair
from pkgbundler.sniff import REQUIRED_DEPS
from pkgbundler.tomlfile import write_toml

_LOG = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "main"


def generate(
	dir: Path | str,
	*,
	name: str = "PackageBundle",
	uuid: str | None = None,
	python_version: str | None = None,
	with_keys: bool = True,
) -> Path:
	"""
	Create a new bundling project in `dir`.

	Writes a `PackageBundler.toml`, one environment that already depends on the
	serialization support module, a `.gitignore` keeping the private key and
	the bundle output out of version control, and (unless `with_keys` is false)
	a signing key pair. Returns the configuration path.
	"""
	root = Path(dir)
	config_path = root / DEFAULT_CONFIG
	if config_path.exists():
		raise ConfigurationError(reason_code="SCAFFOLD_EXISTS", message="a bundler configuration already exists", path=str(config_path))
	if not name.isidentifier():
		raise ConfigurationError(reason_code="CONFIG_INVALID", message=f"'name' must be a valid identifier, got {name!r}")

	bundle_uuid = str(uuidlib.UUID(uuid)) if uuid is not None else str(uuidlib.uuid4())
	version = python_version or ".".join(str(v) for v in sys.version_info[:3])
	env_dir = root / "environments" / DEFAULT_ENVIRONMENT

	project = {"deps": dict(REQUIRED_DEPS)}
	write_toml(env_dir / "Project.toml", project)
	write_toml(
		env_dir / "Manifest.toml",
		{
			"manifest_format": "2.0",
			"python_version": version,
			"project_hash": project_resolve_hash(project),
			"deps": {dep: [{"uuid": dep_uuid}] for dep, dep_uuid in REQUIRED_DEPS.items()},
		},
	)
	write_toml(
		config_path,
		{
			"name": name,
			"uuid": bundle_uuid,
			"environments": [f"environments/{DEFAULT_ENVIRONMENT}"],
			"outputs": name,
			"key": "key",
			"packages": {},
			"registries": {},
		},
		sort=False,
	)
	(root / ".gitignore").write_text(f"key.pem\n/{name}/\n", encoding="utf-8")
	if with_keys:
		keypair(root)
	_LOG.info("generated bundler project %s in %s", name, root)
	return config_path
