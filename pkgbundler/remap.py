# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
UUID remapping for stripped packages.

A stripped package may need to coexist with the public, source-available
package of the same identity. Such packages are issued an alternate UUID whose
integer value is the original's plus one (modulo 2**128); `unmap_uuid` is the
exact inverse.
"""

from __future__ import annotations

import uuid as uuidlib
from pathlib import Path
from typing import Any, Mapping

from pkgbundler.environment import project_resolve_hash, require_env_files
from pkgbundler.tomlfile import read_toml, write_toml

_UUID_SPACE = 1 << 128


def remap_uuid(value: str | uuidlib.UUID) -> uuidlib.UUID:
	u = value if isinstance(value, uuidlib.UUID) else uuidlib.UUID(str(value))
	return uuidlib.UUID(int=(u.int + 1) % _UUID_SPACE)


def unmap_uuid(value: str | uuidlib.UUID) -> uuidlib.UUID:
	u = value if isinstance(value, uuidlib.UUID) else uuidlib.UUID(str(value))
	return uuidlib.UUID(int=(u.int - 1) % _UUID_SPACE)


def remap_table(uuids: list[str]) -> dict[str, str]:
	return {str(uuidlib.UUID(u)): str(remap_uuid(u)) for u in uuids}


def replace_uuids(obj: Any, mapping: Mapping[str, str]) -> Any:
	"""Recursively replace every string (value or key) that is a mapped UUID."""
	if isinstance(obj, dict):
		return {mapping.get(k, k): replace_uuids(v, mapping) for k, v in obj.items()}
	if isinstance(obj, list):
		return [replace_uuids(v, mapping) for v in obj]
	if isinstance(obj, str):
		return mapping.get(obj, obj)
	return obj


def replace_env_uuids(path: Path, mapping: Mapping[str, str]) -> None:
	project_file, manifest_file = require_env_files(path)
	project = replace_uuids(read_toml(project_file), mapping)
	write_toml(project_file, project)

	manifest = replace_uuids(read_toml(manifest_file), mapping)
	manifest["project_hash"] = project_resolve_hash(project)
	write_toml(manifest_file, manifest)
