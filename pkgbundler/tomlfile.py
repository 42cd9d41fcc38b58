# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import tomli_w


def read_toml(path: Path) -> dict[str, Any]:
	with open(path, "rb") as f:
		return tomllib.load(f)


def sorted_tree(obj: Any) -> Any:
	if isinstance(obj, dict):
		return {k: sorted_tree(obj[k]) for k in sorted(obj)}
	if isinstance(obj, list):
		return [sorted_tree(v) for v in obj]
	return obj


def dumps_toml(data: dict[str, Any], *, sort: bool = True) -> str:
	return tomli_w.dumps(sorted_tree(data) if sort else data)


def write_toml(path: Path, data: dict[str, Any], *, sort: bool = True) -> None:
	"""
	Write `data` as TOML.

	Keys are sorted recursively by default so that re-serialized descriptors are
	byte-stable and diff cleanly between runs.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	with open(path, "wb") as f:
		f.write(dumps_toml(data, sort=sort).encode("utf-8"))
