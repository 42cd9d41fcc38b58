# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Configuration-time registry of stripping hooks.

Hooks are resolved here, by name, to a Python file and the callable inside it.
The worker process only ever receives the resolved `file:callable` strings;
any hook name that is not registered falls back to the defaults of
`pkgbundler.worker.StripHooks`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from pkgbundler.errors import ConfigurationError
from pkgbundler.worker import HOOK_NAMES, codec_without_loader


@dataclass(frozen=True)
class HookSpec:
	name: str
	file: Path
	attribute: str

	def to_request(self) -> str:
		return f"{self.file}:{self.attribute}"


def parse_hook_spec(name: str, value: str, *, base_dir: Path) -> HookSpec:
	if name not in HOOK_NAMES:
		raise ConfigurationError(
			reason_code="HOOK_UNKNOWN",
			message=f"unknown hook: {name!r} (supported: {', '.join(HOOK_NAMES)})",
		)
	file, sep, attr = value.rpartition(":")
	if not (sep and file and attr.isidentifier()):
		file, attr = value, name
	path = Path(file)
	if not path.is_absolute():
		path = base_dir / path
	path = path.resolve()
	if not path.is_file():
		raise ConfigurationError(
			reason_code="HOOK_FILE_MISSING",
			message=f"hook file for {name!r} not found",
			path=str(path),
		)
	return HookSpec(name=name, file=path, attribute=attr)


class HookRegistry:
	def __init__(self) -> None:
		self._hooks: dict[str, HookSpec] = {}

	@classmethod
	def from_mapping(cls, handlers: Mapping[str, str] | None, *, base_dir: Path) -> "HookRegistry":
		registry = cls()
		for name, value in (handlers or {}).items():
			registry.register(name, value, base_dir=base_dir)
		return registry

	def register(self, name: str, value: str | Path, *, base_dir: Path) -> HookSpec:
		spec = parse_hook_spec(name, str(value), base_dir=base_dir)
		self._hooks[name] = spec
		return spec

	def update(self, other: "HookRegistry") -> None:
		self._hooks.update(other._hooks)

	def validate(self) -> None:
		unloadable = codec_without_loader(self.names())
		if unloadable:
			raise ConfigurationError(
				reason_code="HOOK_LOADER_REQUIRED",
				message=f"{', '.join(unloadable)} needs a code_loader hook that decodes its payloads",
			)

	def names(self) -> list[str]:
		return sorted(self._hooks)

	def to_request(self) -> dict[str, str]:
		return {name: spec.to_request() for name, spec in sorted(self._hooks.items())}
