# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Runtime selection through version multiplexers.

Serialized payloads are only loadable by the interpreter version that produced
them, so every worker process has to be started under the exact runtime an
environment is pinned to. A multiplexer is an external tool that can locate such
an interpreter; they are tried in the configured order.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from pkgbundler.errors import ConfigurationError

_LOG = logging.getLogger(__name__)

SUPPORTED_MULTIPLEXERS = ("uv", "pyenv", "asdf", "mise", "py")


@dataclass(frozen=True)
class Runtime:
	"""A resolved interpreter command for one runtime channel."""

	channel: str
	command: tuple[str, ...]

	def run(self, args: list[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
		return subprocess.run(
			[*self.command, *args],
			check=False,
			capture_output=True,
			text=True,
			timeout=timeout,
		)

	def stdlib_dir(self) -> Path:
		res = self.run(["-I", "-c", "import sysconfig; print(sysconfig.get_paths()['stdlib'], end='')"])
		if res.returncode != 0:
			raise ConfigurationError(
				reason_code="RUNTIME_UNUSABLE",
				message=f"failed to query stdlib directory: {res.stderr.strip()}",
				details=[" ".join(self.command)],
			)
		return Path(res.stdout.strip())


def validate_multiplexers(names: list[str]) -> list[str]:
	for name in names:
		if name not in SUPPORTED_MULTIPLEXERS:
			raise ConfigurationError(
				reason_code="CONFIG_INVALID",
				message=f"unsupported multiplexer: {name!r} (supported: {', '.join(SUPPORTED_MULTIPLEXERS)})",
			)
	return list(names)


def _major_minor(version: str) -> str:
	parts = version.split(".")
	return ".".join(parts[:2])


def _read_path(argv: list[str], env: dict[str, str] | None = None) -> str:
	res = subprocess.run(argv, check=False, capture_output=True, text=True, env=env)
	if res.returncode != 0:
		raise ConfigurationError(
			reason_code="RUNTIME_NOT_FOUND",
			message=f"`{' '.join(argv)}` failed: {res.stderr.strip()}",
		)
	return res.stdout.strip()


def _resolve_with(multiplexer: str, channel: str) -> tuple[str, ...]:
	if multiplexer == "uv":
		return (_read_path(["uv", "python", "find", channel]),)
	if multiplexer == "pyenv":
		prefix = Path(_read_path(["pyenv", "prefix", channel]))
		exe = prefix / "python.exe" if os.name == "nt" else prefix / "bin" / "python"
		return (str(exe),)
	if multiplexer == "asdf":
		env = dict(os.environ, ASDF_PYTHON_VERSION=channel)
		return (_read_path(["asdf", "which", "python"], env=env),)
	if multiplexer == "mise":
		env = dict(os.environ, MISE_PYTHON_VERSION=channel)
		return (_read_path(["mise", "which", "python"], env=env),)
	if multiplexer == "py":
		return ("py", f"-{_major_minor(channel)}")
	raise ConfigurationError(reason_code="CONFIG_INVALID", message=f"unsupported multiplexer: {multiplexer!r}")


def select_runtime(multiplexers: list[str], channel: str) -> Runtime:
	"""
	Pick an interpreter for `channel` using the first multiplexer found on PATH.

	Falls back to the interpreter running the bundler when none is available.
	"""
	for multiplexer in multiplexers:
		if shutil.which(multiplexer) is None:
			continue
		command = _resolve_with(multiplexer, channel)
		_LOG.debug("runtime %s resolved via %s: %s", channel, multiplexer, " ".join(command))
		return Runtime(channel=channel, command=command)

	if multiplexers:
		_LOG.warning(
			"no multiplexer found on PATH (tried %s); using the ambient interpreter for runtime %s",
			", ".join(multiplexers),
			channel,
		)
	return Runtime(channel=channel, command=(sys.executable,))
