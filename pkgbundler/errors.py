# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class BundlerError(Exception):
	"""
	A structured, serializable error for bundling, stripping and installing.

	Every failure the tooling reports carries a stable reason code so the CLI can
	render it for humans (`format_human`) or machines (`to_dict`).
	"""

	reason_code: str
	message: str
	package: str | None = None
	version: str | None = None
	environment: str | None = None
	path: str | None = None
	details: list[str] = field(default_factory=list)

	def __str__(self) -> str:
		return self.format_human()

	def to_dict(self) -> dict[str, Any]:
		return {
			"reason_code": self.reason_code,
			"message": self.message,
			"package": self.package,
			"version": self.version,
			"environment": self.environment,
			"path": self.path,
			"details": list(self.details),
		}

	def format_human(self) -> str:
		parts: list[str] = [f"[{self.reason_code}] {self.message}"]
		if self.package:
			parts.append(f"package={self.package}")
		if self.version:
			parts.append(f"version={self.version}")
		if self.environment:
			parts.append(f"environment={self.environment}")
		if self.path:
			parts.append(f"path={self.path}")
		text = " ".join(parts)
		for line in self.details:
			text += f"\n  - {line}"
		return text


class ConfigurationError(BundlerError):
	pass


class ContentNotFoundError(BundlerError):
	pass


class MissingRequiredDependencyError(BundlerError):
	pass


class ProjectFileMissingError(BundlerError):
	pass


class ManifestFileMissingError(BundlerError):
	pass


class ParseOrSerializeError(BundlerError):
	pass


class BatchFailureError(BundlerError):
	"""Aggregated report of every module that failed inside a serialization batch."""

	def __init__(self, failures: list[BundlerError]) -> None:
		names = sorted({f.package or "?" for f in failures})
		super().__init__(
			reason_code="STRIP_FAILED",
			message=f"{len(names)} package(s) failed to strip: {', '.join(names)}",
			details=[f.format_human() for f in failures],
		)
		self.failures = list(failures)


class AmbiguousRegistryMatchError(BundlerError):
	pass


class RegistryMatchNotFoundError(BundlerError):
	pass


class HistoryAssemblyError(BundlerError):
	pass


class KeyGenerationError(BundlerError):
	pass


class SigningError(BundlerError):
	pass


class InstallError(BundlerError):
	pass


class OutputConflictError(BundlerError):
	pass
