# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pkgbundler.errors import ConfigurationError
from pkgbundler.sign import PUBLIC_KEY_NAME, SIGNATURE_SUFFIX, signable_files, verify_file

VERIFIED_DIRS = ("environments", "packages")


@dataclass(frozen=True)
class VerifyReport:
	ok: bool
	checked: int
	failed: list[str] = field(default_factory=list)
	missing_signatures: list[str] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		return {
			"ok": self.ok,
			"checked": self.checked,
			"failed": sorted(self.failed),
			"missing_signatures": sorted(self.missing_signatures),
		}


def _find_public_key(bundle: Path) -> Path:
	for candidate in sorted((bundle / "environments").glob(f"*/{PUBLIC_KEY_NAME}")):
		return candidate
	raise ConfigurationError(
		reason_code="KEY_NOT_FOUND",
		message="no public key given and none found in the bundle's environments",
		path=str(bundle),
	)


def verify_bundle(bundle_dir: Path, public_key: Path | None = None) -> VerifyReport:
	"""
	Check the signature of every shipped file under `environments/` and `packages/`.

	Without `public_key` the copy of the key shipped in the bundle is used,
	which only proves internal consistency; pass the publisher's key to
	check provenance.
	"""
	bundle = Path(bundle_dir).resolve()
	key = Path(public_key) if public_key is not None else _find_public_key(bundle)
	checked = 0
	failed: list[str] = []
	missing: list[str] = []
	for sub in VERIFIED_DIRS:
		root = bundle / sub
		if not root.is_dir():
			continue
		for path in signable_files(root):
			rel = path.relative_to(bundle).as_posix()
			checked += 1
			if not Path(str(path) + SIGNATURE_SUFFIX).is_file():
				missing.append(rel)
			elif not verify_file(path, key):
				failed.append(rel)
	return VerifyReport(ok=not failed and not missing, checked=checked, failed=failed, missing_signatures=missing)
