# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Iterable

from pkgbundler.crypto import load_private_key, load_public_key, rsa_sha512_sign, rsa_sha512_verify
from pkgbundler.errors import SigningError

SIGNATURE_SUFFIX = ".sign"
PUBLIC_KEY_NAME = "key.pub"


@lru_cache(maxsize=8)
def _cached_private_key(path: str):
	return load_private_key(Path(path))


def sign_file(file: Path, private_key: Path) -> Path:
	"""Write the detached signature `<file>.sign` and return its path."""
	out = Path(str(file) + SIGNATURE_SUFFIX)
	try:
		key = _cached_private_key(str(Path(private_key).resolve()))
		out.write_bytes(rsa_sha512_sign(key, Path(file).read_bytes()))
	except Exception as err:
		raise SigningError(
			reason_code="SIGN_FAILED",
			message=f"failed to sign file: {err}",
			path=str(file),
		) from err
	return out


def verify_file(file: Path, public_key: Path, signature: Path | None = None) -> bool:
	sig_path = Path(signature) if signature is not None else Path(str(file) + SIGNATURE_SUFFIX)
	if not Path(file).is_file() or not sig_path.is_file():
		return False
	key = load_public_key(Path(public_key))
	return rsa_sha512_verify(key, Path(file).read_bytes(), sig_path.read_bytes())


def signable_files(root: Path) -> Iterable[Path]:
	"""
	Yield every file under `root` that must carry a signature.

	Skips signatures themselves, the distributed public key and git internals.
	"""
	for dirpath, dirnames, filenames in os.walk(root):
		dirnames[:] = sorted(d for d in dirnames if d != ".git")
		for name in sorted(filenames):
			if name.endswith(SIGNATURE_SUFFIX) or name == PUBLIC_KEY_NAME:
				continue
			yield Path(dirpath) / name


def sign_tree(root: Path, private_key: Path) -> int:
	count = 0
	for path in signable_files(root):
		sign_file(path, private_key)
		count += 1
	return count
