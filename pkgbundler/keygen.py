# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import atexit
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from pkgbundler.crypto import (
	b64_decode,
	b64_encode,
	generate_rsa_private_key,
	private_key_pem,
	public_key_pem,
)
from pkgbundler.errors import KeyGenerationError

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPair:
	private: Path
	public: Path


def keypair(dir: Path | str | None = None) -> KeyPair:
	"""
	Generate a new RSA key pair for signing stripped packages.

	The private key is written to `key.pem` and the public key to `key.pub`
	inside `dir` (default: the current directory). Existing keys are never
	overwritten: when both files are present they are returned unchanged.
	Do not commit the private key to version control.
	"""
	root = Path(dir) if dir is not None else Path.cwd()
	private = root / "key.pem"
	public = root / "key.pub"
	if private.is_file() and public.is_file():
		return KeyPair(private=private, public=public)

	_LOG.info("generating key pair for signing stripped packages in %s", root)
	try:
		key = generate_rsa_private_key()
		pem = private_key_pem(key)
		pub = public_key_pem(key.public_key())
	except Exception as err:
		raise KeyGenerationError(
			reason_code="KEYGEN_FAILED",
			message=f"key generation failed: {err}",
			path=str(root),
		) from err

	root.mkdir(parents=True, exist_ok=True)
	_write_restricted(private, pem)
	public.write_bytes(pub)
	return KeyPair(private=private, public=public)


def _write_restricted(path: Path, data: bytes) -> None:
	fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
	with os.fdopen(fd, "wb") as f:
		f.write(data)


def base64_keypair(path: Path | str) -> str:
	"""Render `<path>.pem`/`<path>.pub` as the two CI secret assignments."""
	base = str(path)
	pri = Path(base + ".pem").read_bytes()
	pub = Path(base + ".pub").read_bytes()
	return f'PRIVATE_KEY_BASE64 = "{b64_encode(pri)}"\n\nPUBLIC_KEY_BASE64 = "{b64_encode(pub)}"\n'


def import_keypair(
	*,
	file: str = "key",
	base64: bool = True,
	private: str = "PRIVATE_KEY_BASE64",
	public: str = "PUBLIC_KEY_BASE64",
	environ: Mapping[str, str] | None = None,
) -> KeyPair | None:
	"""
	Import a key pair from environment variables into `<file>.pem`/`<file>.pub`.

	Only meaningful in CI: when `CI` is unset or "false" nothing is written.
	Both files are removed again when the interpreter exits.
	"""
	env = os.environ if environ is None else environ
	if env.get("CI", "false") == "false":
		_LOG.warning("import_keypair is only useful in CI; skipping")
		return None

	if private not in env:
		raise KeyGenerationError(reason_code="KEY_IMPORT_MISSING", message=f"private key `{private}` not found")
	if public not in env:
		raise KeyGenerationError(reason_code="KEY_IMPORT_MISSING", message=f"public key `{public}` not found")

	try:
		pri = b64_decode(env[private]) if base64 else env[private].encode("utf-8")
		pub = b64_decode(env[public]) if base64 else env[public].encode("utf-8")
	except ValueError as err:
		raise KeyGenerationError(reason_code="KEY_IMPORT_INVALID", message=f"invalid base64 key material: {err}") from err

	private_file = Path(f"{file}.pem")
	public_file = Path(f"{file}.pub")
	_write_restricted(private_file, pri)
	public_file.write_bytes(pub)
	atexit.register(_remove_key_files, private_file, public_file)
	return KeyPair(private=private_file, public=public_file)


def _remove_key_files(*paths: Path) -> None:
	for path in paths:
		try:
			path.unlink(missing_ok=True)
		except OSError as err:
			_LOG.error("failed to remove key file %s: %s", path, err)
