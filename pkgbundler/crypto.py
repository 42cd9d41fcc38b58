# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

RSA_KEY_BITS = 4096
RSA_PUBLIC_EXPONENT = 65537


def sha256_file_hex(path: Path) -> str:
	h = hashlib.sha256()
	with open(path, "rb") as f:
		while True:
			chunk = f.read(1024 * 1024)
			if not chunk:
				break
			h.update(chunk)
	return h.hexdigest()


def b64_encode(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def b64_decode(text: str) -> bytes:
	return base64.b64decode(text.encode("ascii"), validate=True)


def canonical_json_bytes(obj: Any) -> bytes:
	return (json.dumps(obj, sort_keys=True, separators=(",", ":")) + "\n").encode("utf-8")


def generate_rsa_private_key() -> rsa.RSAPrivateKey:
	return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_BITS)


def private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


def public_key_pem(key: rsa.RSAPublicKey) -> bytes:
	return key.public_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PublicFormat.SubjectPublicKeyInfo,
	)


def load_private_key(path: Path) -> rsa.RSAPrivateKey:
	key = serialization.load_pem_private_key(path.read_bytes(), password=None)
	if not isinstance(key, rsa.RSAPrivateKey):
		raise ValueError(f"private key is not an RSA key: {path}")
	return key


def load_public_key(path: Path) -> rsa.RSAPublicKey:
	key = serialization.load_pem_public_key(path.read_bytes())
	if not isinstance(key, rsa.RSAPublicKey):
		raise ValueError(f"public key is not an RSA key: {path}")
	return key


def rsa_sha512_sign(key: rsa.RSAPrivateKey, message: bytes) -> bytes:
	"""
	Sign `message` with RSASSA-PKCS1-v1_5 over SHA-512.

	Pinned scheme: deterministic, and byte-identical to
	`openssl dgst -sha512 -sign key.pem -binary`.
	"""
	return key.sign(message, padding.PKCS1v15(), hashes.SHA512())


def rsa_sha512_verify(key: rsa.RSAPublicKey, message: bytes, signature: bytes) -> bool:
	try:
		key.verify(signature, message, padding.PKCS1v15(), hashes.SHA512())
	except InvalidSignature:
		return False
	return True
