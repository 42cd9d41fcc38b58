# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from pkgbundler.keygen import KeyPair, keypair
from pkgbundler.tests.bundle_helpers import (
	REGISTRY_UUID,
	TEST_UUID,
	FakeDepot,
	make_module,
	make_registry,
	sample_sources,
)


@pytest.fixture(scope="session")
def session_keys(tmp_path_factory: pytest.TempPathFactory) -> KeyPair:
	"""
	One RSA key pair for the whole session.

	4096-bit generation is slow; tests that need their own copy should use
	`keys` instead.
	"""
	return keypair(tmp_path_factory.mktemp("keys"))


@pytest.fixture
def keys(session_keys: KeyPair, tmp_path: Path) -> KeyPair:
	dest = tmp_path / "keys"
	dest.mkdir()
	shutil.copyfile(session_keys.private, dest / "key.pem")
	shutil.copyfile(session_keys.public, dest / "key.pub")
	return KeyPair(private=dest / "key.pem", public=dest / "key.pub")


@pytest.fixture
def depot(tmp_path: Path) -> FakeDepot:
	"""A depot holding TestPackage 0.1.0 and 0.2.0 plus a `General` registry vouching for both."""
	root = tmp_path / "depot"
	hashes: dict[str, str] = {}
	paths: dict[str, Path] = {}
	for version in ("0.1.0", "0.2.0"):
		path, tree_hash = make_module(root, "TestPackage", TEST_UUID, version, sample_sources(version))
		hashes[version] = tree_hash
		paths[version] = path
	make_registry(root, "General", REGISTRY_UUID, {TEST_UUID: ("TestPackage", dict(hashes))})
	return FakeDepot(root=root, hashes=hashes, paths=paths)
