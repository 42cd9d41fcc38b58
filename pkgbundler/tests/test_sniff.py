# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from pkgbundler.depot import DepotStore, default_depots, version_slug
from pkgbundler.errors import ContentNotFoundError, MissingRequiredDependencyError
from pkgbundler.runtime import select_runtime
from pkgbundler.sniff import sniff_versions
from pkgbundler.tests.bundle_helpers import (
	PICKLE_UUID,
	REGISTRY_UUID,
	TEST_UUID,
	FakeDepot,
	make_environment,
	make_module,
	sample_sources,
	write_file,
)


@dataclass
class FakeStdlib:
	root: Path
	calls: int = 0

	def stdlib_dir(self) -> Path:
		self.calls += 1
		return self.root


@pytest.fixture
def stdlib(tmp_path: Path) -> FakeStdlib:
	write_file(tmp_path / "stdlib" / "pickle.py", "# stub\n")
	return FakeStdlib(root=tmp_path / "stdlib")


def test_slug_is_stable_and_base62() -> None:
	slug = version_slug(TEST_UUID, "ab" * 20)
	assert slug == version_slug(TEST_UUID, "ab" * 20)
	assert len(slug) == 5 and slug.isalnum()
	assert slug != version_slug(TEST_UUID, "cd" * 20)


def test_default_depots_honours_search_path(tmp_path: Path) -> None:
	raw = os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")])
	assert default_depots({"PKGBUNDLER_DEPOT_PATH": raw}) == [tmp_path / "a", tmp_path / "b"]
	assert default_depots({}) == [Path.home() / ".pkgdepot"]


def test_sniff_resolves_content_and_owning_registry(tmp_path: Path, depot: FakeDepot, stdlib: FakeStdlib) -> None:
	env = make_environment(tmp_path / "env", {"TestPackage": (TEST_UUID, "0.2.0", depot.hashes["0.2.0"])})
	found = sniff_versions(env, DepotStore([depot.root]), stdlib)

	pkg = found[TEST_UUID]
	assert pkg.path == depot.paths["0.2.0"]
	assert pkg.registry == REGISTRY_UUID
	assert pkg.version == "0.2.0"

	pickle = found[PICKLE_UUID]
	assert pickle.path == stdlib.root / "pickle.py"
	assert pickle.registry is None
	assert stdlib.calls == 1


def test_sniff_leaves_unlisted_version_unowned(tmp_path: Path, depot: FakeDepot, stdlib: FakeStdlib) -> None:
	path, tree_hash = make_module(depot.root, "TestPackage", TEST_UUID, "0.3.0-dev", sample_sources("0.3.0-dev"))
	env = make_environment(tmp_path / "env", {"TestPackage": (TEST_UUID, "0.3.0-dev", tree_hash)})
	found = sniff_versions(env, DepotStore([depot.root]), stdlib)
	assert found[TEST_UUID].path == path
	assert found[TEST_UUID].registry is None


def test_sniff_reports_missing_content(tmp_path: Path, depot: FakeDepot, stdlib: FakeStdlib) -> None:
	env = make_environment(tmp_path / "env", {"TestPackage": (TEST_UUID, "9.9.9", "ef" * 20)})
	with pytest.raises(ContentNotFoundError) as info:
		sniff_versions(env, DepotStore([depot.root]), stdlib)
	assert info.value.reason_code == "CONTENT_NOT_FOUND"
	assert info.value.package == "TestPackage"


def test_sniff_requires_serialization_support(tmp_path: Path, depot: FakeDepot, stdlib: FakeStdlib) -> None:
	env = make_environment(
		tmp_path / "env",
		{"TestPackage": (TEST_UUID, "0.1.0", depot.hashes["0.1.0"])},
		include_pickle=False,
	)
	with pytest.raises(MissingRequiredDependencyError) as info:
		sniff_versions(env, DepotStore([depot.root]), stdlib)
	assert info.value.reason_code == "REQUIRED_DEP_MISSING"
	assert info.value.package == "pickle"


def test_sniff_with_the_running_interpreter_finds_real_stdlib(tmp_path: Path, depot: FakeDepot) -> None:
	env = make_environment(tmp_path / "env", {})
	runtime = select_runtime([], "current")
	assert runtime.command == (sys.executable,)
	found = sniff_versions(env, DepotStore([depot.root]), runtime)
	assert found[PICKLE_UUID].path.name == "pickle.py"
