# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import sys
from pathlib import Path

import pytest

from pkgbundler.errors import ContentNotFoundError, OutputConflictError, ProjectFileMissingError
from pkgbundler.keygen import KeyPair
from pkgbundler.runtime import select_runtime
from pkgbundler.sign import verify_file
from pkgbundler.sniff import SniffedPackage
from pkgbundler.strip import collect_source_files, copy_out, prepare_package, remove_non_runtime, run_batch
from pkgbundler.tests.bundle_helpers import (
	BROKEN_UUID,
	TEST_UUID,
	FakeDepot,
	load_package,
	make_module,
	write_file,
)
from pkgbundler.tomlfile import read_toml


def _sniffed(name: str, uuid: str, version: str, path: Path) -> SniffedPackage:
	return SniffedPackage(
		name=name,
		uuid=uuid,
		version=version,
		path=path,
		registry=None,
		runtime_version=".".join(str(v) for v in sys.version_info[:3]),
	)


def test_remove_non_runtime_drops_tooling_and_caches(tmp_path: Path) -> None:
	write_file(tmp_path / ".git" / "HEAD", "")
	write_file(tmp_path / "tests" / "test_x.py", "")
	write_file(tmp_path / "docs" / "index.md", "")
	write_file(tmp_path / ".gitignore", "")
	write_file(tmp_path / "src" / "__pycache__" / "m.cpython-311.pyc", "")
	write_file(tmp_path / "src" / "m.py", "")
	write_file(tmp_path / "README.md", "")

	removed = remove_non_runtime(tmp_path)

	assert sorted(removed) == [".git", ".gitignore", "docs", "src/__pycache__", "tests"]
	assert sorted(p.name for p in tmp_path.iterdir()) == ["README.md", "src"]
	assert [p.name for p in (tmp_path / "src").iterdir()] == ["m.py"]


def test_collect_source_files_tags_entry_points(tmp_path: Path) -> None:
	write_file(tmp_path / "src" / "Pkg" / "__init__.py", "")
	write_file(tmp_path / "src" / "Pkg" / "util.py", "")
	write_file(tmp_path / "ext" / "PkgPlotExt.py", "")
	write_file(tmp_path / "ext" / "helpers.py", "")
	files = collect_source_files(tmp_path, "Pkg", {"extensions": {"PkgPlotExt": "Plots"}})
	assert [(f.relative_path, f.entry_point) for f in files] == [
		("src/Pkg/__init__.py", "Pkg"),
		("src/Pkg/util.py", None),
		("ext/PkgPlotExt.py", "PkgPlotExt"),
		("ext/helpers.py", None),
	]


def test_collect_source_files_requires_entry_point(tmp_path: Path) -> None:
	write_file(tmp_path / "src" / "other.py", "")
	with pytest.raises(ContentNotFoundError) as info:
		collect_source_files(tmp_path, "Pkg", {})
	assert info.value.reason_code == "ENTRY_POINT_MISSING"


def test_prepare_package_copies_cleans_and_signs_project(tmp_path: Path, depot: FakeDepot, keys: KeyPair) -> None:
	scratch = tmp_path / "scratch"
	scratch.mkdir()
	item = prepare_package(_sniffed("TestPackage", TEST_UUID, "0.1.0", depot.paths["0.1.0"]), scratch, keys, channel="current")

	root = item.temp_directory
	assert root.parent == scratch
	assert not (root / "tests").exists()
	assert not (root / "docs").exists()
	assert verify_file(root / "Project.toml", keys.public)
	assert (root / "key.pub").read_bytes() == keys.public.read_bytes()
	assert "*.pyser binary" in (root / ".gitattributes").read_text(encoding="utf-8")
	assert [f.entry_point for f in item.files] == ["TestPackage", None]
	assert item.to_request()["files"] == [
		{"relative_path": "src/TestPackage/__init__.py", "entry_point": "TestPackage"},
		{"relative_path": "src/TestPackage/helpers.py", "entry_point": ""},
	]
	# the depot copy is left untouched
	assert (depot.paths["0.1.0"] / "tests").is_dir()


def test_prepare_package_remaps_project_uuids(tmp_path: Path, depot: FakeDepot, keys: KeyPair) -> None:
	new_uuid = "3f6a1c2b-8d4e-4f5a-9b6c-7d8e9f0a1b2d"
	item = prepare_package(
		_sniffed("TestPackage", TEST_UUID, "0.1.0", depot.paths["0.1.0"]),
		tmp_path,
		keys,
		channel="current",
		uuid_map={TEST_UUID: new_uuid},
	)
	assert read_toml(item.temp_directory / "Project.toml")["uuid"] == new_uuid
	assert item.uuid == TEST_UUID


def test_prepare_package_without_project_file(tmp_path: Path, keys: KeyPair) -> None:
	src = tmp_path / "content"
	write_file(src / "src" / "Loose.py", "x = 1\n")
	with pytest.raises(ProjectFileMissingError):
		prepare_package(_sniffed("Loose", TEST_UUID, "1.0.0", src), tmp_path, keys, channel="current")


def test_run_batch_keeps_good_modules_and_reports_broken_ones(tmp_path: Path, depot: FakeDepot, keys: KeyPair) -> None:
	broken_path, _ = make_module(depot.root, "BrokenPackage", BROKEN_UUID, "1.0.0", {"src/BrokenPackage.py": "def broken(:\n"})
	scratch = tmp_path / "scratch"
	scratch.mkdir()
	out = tmp_path / "out"
	items = [
		prepare_package(_sniffed("BrokenPackage", BROKEN_UUID, "1.0.0", broken_path), scratch, keys, channel="current"),
		prepare_package(_sniffed("TestPackage", TEST_UUID, "0.1.0", depot.paths["0.1.0"]), scratch, keys, channel="current"),
	]

	stripped, failures = run_batch(items, select_runtime([], "current"), keys, out, scratch=scratch)

	assert [m.name for m in stripped] == ["TestPackage"]
	assert [(f.package, f.reason_code) for f in failures] == [("BrokenPackage", "PARSE_OR_SERIALIZE_FAILED")]
	assert list(scratch.iterdir()) == []
	assert not (out / "packages" / "BrokenPackage").exists()

	dest = out / "packages" / "TestPackage" / "0.1.0"
	assert stripped[0].path == dest
	init = dest / "src" / "TestPackage" / "__init__.py"
	assert verify_file(init, keys.public)
	payload = init.with_name(f"__init__.py.{sys.implementation.cache_tag}.pyser")
	assert verify_file(payload, keys.public)
	assert verify_file(dest / "Project.toml", keys.public)
	assert load_package(dest / "src", "TestPackage").greet("a") == "hello a from 0.1.0"


def test_copy_out_refuses_conflicting_content(tmp_path: Path, depot: FakeDepot, keys: KeyPair) -> None:
	item = prepare_package(_sniffed("TestPackage", TEST_UUID, "0.1.0", depot.paths["0.1.0"]), tmp_path, keys, channel="current")
	out = tmp_path / "out"
	copy_out(item, out)
	# identical content merges silently
	copy_out(item, out)
	write_file(item.temp_directory / "src" / "TestPackage" / "helpers.py", "changed = True\n")
	with pytest.raises(OutputConflictError):
		copy_out(item, out)
