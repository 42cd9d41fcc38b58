# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from pkgbundler.bundle import bundle
from pkgbundler.config import load_config, merge_packages, packages_from_registries
from pkgbundler.depot import DepotStore
from pkgbundler.errors import ConfigurationError
from pkgbundler.hooks import HookRegistry
from pkgbundler.keygen import KeyPair
from pkgbundler.tests.bundle_helpers import (
	BUNDLE_UUID,
	REGISTRY_UUID,
	TEST_UUID,
	FakeDepot,
	install_keys,
	make_environment,
	write_file,
)
from pkgbundler.tomlfile import write_toml


def _project(root: Path, keys: KeyPair, **overrides: Any) -> Path:
	make_environment(root / "environments" / "env1", {})
	install_keys(keys.private.parent, root)
	data: dict[str, Any] = {"uuid": BUNDLE_UUID, "environments": ["environments/env1"], "packages": {TEST_UUID: "TestPackage"}}
	data.update(overrides)
	write_toml(root / "PackageBundler.toml", data, sort=False)
	return root / "PackageBundler.toml"


def _reason(path: Path) -> str:
	with pytest.raises(ConfigurationError) as info:
		load_config(path)
	return info.value.reason_code


def test_minimal_config_gets_defaults(tmp_path: Path, keys: KeyPair) -> None:
	config = load_config(_project(tmp_path, keys))
	assert config.name == "PackageBundle"
	assert config.uuid == BUNDLE_UUID
	assert config.environments == [(tmp_path / "environments" / "env1").resolve()]
	assert config.outputs == [tmp_path.resolve() / "PackageBundle"]
	assert config.keys.private == tmp_path.resolve() / "key.pem"
	assert config.packages == {TEST_UUID: "TestPackage"}
	assert config.registries == {}
	assert config.clean is False
	assert config.multiplexers == []
	assert config.depots is None
	assert config.hooks.names() == []
	assert config.worker_timeout is None


def test_outputs_and_hooks_are_relative_to_config(tmp_path: Path, keys: KeyPair) -> None:
	write_file(tmp_path / "hooks" / "t.py", "def code_transformer(filename, tree, context):\n\treturn tree\n")
	path = _project(
		tmp_path,
		keys,
		outputs=["dist/Bundle.tar.gz", "dist/Artifacts.toml"],
		handlers={"code_transformer": "hooks/t.py"},
		depots=["depot"],
		worker_timeout=30,
	)
	config = load_config(path)
	root = tmp_path.resolve()
	assert config.outputs == [root / "dist" / "Bundle.tar.gz", root / "dist" / "Artifacts.toml"]
	assert config.hooks.to_request() == {"code_transformer": f"{root / 'hooks' / 't.py'}:code_transformer"}
	assert config.depots == [root / "depot"]
	assert config.worker_timeout == 30.0


@pytest.mark.parametrize(
	"overrides",
	[
		{"colour": "blue"},
		{"name": "not-an-identifier"},
		{"uuid": "nope"},
		{"clean": "yes"},
		{"multiplexers": ["conda"]},
		{"worker_timeout": 0},
		{"packages": {"not-a-uuid": "TestPackage"}},
		{"environments": []},
	],
)
def test_invalid_fields_are_rejected(tmp_path: Path, keys: KeyPair, overrides: dict[str, Any]) -> None:
	assert _reason(_project(tmp_path, keys, **overrides)) == "CONFIG_INVALID"


def test_missing_config_file(tmp_path: Path) -> None:
	assert _reason(tmp_path / "PackageBundler.toml") == "CONFIG_NOT_FOUND"


def test_missing_environment_directory(tmp_path: Path, keys: KeyPair) -> None:
	assert _reason(_project(tmp_path, keys, environments=["environments/nope"])) == "ENV_NOT_FOUND"


def test_missing_key(tmp_path: Path, keys: KeyPair) -> None:
	assert _reason(_project(tmp_path, keys, key="other")) == "KEY_NOT_FOUND"


def test_unknown_hook_name(tmp_path: Path, keys: KeyPair) -> None:
	write_file(tmp_path / "hooks" / "t.py", "")
	assert _reason(_project(tmp_path, keys, handlers={"rewrite": "hooks/t.py"})) == "HOOK_UNKNOWN"


def test_missing_hook_file(tmp_path: Path, keys: KeyPair) -> None:
	assert _reason(_project(tmp_path, keys, handlers={"code_loader": "hooks/missing.py"})) == "HOOK_FILE_MISSING"


def test_codec_hooks_need_a_loader(tmp_path: Path, keys: KeyPair) -> None:
	write_file(tmp_path / "hooks" / "codec.py", "")
	config = _project(tmp_path, keys, handlers={"data_encoder": "hooks/codec.py", "data_decoder": "hooks/codec.py"})
	with pytest.raises(ConfigurationError) as info:
		bundle(config)
	assert info.value.reason_code == "HOOK_LOADER_REQUIRED"


def test_loader_from_another_source_satisfies_codec_hooks(tmp_path: Path) -> None:
	write_file(tmp_path / "codec.py", "")
	hooks = HookRegistry.from_mapping({"data_encoder": "codec.py"}, base_dir=tmp_path)
	with pytest.raises(ConfigurationError):
		hooks.validate()
	hooks.update(HookRegistry.from_mapping({"code_loader": "codec.py"}, base_dir=tmp_path))
	hooks.validate()
	assert hooks.names() == ["code_loader", "data_encoder"]


def test_packages_from_registries(depot: FakeDepot) -> None:
	store = DepotStore([depot.root])
	assert packages_from_registries({REGISTRY_UUID: "General"}, store) == {TEST_UUID: "TestPackage"}
	assert packages_from_registries({}, store) == {}


def test_registry_with_wrong_name_or_unreachable(depot: FakeDepot) -> None:
	store = DepotStore([depot.root])
	with pytest.raises(ConfigurationError) as info:
		packages_from_registries({REGISTRY_UUID: "Other"}, store)
	assert info.value.reason_code == "REGISTRY_NAME_MISMATCH"
	with pytest.raises(ConfigurationError) as info:
		packages_from_registries({"00000000-0000-4000-8000-000000000001": "Gone"}, store)
	assert info.value.reason_code == "REGISTRY_NOT_REACHABLE"


def test_merge_packages() -> None:
	assert merge_packages({TEST_UUID: "TestPackage"}, {TEST_UUID: "TestPackage"}) == {TEST_UUID: "TestPackage"}
	with pytest.raises(ConfigurationError) as info:
		merge_packages({TEST_UUID: "TestPackage"}, {TEST_UUID: "Renamed"})
	assert info.value.reason_code == "PACKAGE_NAME_CONFLICT"
	with pytest.raises(ConfigurationError) as info:
		merge_packages({}, {})
	assert info.value.reason_code == "NO_PACKAGES"
