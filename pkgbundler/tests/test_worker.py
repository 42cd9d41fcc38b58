# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import ast
import json
import pickle
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from pkgbundler import worker
from pkgbundler.strip import WORKER_SCRIPT
from pkgbundler.tests.bundle_helpers import load_package, sample_sources, write_file


def _package_tree(root: Path, sources: dict[str, str]) -> Path:
	for rel, text in sources.items():
		if rel.startswith("src/"):
			write_file(root / rel, text)
	return root


def _request(tmp_path: Path, packages: list[dict[str, Any]], handlers: dict[str, str] | None = None) -> dict[str, Any]:
	return {
		"format": worker.REQUEST_FORMAT,
		"version": worker.FORMAT_VERSION,
		"handlers": handlers or {},
		"packages": packages,
		"result_path": str(tmp_path / "result.json"),
	}


def _test_package_entry(root: Path, version: str = "0.1.0") -> dict[str, Any]:
	return {
		"package_name": "TestPackage",
		"package_version": version,
		"temp_directory": str(root),
		"files": [
			{"relative_path": "src/TestPackage/__init__.py", "entry_point": "TestPackage"},
			{"relative_path": "src/TestPackage/helpers.py", "entry_point": ""},
		],
	}


def _run_worker(request_path: Path) -> subprocess.CompletedProcess[str]:
	return subprocess.run(
		[sys.executable, "-I", "-S", str(WORKER_SCRIPT), str(request_path)],
		check=False,
		capture_output=True,
		text=True,
	)


def test_xor_key_is_path_length_modulo_256() -> None:
	assert worker.xor_key("src/A.py") == 8
	assert worker.xor_key("x" * 300) == 300 & 0xFF
	data = b"\x00\x01payload\xff"
	assert worker.xor_bytes(worker.xor_bytes(data, 42), 42) == data


def test_stripped_package_still_imports_and_runs(tmp_path: Path) -> None:
	root = _package_tree(tmp_path / "pkg", sample_sources("0.1.0"))
	request_path = tmp_path / "request.json"
	request_path.write_text(json.dumps(_request(tmp_path, [_test_package_entry(root)])), encoding="utf-8")

	res = _run_worker(request_path)
	assert res.returncode == 0, res.stderr
	result = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
	assert result["ok"] is True
	assert result["cache_tag"] == sys.implementation.cache_tag
	tag = sys.implementation.cache_tag
	assert result["stripped"] == [
		{
			"package_name": "TestPackage",
			"package_version": "0.1.0",
			"payloads": [
				f"src/TestPackage/__init__.py.{tag}.pyser",
				f"src/TestPackage/helpers.py.{tag}.pyser",
			],
		}
	]

	init = (root / "src" / "TestPackage" / "__init__.py").read_text(encoding="utf-8")
	assert "greet" not in init
	assert "# entry point: TestPackage" in init
	assert "# entry point" not in (root / "src" / "TestPackage" / "helpers.py").read_text(encoding="utf-8")

	mod = load_package(root / "src", "TestPackage")
	assert mod.greet("world") == "hello world from 0.1.0"
	assert mod.double(21) == 42
	assert mod.__doc__ == "TestPackage docs."
	assert mod.greet.__annotations__ == {"name": "str", "return": "str"}


def test_payload_decodes_to_the_transformed_tree(tmp_path: Path) -> None:
	root = _package_tree(tmp_path / "pkg", sample_sources("0.1.0"))
	worker.run_batch(_request(tmp_path, [_test_package_entry(root)]), worker.StripHooks())

	rel = "src/TestPackage/helpers.py"
	payload = root / "src" / "TestPackage" / worker.payload_name("helpers.py", sys.implementation.cache_tag)
	tree = worker.decode_payload(payload.read_bytes(), worker.xor_key(rel))
	assert isinstance(tree, ast.Module)
	assert isinstance(tree.body[0], ast.Assign)
	assert tree.body[0].targets[0].id == "__doc__"
	assert [n.name for n in tree.body if isinstance(n, ast.FunctionDef)] == ["double"]


def test_entry_point_gets_debug_log_injection(tmp_path: Path) -> None:
	root = _package_tree(tmp_path / "pkg", sample_sources("0.1.0"))
	worker.run_batch(_request(tmp_path, [_test_package_entry(root)]), worker.StripHooks())

	rel = "src/TestPackage/__init__.py"
	payload = root / "src" / "TestPackage" / worker.payload_name("__init__.py", sys.implementation.cache_tag)
	text = ast.unparse(worker.decode_payload(payload.read_bytes(), worker.xor_key(rel)))
	assert "Loading serialized code." in text
	assert "__future__" not in text


def test_one_broken_module_does_not_stop_the_batch(tmp_path: Path) -> None:
	good = _package_tree(tmp_path / "good", sample_sources("0.1.0"))
	broken = tmp_path / "broken"
	write_file(broken / "src" / "BrokenPackage.py", "def broken(:\n")
	entries = [
		{
			"package_name": "BrokenPackage",
			"package_version": "1.0.0",
			"temp_directory": str(broken),
			"files": [{"relative_path": "src/BrokenPackage.py", "entry_point": "BrokenPackage"}],
		},
		_test_package_entry(good),
	]
	result = worker.run_batch(_request(tmp_path, entries), worker.StripHooks())
	assert result["ok"] is False
	assert [s["package_name"] for s in result["stripped"]] == ["TestPackage"]
	assert len(result["failed"]) == 1
	failure = result["failed"][0]
	assert failure["package_name"] == "BrokenPackage"
	assert failure["reason_code"] == "PARSE_OR_SERIALIZE_FAILED"
	assert failure["message"].startswith("SyntaxError")


def test_configured_transformer_hook_runs_in_the_worker(tmp_path: Path) -> None:
	hook = write_file(
		tmp_path / "hooks" / "transform.py",
		"import ast\n"
		"\n"
		"def add_marker(filename, tree, context):\n"
		"\tif context['entry_point']:\n"
		"\t\ttree.body.append(ast.parse('HOOKED = ' + repr(context['package_version'])).body[0])\n"
		"\treturn tree\n",
	)
	root = _package_tree(tmp_path / "pkg", sample_sources("0.2.0"))
	request_path = tmp_path / "request.json"
	request = _request(tmp_path, [_test_package_entry(root, "0.2.0")], {"code_transformer": f"{hook}:add_marker"})
	request_path.write_text(json.dumps(request), encoding="utf-8")

	res = _run_worker(request_path)
	assert res.returncode == 0, res.stderr
	mod = load_package(root / "src", "TestPackage")
	assert mod.HOOKED == "0.2.0"
	assert mod.greet("x") == "hello x from 0.2.0"


def test_decoder_that_does_not_invert_encoder_fails_the_package(tmp_path: Path) -> None:
	hook = write_file(
		tmp_path / "hooks" / "enc.py",
		"def data_encoder(filename, data, key, context):\n"
		"\treturn data[::-1]\n"
		"\n"
		"\n"
		"def code_loader(payload_name, key, entry_point, flags, context):\n"
		"\treturn ''\n",
	)
	root = _package_tree(tmp_path / "pkg", sample_sources("0.1.0"))
	hooks = worker.load_hooks({"data_encoder": str(hook), "code_loader": str(hook)})
	result = worker.run_batch(_request(tmp_path, [_test_package_entry(root)]), hooks)
	assert result["ok"] is False
	assert "data_decoder does not invert data_encoder" in result["failed"][0]["message"]


_CODEC_HOOKS = '''\
LOADER = """\\
import os, pickle
with open(os.path.join(os.path.dirname(__file__), {name!r}), "rb") as f:
	__tree = pickle.loads(bytes(b ^ 0x5A for b in f.read()))
exec(compile(__tree, __file__, "exec", {flags}, dont_inherit=True), globals())
"""


def data_encoder(filename, data, key, context):
	return bytes(b ^ 0x5A for b in data)


def data_decoder(filename, key, context):
	return lambda data: bytes(b ^ 0x5A for b in data)


def code_loader(payload_name, key, entry_point, flags, context):
	return LOADER.format(name=payload_name, flags=flags)
'''


def test_codec_hooks_without_loader_are_rejected(tmp_path: Path) -> None:
	hook = write_file(tmp_path / "hooks" / "codec.py", _CODEC_HOOKS)
	with pytest.raises(worker.RequestError, match="requires a code_loader hook"):
		worker.load_hooks({"data_encoder": str(hook), "data_decoder": str(hook)})


def test_codec_hooks_with_matching_loader_produce_importable_modules(tmp_path: Path) -> None:
	hook = write_file(tmp_path / "hooks" / "codec.py", _CODEC_HOOKS)
	root = _package_tree(tmp_path / "pkg", sample_sources("0.1.0"))
	request_path = tmp_path / "request.json"
	handlers = {name: str(hook) for name in ("data_encoder", "data_decoder", "code_loader")}
	request_path.write_text(json.dumps(_request(tmp_path, [_test_package_entry(root)], handlers)), encoding="utf-8")

	res = _run_worker(request_path)
	assert res.returncode == 0, res.stderr
	payload = root / "src" / "TestPackage" / worker.payload_name("__init__.py", sys.implementation.cache_tag)
	assert pickle.loads(bytes(b ^ 0x5A for b in payload.read_bytes())).body
	mod = load_package(root / "src", "TestPackage")
	assert mod.greet("x") == "hello x from 0.1.0"
	assert mod.double(4) == 8


def test_unknown_hook_is_rejected() -> None:
	with pytest.raises(worker.RequestError, match="unknown hook"):
		worker.load_hooks({"not_a_hook": "x.py"})


def test_malformed_request_exits_with_2(tmp_path: Path) -> None:
	request_path = tmp_path / "request.json"
	request_path.write_text(json.dumps({"format": "something-else"}), encoding="utf-8")
	res = _run_worker(request_path)
	assert res.returncode == 2
	assert "pkgbundler-batch" in res.stderr
