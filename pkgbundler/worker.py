# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Batch serialization worker.

This file runs as a stand-alone script under the interpreter a batch is pinned
to:

	python -I -S worker.py request.json

It imports nothing outside the standard library so that it works under any
runtime the bundler selects. For every file of every module in the request it
parses the source, splices entry-point glue, serializes the resulting tree into
a `<file>.<cache_tag>.pyser` payload and overwrites the source with a loader
shim. A failure inside one module is recorded and the remaining modules are
still processed.

Exit status: 0 when every module was stripped, 1 when at least one failed,
2 when the request itself is unusable.
"""

from __future__ import annotations

import __future__
import ast
import importlib.util
import json
import pickle
import sys
from pathlib import Path
from typing import Any, Callable, Iterable

REQUEST_FORMAT = "pkgbundler-batch"
RESULT_FORMAT = "pkgbundler-batch-result"
FORMAT_VERSION = 0
PAYLOAD_SUFFIX = ".pyser"
PICKLE_PROTOCOL = 4
HOOK_NAMES = (
	"code_loader",
	"code_transformer",
	"code_injector",
	"data_decoder",
	"data_encoder",
	"post_process",
)
# The default loader shim undoes the default encoding only.
CODEC_HOOKS = ("data_decoder", "data_encoder")


class RequestError(ValueError):
	pass


def codec_without_loader(names: Iterable[str]) -> list[str]:
	"""Configured codec hooks that the default loader shim could not decode."""
	configured = set(names)
	if "code_loader" in configured:
		return []
	return [n for n in CODEC_HOOKS if n in configured]


def xor_key(relative_path: str) -> int:
	"""
	Scrambling key of a file: the length of its posix path inside the module tree.

	This is light obfuscation only; anyone holding the shim can undo it.
	"""
	return len(relative_path) & 0xFF


def xor_bytes(data: bytes, key: int) -> bytes:
	return data.translate(bytes(b ^ key for b in range(256)))


def payload_name(filename: str, cache_tag: str) -> str:
	return f"{filename}.{cache_tag}{PAYLOAD_SUFFIX}"


def decode_payload(data: bytes, key: int) -> ast.Module:
	return pickle.loads(xor_bytes(data, key))


# The payload name is derived at load time so that one stripped version can
# carry payloads for several runtimes next to a single, identical shim.
_DEFAULT_SHIM = '''\
# Stripped module. The program text is serialized next to this file.
def __pkgbundler_load__(namespace):
	import ast, os, pickle, sys
	previous = os.getcwd()
	os.chdir(os.path.dirname(os.path.abspath(__file__)))
	try:
		payload = os.path.basename(__file__) + "." + sys.implementation.cache_tag + "{suffix}"
		if not os.path.isfile(payload):
			raise ImportError("no serialized code for " + sys.implementation.cache_tag + ": " + payload)
		with open(payload, "rb") as f:
			data = f.read().translate(bytes(b ^ {key} for b in range(256)))
		for node in pickle.loads(data).body:
			code = compile(ast.Module(body=[node], type_ignores=[]), __file__, "exec", {flags}, dont_inherit=True)
			exec(code, namespace)
	finally:
		os.chdir(previous)
{entry}__pkgbundler_load__(globals())
del __pkgbundler_load__
'''


class StripHooks:
	"""
	Default implementation of every stripping hook.

	Configured hooks replace individual methods on an instance (see `load_hooks`);
	anything not configured keeps the behaviour defined here.
	"""

	def __init__(self, cache_tag: str | None = None) -> None:
		self.cache_tag = cache_tag or sys.implementation.cache_tag

	def code_loader(self, payload_name: str, key: int, entry_point: str | None, flags: int, context: dict) -> str:
		entry = f"# entry point: {entry_point}\n" if entry_point else ""
		return _DEFAULT_SHIM.format(suffix=PAYLOAD_SUFFIX, key=key, flags=flags, entry=entry)

	def code_transformer(self, filename: str, tree: ast.Module, context: dict) -> ast.Module:
		return tree

	def code_injector(self, filename: str, context: dict) -> list:
		return ast.parse('__import__("logging").getLogger(__name__).debug("Loading serialized code.")').body

	def data_encoder(self, filename: str, data: bytes, key: int, context: dict) -> bytes:
		return xor_bytes(data, key)

	def data_decoder(self, filename: str, key: int, context: dict) -> Callable[[bytes], bytes]:
		return lambda data: xor_bytes(data, key)

	def post_process(self, context: dict) -> None:
		return None


def _split_hook_spec(name: str, spec: str) -> tuple[str, str]:
	file, sep, attr = spec.rpartition(":")
	if sep and file and attr.isidentifier():
		return file, attr
	return spec, name


def load_hooks(handlers: dict[str, str], cache_tag: str | None = None) -> StripHooks:
	unloadable = codec_without_loader(handlers)
	if unloadable:
		raise RequestError(f"{', '.join(unloadable)} requires a code_loader hook")
	hooks = StripHooks(cache_tag)
	for name, spec in sorted(handlers.items()):
		if name not in HOOK_NAMES:
			raise RequestError(f"unknown hook: {name!r}")
		file, attr = _split_hook_spec(name, str(spec))
		path = Path(file)
		if not path.is_file():
			raise RequestError(f"hook file for {name!r} not found: {file}")
		module_name = f"_pkgbundler_hook_{name}"
		spec_obj = importlib.util.spec_from_file_location(module_name, path)
		if spec_obj is None or spec_obj.loader is None:
			raise RequestError(f"cannot load hook file for {name!r}: {file}")
		module = importlib.util.module_from_spec(spec_obj)
		try:
			spec_obj.loader.exec_module(module)
		except Exception as err:
			raise RequestError(f"hook file for {name!r} failed to load: {type(err).__name__}: {err}") from err
		fn = getattr(module, attr, None)
		if not callable(fn):
			raise RequestError(f"hook file {file} does not define a callable {attr!r}")
		setattr(hooks, name, fn)
	return hooks


class PythonForms:
	"""
	The structural program representation used for payloads: CPython `ast`.

	A Python module is its own namespace, so unwrapping an entry point means
	separating the module docstring and `from __future__` imports from the
	ordinary statements. Both have to be carried outside the statement list
	because statements are evaluated one at a time by the loader shim.
	"""

	def parse(self, source: bytes, filename: str) -> ast.Module:
		return ast.parse(source, filename=filename)

	def is_entry_point_form(self, tree: ast.AST) -> bool:
		return isinstance(tree, ast.Module)

	def unwrap_namespace(self, tree: ast.Module) -> tuple[str | None, int, list[ast.stmt]]:
		body = list(tree.body)
		doc: str | None = None
		if body and isinstance(body[0], ast.Expr) and isinstance(body[0].value, ast.Constant) and isinstance(body[0].value.value, str):
			doc = body[0].value.value
			body = body[1:]
		flags = 0
		while body and isinstance(body[0], ast.ImportFrom) and body[0].module == "__future__":
			for alias in body[0].names:
				feature = getattr(__future__, alias.name, None)
				if feature is None:
					raise SyntaxError(f"future feature {alias.name} is not defined")
				flags |= feature.compiler_flag
			body = body[1:]
		return doc, flags, body

	def reattach_doc(self, body: list[ast.stmt], doc: str | None) -> list[ast.stmt]:
		if doc is None:
			return body
		assign = ast.Assign(targets=[ast.Name(id="__doc__", ctx=ast.Store())], value=ast.Constant(value=doc))
		return [assign, *body]

	def serialize(self, tree: ast.Module) -> bytes:
		return pickle.dumps(tree, protocol=PICKLE_PROTOCOL)


def strip_file(
	forms: PythonForms,
	hooks: StripHooks,
	root: Path,
	relative_path: str,
	entry_point: str | None,
	context: dict,
) -> str:
	"""Strip one source file in place; returns the payload file name."""
	path = root / relative_path
	filename = str(path)
	tree = forms.parse(path.read_bytes(), filename)
	if not forms.is_entry_point_form(tree):
		raise SyntaxError(f"{relative_path}: expected a module")

	doc, flags, body = forms.unwrap_namespace(tree)
	if entry_point:
		body = [*hooks.code_injector(filename, context), *body]
	body = forms.reattach_doc(body, doc)
	tree = hooks.code_transformer(filename, ast.Module(body=body, type_ignores=[]), context)
	ast.fix_missing_locations(tree)

	data = forms.serialize(tree)
	key = xor_key(relative_path)
	encoded = hooks.data_encoder(filename, data, key, context)
	if hooks.data_decoder(filename, key, context)(encoded) != data:
		raise ValueError(f"{relative_path}: data_decoder does not invert data_encoder")

	name = payload_name(path.name, hooks.cache_tag)
	(path.parent / name).write_bytes(encoded)
	shim = hooks.code_loader(name, key, entry_point, flags, context)
	path.write_text(shim.strip() + "\n", encoding="utf-8")
	return name


def _validate_request(request: Any) -> list[dict]:
	if not isinstance(request, dict) or request.get("format") != REQUEST_FORMAT:
		raise RequestError(f"not a {REQUEST_FORMAT} request")
	if request.get("version") != FORMAT_VERSION:
		raise RequestError(f"unsupported request version: {request.get('version')!r}")
	if not isinstance(request.get("result_path"), str):
		raise RequestError("request is missing result_path")
	packages = request.get("packages")
	if not isinstance(packages, list):
		raise RequestError("request packages must be a list")
	for pkg in packages:
		if not isinstance(pkg, dict):
			raise RequestError("request package entries must be objects")
		for key in ("package_name", "package_version", "temp_directory"):
			if not isinstance(pkg.get(key), str):
				raise RequestError(f"request package entry is missing {key}")
		if not isinstance(pkg.get("files"), list):
			raise RequestError(f"request package {pkg['package_name']} has no files list")
	return packages


def run_batch(request: dict, hooks: StripHooks, forms: PythonForms | None = None) -> dict:
	forms = forms or PythonForms()
	packages = _validate_request(request)
	stripped: list[dict] = []
	failed: list[dict] = []

	for pkg in packages:
		name = pkg["package_name"]
		version = pkg["package_version"]
		root = Path(pkg["temp_directory"])
		payloads: list[str] = []
		try:
			for file in pkg["files"]:
				rel = file["relative_path"]
				entry_point = file.get("entry_point") or None
				context = {
					"request": request,
					"package_name": name,
					"package_version": version,
					"relative_path": rel,
					"entry_point": entry_point,
					"cache_tag": hooks.cache_tag,
				}
				payload = strip_file(forms, hooks, root, rel, entry_point, context)
				payloads.append(str(Path(rel).parent / payload).replace("\\", "/"))
		except Exception as err:
			failed.append(
				{
					"package_name": name,
					"package_version": version,
					"reason_code": "PARSE_OR_SERIALIZE_FAILED",
					"message": f"{type(err).__name__}: {err}",
				}
			)
			continue
		stripped.append({"package_name": name, "package_version": version, "payloads": payloads})

	hooks.post_process({"request": request, "stripped": stripped, "failed": failed})
	return {
		"format": RESULT_FORMAT,
		"version": FORMAT_VERSION,
		"cache_tag": hooks.cache_tag,
		"ok": not failed,
		"stripped": stripped,
		"failed": failed,
	}


def main(argv: list[str] | None = None) -> int:
	args = sys.argv[1:] if argv is None else argv
	if len(args) != 1:
		print("usage: worker.py REQUEST.json", file=sys.stderr)
		return 2
	try:
		request = json.loads(Path(args[0]).read_text(encoding="utf-8"))
		_validate_request(request)
		hooks = load_hooks(request.get("handlers") or {})
	except (OSError, ValueError) as err:
		print(f"pkgbundler-worker: {err}", file=sys.stderr)
		return 2

	result = run_batch(request, hooks)
	Path(request["result_path"]).write_text(json.dumps(result, sort_keys=True, indent=2), encoding="utf-8")
	for failure in result["failed"]:
		print(f"pkgbundler-worker: {failure['package_name']} {failure['package_version']}: {failure['message']}", file=sys.stderr)
	return 0 if result["ok"] else 1


if __name__ == "__main__":
	raise SystemExit(main())
