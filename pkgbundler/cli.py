# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pkgbundler.bundle import bundle
from pkgbundler.config import DEFAULT_CONFIG
from pkgbundler.errors import BundlerError
from pkgbundler.install import InstallOptions, install_bundle, remove_bundle
from pkgbundler.keygen import base64_keypair, import_keypair, keypair
from pkgbundler.scaffold import generate
from pkgbundler.verify import verify_bundle


def configure_logging(*, verbose: int = 0, quiet: int = 0) -> logging.Logger:
	level = logging.INFO
	if quiet >= 2:
		level = logging.ERROR
	elif quiet >= 1:
		level = logging.WARNING
	elif verbose >= 1:
		level = logging.DEBUG

	logger = logging.getLogger("pkgbundler")
	logger.setLevel(level)
	logger.propagate = False

	handler = logging.StreamHandler(stream=sys.stderr)
	handler.setLevel(level)
	handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s" if verbose else "%(message)s"))

	logger.handlers.clear()
	logger.addHandler(handler)
	return logger


def _add_verbosity(p: argparse.ArgumentParser) -> None:
	p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
	p.add_argument("-q", "--quiet", action="count", default=0, help="Less logging (repeatable)")


def _print_json(obj: object) -> None:
	print(json.dumps(obj, sort_keys=True, separators=(",", ":")))


def _build_parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser(prog="pkgbundler", description="Bundle stripped, signed packages and environments")
	_add_verbosity(p)
	sub = p.add_subparsers(dest="cmd", required=True)

	b = sub.add_parser("bundle", help="Build a bundle from a PackageBundler.toml")
	b.add_argument("config", nargs="?", type=Path, default=Path(DEFAULT_CONFIG), help="Config file (default: ./PackageBundler.toml)")
	b.add_argument("--clean", action="store_true", help="Remove existing output directories first")
	b.add_argument(
		"--handler",
		dest="handlers",
		action="append",
		default=None,
		metavar="NAME=PATH",
		help="Add or override a stripping hook (repeatable)",
	)
	b.add_argument("--json", action="store_true", help="Emit machine-readable JSON report")

	kp = sub.add_parser("keypair", help="Generate key.pem/key.pub (kept when both exist)")
	kp.add_argument("dir", nargs="?", type=Path, default=Path("."), help="Target directory (default: .)")

	pk = sub.add_parser("print-keypair", help="Print the key pair as base64 CI secret assignments")
	pk.add_argument("path", nargs="?", default="key", help="Key base name without extension (default: key)")

	ik = sub.add_parser("import-keypair", help="Write a key pair from CI environment variables")
	ik.add_argument("--file", default="key", help="Key base name without extension (default: key)")
	ik.add_argument("--private", default="PRIVATE_KEY_BASE64", help="Variable holding the private key")
	ik.add_argument("--public", default="PUBLIC_KEY_BASE64", help="Variable holding the public key")
	ik.add_argument("--raw", action="store_true", help="Variables hold PEM text rather than base64")

	v = sub.add_parser("verify", help="Verify every signature of a bundle")
	v.add_argument("bundle", type=Path, help="Bundle directory")
	v.add_argument("--key", type=Path, default=None, help="Public key (default: the key shipped in the bundle)")
	v.add_argument("--json", action="store_true", help="Emit machine-readable JSON report")

	inst = sub.add_parser("install", help="Install a bundle into a depot")
	inst.add_argument("bundle", type=Path, help="Bundle directory")
	_add_install_arguments(inst)

	rm = sub.add_parser("remove", help="Remove an installed bundle registry and its environments")
	rm.add_argument("registry", type=Path, help="Installed registry directory")

	gen = sub.add_parser("generate", help="Create a new bundling project")
	gen.add_argument("dir", type=Path, help="Project directory")
	gen.add_argument("--name", default="PackageBundle", help="Bundle name (default: PackageBundle)")
	gen.add_argument("--uuid", default=None, help="Bundle uuid (default: random)")
	gen.add_argument("--no-keys", action="store_true", help="Do not generate a key pair")
	return p


def _add_install_arguments(p: argparse.ArgumentParser) -> None:
	p.add_argument("--depot", type=Path, default=None, help="Target depot (default: first depot on the search path)")
	p.add_argument("-y", "--yes", action="store_true", help="Overwrite existing environments without asking")
	p.add_argument("--json", action="store_true", help="Emit machine-readable JSON report")


def _parse_handlers(values: list[str] | None) -> dict[str, str]:
	out: dict[str, str] = {}
	for value in values or []:
		name, sep, path = value.partition("=")
		if not sep or not name or not path:
			raise ValueError(f"--handler expects NAME=PATH, got {value!r}")
		out[name] = path
	return out


def _run(args: argparse.Namespace) -> int:
	if args.cmd == "bundle":
		report = bundle(args.config, clean=bool(args.clean), handlers=_parse_handlers(args.handlers))
		if args.json:
			_print_json(report.to_dict())
		return 0

	if args.cmd == "keypair":
		pair = keypair(args.dir)
		print(pair.private)
		print(pair.public)
		return 0

	if args.cmd == "print-keypair":
		print(base64_keypair(args.path), end="")
		return 0

	if args.cmd == "import-keypair":
		import_keypair(file=args.file, base64=not args.raw, private=args.private, public=args.public)
		return 0

	if args.cmd == "verify":
		report = verify_bundle(args.bundle, args.key)
		if args.json:
			_print_json(report.to_dict())
		else:
			for rel in sorted(report.missing_signatures):
				print(f"missing signature: {rel}", file=sys.stderr)
			for rel in sorted(report.failed):
				print(f"bad signature: {rel}", file=sys.stderr)
			print(f"verify: checked={report.checked} ok={report.ok}", file=sys.stdout if report.ok else sys.stderr)
		return 0 if report.ok else 2

	if args.cmd == "install":
		return _install(args)

	if args.cmd == "remove":
		remove_bundle(args.registry)
		return 0

	if args.cmd == "generate":
		print(generate(args.dir, name=args.name, uuid=args.uuid, with_keys=not args.no_keys))
		return 0

	raise AssertionError("unreachable")


def _install(args: argparse.Namespace) -> int:
	report = install_bundle(InstallOptions(bundle_dir=args.bundle, depot=args.depot, assume_yes=bool(args.yes)))
	if args.json:
		_print_json(report.to_dict())
	return 1 if report.aborted else 0


def main(argv: list[str] | None = None) -> int:
	p = _build_parser()
	args = p.parse_args(argv)
	configure_logging(verbose=args.verbose, quiet=args.quiet)
	try:
		return _run(args)
	except BundlerError as err:
		if getattr(args, "json", False):
			_print_json({"ok": False, "error": err.to_dict()})
		else:
			print(err.format_human(), file=sys.stderr)
		return 2
	except ValueError as err:
		print(f"pkgbundler: {err}", file=sys.stderr)
		return 2


def install_main(argv: list[str] | None = None) -> int:
	"""Entry point of a bundle's `registry/install.py`."""
	p = argparse.ArgumentParser(prog="install.py", description="Install this bundle into a depot")
	p.add_argument("bundle", type=Path)
	_add_install_arguments(p)
	_add_verbosity(p)
	args = p.parse_args(argv)
	configure_logging(verbose=args.verbose, quiet=args.quiet)
	try:
		return _install(args)
	except BundlerError as err:
		print(err.format_human(), file=sys.stderr)
		return 2


def remove_main(argv: list[str] | None = None) -> int:
	"""Entry point of an installed registry's `remove.py`."""
	p = argparse.ArgumentParser(prog="remove.py", description="Remove this registry and its environments")
	p.add_argument("registry", type=Path)
	_add_verbosity(p)
	args = p.parse_args(argv)
	configure_logging(verbose=args.verbose, quiet=args.quiet)
	try:
		remove_bundle(args.registry)
	except BundlerError as err:
		print(err.format_human(), file=sys.stderr)
		return 2
	return 0


if __name__ == "__main__":
	raise SystemExit(main())
