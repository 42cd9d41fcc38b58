# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Bundle stripped, signed packages together with the environments that use them.

See `pkgbundler.bundle.bundle` for the producer side and
`pkgbundler.install.install_bundle` for the consumer side.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
