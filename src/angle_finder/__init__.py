"""angle-finder: Discover sources and mine them for marketing angles."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("angle-finder")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
