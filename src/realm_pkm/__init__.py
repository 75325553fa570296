"""
Realm PKM - a personal knowledge management service.
Notes are rich-text documents connected by typed links, organised with tags,
and explored through graph views. Access is guarded by JWT sessions with a
refresh-token renewal flow.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("realm-pkm")
except PackageNotFoundError:
    __version__ = "0.3.0"
