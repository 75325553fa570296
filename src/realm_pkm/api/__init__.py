"""HTTP API for the Realm PKM service."""

from realm_pkm.api.app import create_app

__all__ = ["create_app"]
