"""Service layer for the Realm PKM service."""
