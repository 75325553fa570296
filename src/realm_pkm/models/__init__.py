"""Domain and database models for the Realm PKM service."""
