"""Database models."""
from .config_entry import ConfigEntry, DEFAULT_CONFIG, CREDENTIAL_KEYS

__all__ = ["ConfigEntry", "DEFAULT_CONFIG", "CREDENTIAL_KEYS"]
