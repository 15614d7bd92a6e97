"""Core utilities for the Parley backend."""

from .security import create_access_token, get_credential_verifier, get_password_hash, verify_password

__all__ = ["create_access_token", "get_credential_verifier", "get_password_hash", "verify_password"]
