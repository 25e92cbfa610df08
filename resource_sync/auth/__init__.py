"""Credential access module."""

from resource_sync.auth.credentials import StoredCredentialProvider

__all__ = ["StoredCredentialProvider"]
