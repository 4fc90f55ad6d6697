"""
Authentication helpers for the gateway service.
"""

from .credential_store import Credential, CredentialStore, generate_key, read_credentials
from .api_key import APIKeyAuthenticator, API_KEY_HEADER

__all__ = [
    "API_KEY_HEADER",
    "APIKeyAuthenticator",
    "Credential",
    "CredentialStore",
    "generate_key",
    "read_credentials",
]
