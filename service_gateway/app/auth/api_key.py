"""
API key authentication for gateway requests.
"""

from typing import Optional

from fastapi import Request

from shared.errors import AuthenticationError
from shared.logging import get_logger, set_account
from .credential_store import CredentialStore

API_KEY_HEADER = "X-API-Key"


class APIKeyAuthenticator:
    """Resolve the ``X-API-Key`` header to an account through the credential store."""

    def __init__(self, store: CredentialStore, header: str = API_KEY_HEADER):
        self.store = store
        self.header = header
        self.logger = get_logger("gateway.auth.api_key")

    def authenticate(self, request: Request) -> str:
        """Return the account name for the request or raise AuthenticationError."""
        api_key: Optional[str] = request.headers.get(self.header)
        account, ok = self.store.valid(api_key)
        if not ok:
            self.logger.warning(
                "API key rejected",
                reason="missing" if not api_key else "unknown",
            )
            raise AuthenticationError()

        request.state.account = account
        set_account(account)
        return account
