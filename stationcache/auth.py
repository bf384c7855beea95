"""
Credential providers consumed by the API client.

The builder only needs three calls: ensure_authenticated() before each
network call, get_access_token() to build the Authorization header and
prepare_for_batch() before a long batch so a token does not expire mid-run.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class AuthProvider:
    """Provider for servers that need no credentials"""

    def ensure_authenticated(self) -> bool:
        return True

    def get_access_token(self) -> Optional[str]:
        return None

    def prepare_for_batch(self) -> bool:
        return self.ensure_authenticated()


class StaticTokenAuth(AuthProvider):
    """Bearer token taken from the channels.token setting"""

    def __init__(self, token: str):
        self.token = (token or '').strip()

    def ensure_authenticated(self) -> bool:
        if not self.token:
            logger.error("No API token configured (channels.token / CHANNELS_TOKEN)")
            return False
        return True

    def get_access_token(self) -> Optional[str]:
        return self.token or None


def auth_for_token(token: Optional[str]) -> AuthProvider:
    return StaticTokenAuth(token) if token else AuthProvider()
