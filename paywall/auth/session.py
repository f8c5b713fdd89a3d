"""
Authenticated-user resolution.

The limit gate, resolver and purchase engine all act on "the current user".
They receive a SessionProvider instead of reading a global session.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from paywall.entitlements.errors import AuthenticationRequiredError
from paywall.integrations.supabase.client import SupabaseAPIError, SupabaseClient

logger = logging.getLogger(__name__)


class SessionProvider(ABC):
    """Source of the current authenticated user id."""

    @abstractmethod
    async def get_user_id(self) -> Optional[str]:
        """Return the current user id, or None when nobody is signed in."""

    async def require_user_id(self) -> str:
        """
        Return the current user id.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
        """
        user_id = await self.get_user_id()
        if not user_id:
            raise AuthenticationRequiredError()
        return user_id


class StaticSessionProvider(SessionProvider):
    """Fixed user id; used by jobs acting on behalf of a known user and in tests."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    async def get_user_id(self) -> Optional[str]:
        return self.user_id


class SupabaseSessionProvider(SessionProvider):
    """Resolves the user from an access token via the auth endpoint."""

    def __init__(self, client: SupabaseClient, access_token: Optional[str] = None):
        self._client = client
        self._access_token = access_token
        self._user_id: Optional[str] = None

    def set_access_token(self, access_token: Optional[str]) -> None:
        """Switch to a new token (sign in/out); drops the memoized user."""
        self._access_token = access_token
        self._user_id = None

    async def get_user_id(self) -> Optional[str]:
        if self._user_id:
            return self._user_id
        try:
            user = await self._client.get_user(self._access_token)
        except SupabaseAPIError as e:
            logger.warning("Failed to resolve session user", extra={"error": str(e)})
            return None
        if not user:
            return None
        self._user_id = user.get("id")
        return self._user_id
