"""
Caller identity, verified against Supabase Auth.

The bearer token is sent to GET {SUPABASE_URL}/auth/v1/user; only the user
id the identity provider returns is trusted.
"""
import logging
from typing import Optional

import httpx

from .errors import AuthenticationError

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be a bearer token")
    return token.strip()


class SupabaseAuth:
    def __init__(
        self,
        url: str,
        anon_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def verify(self, token: str) -> str:
        """Return the verified user id for a token."""
        try:
            response = await self.client.get(
                f"{self.url}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": self.anon_key},
            )
        except httpx.RequestError as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise AuthenticationError("Identity provider unreachable") from e

        if response.status_code != 200:
            raise AuthenticationError(f"Token rejected ({response.status_code})")
        try:
            user_id = response.json().get("id")
        except ValueError as e:
            raise AuthenticationError("Identity provider returned invalid JSON") from e
        if not user_id:
            raise AuthenticationError("Identity provider returned no user id")
        return user_id

    async def close(self):
        await self.client.aclose()
