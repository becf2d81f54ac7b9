import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from mcqstream.core.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """A verified caller."""
    user_id: str
    email: Optional[str] = None


class IdentityProvider:
    """Resolves a bearer token to a verified Principal or raises an AUTH error."""

    async def authenticate(self, token: Optional[str]) -> Principal:
        raise NotImplementedError


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header value."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


class SupabaseIdentityProvider(IdentityProvider):
    """Verifies access tokens against Supabase Auth (`GET /auth/v1/user`)."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: Optional[str], api_key: Optional[str]):
        self._http = http_client
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = api_key

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise ServiceError(ErrorKind.AUTH, "Missing or invalid bearer token")
        if not self._base_url or not self._api_key:
            raise ServiceError(ErrorKind.AUTH, "Identity provider is not configured")

        try:
            response = await self._http.get(
                f"{self._base_url}/auth/v1/user",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"[AUTH] ✗ Identity provider unreachable: {e}")
            raise ServiceError(ErrorKind.AUTH, f"Identity provider unreachable: {e}") from e

        if response.status_code != 200:
            raise ServiceError(ErrorKind.AUTH, f"Token rejected ({response.status_code})")

        try:
            user = response.json()
        except ValueError as e:
            raise ServiceError(ErrorKind.AUTH, "Identity provider returned a malformed user") from e
        if not isinstance(user, dict):
            raise ServiceError(ErrorKind.AUTH, "Identity provider returned a malformed user")
        if not user.get("id"):
            raise ServiceError(ErrorKind.AUTH, "Token resolved to no user")
        if not user.get("email_confirmed_at"):
            raise ServiceError(ErrorKind.AUTH, "User email is not verified")

        return Principal(user_id=user["id"], email=user.get("email"))
